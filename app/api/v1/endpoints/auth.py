"""Unauthenticated account recovery endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from app.dependencies import TokenWorkflowDep, enforce_password_reset_rate_limit
from app.schemas.auth import (
    PASSWORD_RESET_REQUESTED_MESSAGE,
    MessageResponse,
    PasswordResetRequest,
    ResetPasswordRequest,
)

router = APIRouter()


@router.post(
    "/request-password-reset",
    response_model=MessageResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(enforce_password_reset_rate_limit)],
    summary="Request a password reset email",
)
async def request_password_reset(
    request: PasswordResetRequest,
    tokens: TokenWorkflowDep,
) -> MessageResponse:
    """
    Send a password reset link if the email belongs to an active account.

    The response is the same whether or not the email is registered.

    Args:
        request: Email address to reset
        tokens: Security token workflow

    Returns:
        Generic confirmation message
    """
    await tokens.request_password_reset(request.email)
    return MessageResponse(message=PASSWORD_RESET_REQUESTED_MESSAGE)


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    status_code=status.HTTP_200_OK,
    summary="Reset password with a reset token",
)
async def reset_password(
    request: ResetPasswordRequest,
    tokens: TokenWorkflowDep,
) -> MessageResponse:
    """
    Set a new password using a single-use reset token.

    Raises:
        TokenFailure: The token is invalid, expired or already used
    """
    await tokens.reset_password(request.token, request.new_password)
    return MessageResponse(message="Password has been reset successfully")


@router.get(
    "/verify-email",
    response_model=MessageResponse,
    status_code=status.HTTP_200_OK,
    summary="Confirm an email address",
)
async def verify_email(
    tokens: TokenWorkflowDep,
    token: Annotated[str, Query(min_length=1, description="Verification token")],
) -> MessageResponse:
    """Mark the email of the token owner as verified."""
    await tokens.verify_email(token)
    return MessageResponse(message="Email verified successfully")

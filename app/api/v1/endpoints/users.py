"""User endpoints."""

from typing import Annotated

from fastapi import APIRouter, Query, status

from app.dependencies import (
    AdminPrincipal,
    CurrentPrincipal,
    OwnerOrAdminPrincipal,
    UserServiceDep,
)
from app.schemas.auth import MessageResponse
from app.schemas.users import (
    AccountStatus,
    ChangePasswordRequest,
    ProfileUpdate,
    Role,
    UserCreate,
    UserCreatedResponse,
    UserDeletedResponse,
    UserListResponse,
    UserResponse,
    UserUpdate,
)

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse, summary="Get own profile")
async def get_current_user_profile(
    principal: CurrentPrincipal,
    user_service: UserServiceDep,
) -> UserResponse:
    """Get current user's profile."""
    user = await user_service.get_user(principal.id)
    return UserResponse.model_validate(user)


@router.put("/me", response_model=UserResponse, summary="Update own profile")
async def update_current_user_profile(
    data: ProfileUpdate,
    principal: CurrentPrincipal,
    user_service: UserServiceDep,
) -> UserResponse:
    """
    Update current user's profile.

    Role, status and email are not editable here and are ignored if sent.
    """
    user = await user_service.update_profile(principal, data)
    return UserResponse.model_validate(user)


@router.post(
    "/me/change-password",
    response_model=MessageResponse,
    summary="Change own password",
)
async def change_password(
    data: ChangePasswordRequest,
    principal: CurrentPrincipal,
    user_service: UserServiceDep,
) -> MessageResponse:
    """Change the current user's password after confirming the current one."""
    await user_service.change_password(principal, data)
    return MessageResponse(message="Password changed successfully")


@router.post(
    "/me/resend-verification",
    response_model=MessageResponse,
    summary="Resend the verification email",
)
async def resend_verification(
    principal: CurrentPrincipal,
    user_service: UserServiceDep,
) -> MessageResponse:
    """Send a fresh email verification link to the current user."""
    await user_service.resend_verification(principal)
    return MessageResponse(message="Verification email sent")


@router.post(
    "",
    response_model=UserCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a user (admin only)",
)
async def create_user(
    data: UserCreate,
    admin: AdminPrincipal,
    user_service: UserServiceDep,
) -> UserCreatedResponse:
    """
    Create an account and send its verification and welcome emails.

    Args:
        data: New account details
        admin: Authenticated admin
        user_service: User service

    Returns:
        The new user's id and role

    Raises:
        EmailAlreadyExists: The email is already registered
    """
    profile = await user_service.create_user(data)
    return UserCreatedResponse(
        message="User created successfully",
        uid=profile["id"],
        role=profile["role"],
    )


@router.get("", response_model=UserListResponse, summary="List users (admin only)")
async def list_users(
    admin: AdminPrincipal,
    user_service: UserServiceDep,
    role: Annotated[Role | None, Query(description="Filter by role")] = None,
    account_status: Annotated[
        AccountStatus | None, Query(alias="status", description="Filter by status")
    ] = AccountStatus.ACTIVE,
    search: Annotated[str | None, Query(description="Email prefix or name fragment")] = None,
    limit: Annotated[int, Query(ge=1, le=100, description="Page size")] = 10,
    start_after: Annotated[str | None, Query(description="Cursor from the previous page")] = None,
) -> UserListResponse:
    """
    Search users, newest first, with cursor pagination.

    Args:
        admin: Authenticated admin
        user_service: User service
        role: Filter by role
        account_status: Filter by account status
        search: Search term
        limit: Page size
        start_after: Id of the last user of the previous page

    Returns:
        Page of users and the cursor for the next page
    """
    users, next_cursor = await user_service.list_users(
        role=role,
        status=account_status,
        search=search,
        limit=limit,
        start_after=start_after,
    )
    return UserListResponse(
        users=[UserResponse.model_validate(user) for user in users],
        count=len(users),
        next_cursor=next_cursor,
    )


@router.get("/{user_id}", response_model=UserResponse, summary="Get a user")
async def get_user(
    user_id: str,
    principal: OwnerOrAdminPrincipal,
    user_service: UserServiceDep,
) -> UserResponse:
    """Get a user profile. Users may only read their own; admins may read any."""
    user = await user_service.get_user(user_id)
    return UserResponse.model_validate(user)


@router.put("/{user_id}", response_model=UserResponse, summary="Update a user (admin only)")
async def update_user(
    user_id: str,
    data: UserUpdate,
    admin: AdminPrincipal,
    user_service: UserServiceDep,
) -> UserResponse:
    """
    Update identity fields, role and status of a user.

    Raises:
        NotFoundException: The user does not exist
        ConflictException: The status change is not allowed
    """
    user = await user_service.update_user(user_id, data)
    return UserResponse.model_validate(user)


@router.delete(
    "/{user_id}",
    response_model=UserDeletedResponse,
    summary="Delete a user (admin only)",
)
async def delete_user(
    user_id: str,
    admin: AdminPrincipal,
    user_service: UserServiceDep,
    purge_identity: Annotated[
        bool, Query(description="Also remove the identity-provider account")
    ] = False,
) -> UserDeletedResponse:
    """Soft-delete a user and disable (or purge) their sign-in account."""
    purged = await user_service.delete_user(user_id, purge_identity=purge_identity)
    return UserDeletedResponse(
        message="User deleted successfully",
        user_id=user_id,
        identity_purged=purged,
    )

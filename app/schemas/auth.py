"""Authentication schemas."""

from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.schemas.users import NewPassword

PASSWORD_RESET_REQUESTED_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent"
)


class PasswordResetRequest(BaseModel):
    """Request a password reset link."""

    email: EmailStr

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        """Emails are matched case-insensitively."""
        return value.strip().lower()


class ResetPasswordRequest(BaseModel):
    """Set a new password with a reset token."""

    token: str = Field(..., min_length=1, description="Token from the reset email")
    new_password: NewPassword


class MessageResponse(BaseModel):
    """Plain message response."""

    message: str


class AuthErrorResponse(BaseModel):
    """Error body for authentication and authorization failures."""

    model_config = ConfigDict(extra="allow")

    success: bool = False
    error: str
    message: str
    code: str
    details: Any | None = None

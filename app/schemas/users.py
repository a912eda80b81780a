"""User schemas for request/response validation."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.core.security import password_policy_errors


class Role(str, Enum):
    """Account roles."""

    ADMIN = "admin"
    DOCTOR = "doctor"
    PATIENT = "patient"


class AccountStatus(str, Enum):
    """Account lifecycle states."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    DELETED = "deleted"


def check_password_policy(value: str) -> str:
    """Pydantic validator body shared by every schema that accepts a new password."""
    errors = password_policy_errors(value)
    if errors:
        raise ValueError("; ".join(errors))
    return value


NewPassword = Annotated[str, AfterValidator(check_password_policy)]


class Principal(BaseModel):
    """
    Authenticated identity attached to a request.

    Identity-bearing fields come from the verified ID token; the remaining
    profile fields are carried as extras.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    email: str | None = None
    email_verified: bool = False
    role: Role
    status: AccountStatus

    @property
    def is_admin(self) -> bool:
        """Check if the principal holds the admin role."""
        return self.role == Role.ADMIN


class PersonalInfo(BaseModel):
    """Personal details stored on the profile document."""

    model_config = ConfigDict(extra="allow")

    first_name: str | None = Field(None, min_length=1)
    last_name: str | None = Field(None, min_length=1)
    phone: str | None = Field(None, pattern=r"^[0-9\-\+\(\)\s]+$", max_length=20)


class ProfessionalInfo(BaseModel):
    """Professional details, only kept for doctors."""

    specialty: str = ""
    license_number: str = ""
    education: list[Any] = Field(default_factory=list)
    schedule: dict[str, Any] = Field(default_factory=dict)


class UserCreate(BaseModel):
    """Schema for an admin creating a new account."""

    email: EmailStr
    password: NewPassword
    display_name: str = Field(..., min_length=1)
    role: Role = Role.PATIENT
    personal_info: PersonalInfo | None = None
    professional_info: ProfessionalInfo | None = None
    preferences: dict[str, Any] | None = None

    @field_validator("display_name")
    @classmethod
    def strip_display_name(cls, value: str) -> str:
        """Reject whitespace-only names."""
        value = value.strip()
        if not value:
            raise ValueError("Display name is required")
        return value


class UserUpdate(BaseModel):
    """Schema for an admin updating an account."""

    email: EmailStr | None = None
    display_name: str | None = Field(None, min_length=1)
    role: Role | None = None
    status: Literal["active", "inactive", "suspended"] | None = None
    disabled: bool | None = None
    personal_info: PersonalInfo | None = None
    professional_info: ProfessionalInfo | None = None
    preferences: dict[str, Any] | None = None


class ProfileUpdate(BaseModel):
    """Schema for a user updating their own profile; protected fields are dropped."""

    model_config = ConfigDict(extra="ignore")

    display_name: str | None = Field(None, min_length=1)
    personal_info: PersonalInfo | None = None
    preferences: dict[str, Any] | None = None


class ChangePasswordRequest(BaseModel):
    """Password change for the signed-in user."""

    current_password: str = Field(..., min_length=1)
    new_password: NewPassword


class UserResponse(BaseModel):
    """User schema for API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str | None = None
    email_verified: bool = False
    display_name: str | None = None
    role: Role
    status: AccountStatus
    personal_info: dict[str, Any] | None = None
    professional_info: dict[str, Any] | None = None
    preferences: dict[str, Any] | None = None
    disabled: bool | None = None
    metadata: dict[str, Any] | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class UserCreatedResponse(BaseModel):
    """Response after creating an account."""

    message: str
    uid: str
    role: Role


class UserListResponse(BaseModel):
    """Cursor-paginated user listing."""

    users: list[UserResponse]
    count: int
    next_cursor: str | None = None


class UserDeletedResponse(BaseModel):
    """Response after deleting an account."""

    message: str
    user_id: str
    identity_purged: bool

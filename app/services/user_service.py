"""User service for account lifecycle operations."""

import asyncio
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import (
    AppException,
    BadRequestException,
    ConflictException,
    IdentityNotFound,
    IdentityProviderError,
    NotFoundException,
    ProfileStoreError,
)
from app.core.firebase import IdentityProvider
from app.schemas.users import (
    AccountStatus,
    ChangePasswordRequest,
    Principal,
    ProfessionalInfo,
    ProfileUpdate,
    Role,
    UserCreate,
    UserUpdate,
)
from app.services.notification_service import NotificationSender
from app.services.profile_store import ProfileStore, public_view
from app.services.token_workflow import SecurityTokenWorkflow

logger = structlog.get_logger(__name__)

# Statuses reachable from each status; writing the current status is a no-op
STATUS_TRANSITIONS: dict[str, set[str]] = {
    AccountStatus.ACTIVE.value: {
        AccountStatus.INACTIVE.value,
        AccountStatus.SUSPENDED.value,
        AccountStatus.DELETED.value,
    },
}


def check_status_transition(current: str, new: str) -> None:
    """
    Reject status changes outside the account lifecycle.

    Raises:
        ConflictException: INVALID_STATUS_TRANSITION
    """
    if current == new:
        return
    if new not in STATUS_TRANSITIONS.get(current, set()):
        raise ConflictException(
            f"Cannot change account status from {current} to {new}",
            code="INVALID_STATUS_TRANSITION",
        )


def merge_identity(profile: dict[str, Any], identity: dict[str, Any] | None) -> dict[str, Any]:
    """Public profile view enriched with identity-provider account state."""
    merged = public_view(profile)
    if identity is not None:
        merged["disabled"] = identity["disabled"]
        merged["metadata"] = identity["metadata"]
    return merged


class UserService:
    """Service for user account operations."""

    def __init__(
        self,
        store: ProfileStore,
        identity: IdentityProvider,
        tokens: SecurityTokenWorkflow,
        notifier: NotificationSender,
    ):
        """Initialize service with its collaborators."""
        self.store = store
        self.identity = identity
        self.tokens = tokens
        self.notifier = notifier

    async def _require_profile(self, user_id: str) -> dict[str, Any]:
        profile = await self.store.get(user_id)
        if profile is None:
            raise NotFoundException("User not found")
        return profile

    async def _lookup_identity(self, user_id: str) -> dict[str, Any] | None:
        try:
            return await self.identity.get_identity(user_id)
        except IdentityNotFound:
            logger.warning("identity_missing_for_profile", user_id=user_id)
            return None

    async def create_user(self, user_data: UserCreate) -> dict[str, Any]:
        """
        Create an identity and its profile, then send the onboarding emails.

        The identity is deleted again if the profile cannot be written.

        Returns:
            The created profile record

        Raises:
            EmailAlreadyExists: The email is already registered
        """
        email = user_data.email.lower()
        identity = await self.identity.create_identity(
            email=email,
            password=user_data.password,
            display_name=user_data.display_name,
        )
        uid = identity["id"]

        professional_info = None
        if user_data.role == Role.DOCTOR:
            professional_info = (user_data.professional_info or ProfessionalInfo()).model_dump()

        try:
            profile = await self.store.create(
                uid,
                {
                    "email": email,
                    "email_verified": False,
                    "display_name": user_data.display_name,
                    "role": user_data.role.value,
                    "status": AccountStatus.ACTIVE.value,
                    "personal_info": (
                        user_data.personal_info.model_dump(exclude_none=True)
                        if user_data.personal_info
                        else {}
                    ),
                    "professional_info": professional_info,
                    "preferences": user_data.preferences or {},
                },
            )
        except (ProfileStoreError, IntegrityError) as e:
            logger.error("profile_create_failed", user_id=uid, error=str(e))
            try:
                await self.identity.delete_identity(uid)
            except (IdentityNotFound, IdentityProviderError) as cleanup_error:
                logger.error(
                    "identity_rollback_failed", user_id=uid, error=str(cleanup_error)
                )
            if isinstance(e, IntegrityError):
                raise ConflictException("Profile already exists", code="PROFILE_EXISTS") from e
            raise

        await self.identity.set_claims(uid, {"role": user_data.role.value, "emailVerified": False})

        await self.tokens.send_email_verification(profile)
        await self.notifier.notify(
            "welcome", self.notifier.send_welcome_email, email, user_data.display_name
        )

        logger.info("user_created", user_id=uid, role=user_data.role.value)
        return profile

    async def list_users(
        self,
        role: Role | None = None,
        status: AccountStatus | None = AccountStatus.ACTIVE,
        search: str | None = None,
        limit: int = 10,
        start_after: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """
        Search profiles and enrich each with identity-provider state.

        Returns:
            Tuple of (users, cursor for the next page or None)
        """
        records = await self.store.search(
            role=role.value if role else None,
            status=status.value if status else None,
            search=search,
            limit=limit,
            start_after=start_after,
        )

        identities = await asyncio.gather(
            *(self._lookup_identity(record["id"]) for record in records)
        )
        users = [
            merge_identity(record, identity)
            for record, identity in zip(records, identities, strict=True)
        ]

        next_cursor = records[-1]["id"] if len(records) == limit else None
        return users, next_cursor

    async def get_user(self, user_id: str) -> dict[str, Any]:
        """
        Get a profile merged with identity metadata.

        Falls back to the bare profile when the identity record is gone.
        """
        profile = await self._require_profile(user_id)
        identity = await self._lookup_identity(user_id)
        return merge_identity(profile, identity)

    async def update_user(self, user_id: str, user_data: UserUpdate) -> dict[str, Any]:
        """
        Admin update of identity fields, role claims and profile fields.

        Raises:
            NotFoundException: No profile with this id
            ConflictException: The status change is not allowed
        """
        profile = await self._require_profile(user_id)
        changes = user_data.model_dump(exclude_unset=True)

        if user_data.status is not None:
            check_status_transition(profile["status"], user_data.status)

        identity_changes = {
            key: changes[key]
            for key in ("email", "display_name", "disabled")
            if changes.get(key) is not None
        }
        if "email" in identity_changes:
            identity_changes["email"] = identity_changes["email"].lower()

        identity = None
        if identity_changes:
            try:
                identity = await self.identity.update_identity(user_id, **identity_changes)
            except IdentityNotFound as e:
                raise NotFoundException("User not found") from e

        if user_data.role is not None and user_data.role.value != profile["role"]:
            if identity is None:
                identity = await self._lookup_identity(user_id)
            email_verified = identity["email_verified"] if identity else profile["email_verified"]
            await self.identity.set_claims(
                user_id, {"role": user_data.role.value, "emailVerified": email_verified}
            )

        fields: dict[str, Any] = {}
        for key in ("display_name", "personal_info", "preferences"):
            if changes.get(key) is not None:
                fields[key] = changes[key]
        if "email" in identity_changes:
            fields["email"] = identity_changes["email"]
        if user_data.status is not None:
            fields["status"] = user_data.status

        role = user_data.role.value if user_data.role else profile["role"]
        if user_data.role is not None:
            fields["role"] = role
        if role != Role.DOCTOR.value:
            if profile.get("professional_info") is not None:
                fields["professional_info"] = None
        elif changes.get("professional_info") is not None:
            fields["professional_info"] = changes["professional_info"]

        if fields:
            await self.store.update_fields(user_id, fields)

        logger.info("user_updated", user_id=user_id, fields=sorted(fields))
        return await self.get_user(user_id)

    async def delete_user(self, user_id: str, purge_identity: bool = False) -> bool:
        """
        Soft-delete a profile and disable or purge its identity.

        Returns:
            True if the identity record was hard-deleted
        """
        await self._require_profile(user_id)
        await self.store.soft_delete(user_id)

        try:
            if purge_identity:
                await self.identity.delete_identity(user_id)
            else:
                await self.identity.update_identity(user_id, disabled=True)
        except IdentityNotFound:
            logger.warning("identity_missing_on_delete", user_id=user_id)
            purge_identity = False

        logger.info("user_deleted", user_id=user_id, identity_purged=purge_identity)
        return purge_identity

    async def update_profile(self, principal: Principal, data: ProfileUpdate) -> dict[str, Any]:
        """Self-service update limited to non-protected profile fields."""
        fields = data.model_dump(exclude_unset=True, exclude_none=True)
        if not fields:
            return await self.get_user(principal.id)

        if "display_name" in fields:
            await self.identity.update_identity(principal.id, display_name=fields["display_name"])

        await self.store.update_fields(principal.id, fields)
        logger.info("profile_updated", user_id=principal.id, fields=sorted(fields))
        return await self.get_user(principal.id)

    async def change_password(self, principal: Principal, data: ChangePasswordRequest) -> None:
        """
        Change the signed-in user's password after re-authenticating them.

        Raises:
            BadRequestException: INVALID_CURRENT_PASSWORD
        """
        if not principal.email:
            raise BadRequestException("Account has no email address", code="NO_EMAIL")

        if not await self.identity.verify_password(principal.email, data.current_password):
            logger.info("password_change_rejected", user_id=principal.id)
            raise BadRequestException(
                "Current password is incorrect", code="INVALID_CURRENT_PASSWORD"
            )

        await self.identity.update_identity(principal.id, password=data.new_password)
        logger.info("password_changed", user_id=principal.id)

        await self.notifier.notify(
            "password_changed",
            self.notifier.send_password_changed_email,
            principal.email,
            getattr(principal, "display_name", None),
        )

    async def resend_verification(self, principal: Principal) -> None:
        """
        Issue a fresh verification token and email it.

        Raises:
            ConflictException: EMAIL_ALREADY_VERIFIED
            AppException: The email could not be delivered
        """
        if principal.email_verified:
            raise ConflictException("Email is already verified", code="EMAIL_ALREADY_VERIFIED")

        profile = await self._require_profile(principal.id)
        if principal.email:
            profile["email"] = principal.email

        if not await self.tokens.send_email_verification(profile):
            raise AppException(
                "Verification email could not be sent",
                status_code=502,
                code="EMAIL_DELIVERY_FAILED",
            )

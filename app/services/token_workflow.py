"""Single-use security tokens for email verification and password reset."""

from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

import structlog

from app.core.exceptions import (
    ConsistencyError,
    IdentityNotFound,
    LookupFailure,
    ProfileStoreError,
    TokenFailure,
)
from app.core.firebase import IdentityProvider
from app.core.security import (
    TokenPurpose,
    generate_security_token,
    hash_security_token,
    new_claim_marker,
    now_ms,
)
from app.schemas.users import AccountStatus
from app.services.notification_service import NotificationSender
from app.services.profile_store import ProfileStore, TokenCollision

logger = structlog.get_logger(__name__)


class SecurityTokenWorkflow:
    """
    Issue, validate and consume single-use tokens.

    Per (profile, purpose) a token moves NONE -> ISSUED -> CONSUMED, or lapses
    once the clock passes its expiry. Issuing replaces any live token for the
    same purpose. Consumption claims the token with a compare-and-set before
    the identity provider side effect runs, so racing consumers cannot both
    apply it, and only clears the token once the side effect succeeded.
    """

    MAX_ISSUE_ATTEMPTS = 3

    def __init__(
        self,
        store: ProfileStore,
        identity: IdentityProvider,
        notifier: NotificationSender,
        clock: Callable[[], int] = now_ms,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
    ):
        """Initialize the workflow with its collaborators."""
        self.store = store
        self.identity = identity
        self.notifier = notifier
        self.clock = clock
        self._ttl_ms = {
            TokenPurpose.VERIFY_EMAIL: int(verification_ttl.total_seconds() * 1000),
            TokenPurpose.RESET_PASSWORD: int(reset_ttl.total_seconds() * 1000),
        }

    async def issue(self, profile_id: str, purpose: TokenPurpose) -> str:
        """
        Generate and persist a new token for ``purpose``.

        Returns:
            The plain token, for out-of-band delivery

        Raises:
            LookupFailure: The profile does not exist
            ConsistencyError: No unique token could be generated
        """
        for attempt in range(1, self.MAX_ISSUE_ATTEMPTS + 1):
            token = generate_security_token()
            expires_at = self.clock() + self._ttl_ms[purpose]
            try:
                stored = await self.store.set_token(
                    profile_id, purpose, hash_security_token(token), expires_at
                )
            except TokenCollision:
                logger.warning(
                    "security_token_collision",
                    profile_id=profile_id,
                    purpose=purpose.value,
                    attempt=attempt,
                )
                continue

            if not stored:
                raise LookupFailure("USER_NOT_FOUND")

            logger.info(
                "security_token_issued",
                profile_id=profile_id,
                purpose=purpose.value,
                expires_at=expires_at,
            )
            return token

        raise ConsistencyError("Could not issue a unique security token")

    async def _match(self, token: str, purpose: TokenPurpose) -> dict[str, Any]:
        if not token:
            raise TokenFailure("INVALID_OR_EXPIRED_TOKEN")

        matches = await self.store.find_by_token(purpose, hash_security_token(token), self.clock())

        if not matches:
            logger.info("security_token_rejected", purpose=purpose.value)
            raise TokenFailure("INVALID_OR_EXPIRED_TOKEN")

        if len(matches) > 1:
            logger.error(
                "security_token_not_unique",
                purpose=purpose.value,
                profile_ids=[match["id"] for match in matches],
            )
            raise ConsistencyError("Security token matches more than one profile")

        return matches[0]

    async def validate(self, token: str, purpose: TokenPurpose) -> str:
        """
        Resolve a live token to its profile id.

        Wrong, expired and already-consumed tokens are indistinguishable.

        Raises:
            TokenFailure: INVALID_OR_EXPIRED_TOKEN
        """
        record = await self._match(token, purpose)
        return record["id"]

    async def consume(
        self,
        profile_id: str,
        purpose: TokenPurpose,
        token: str,
        side_effect: Callable[[], Awaitable[Any]],
        profile_fields: dict[str, Any] | None = None,
    ) -> None:
        """
        Apply ``side_effect`` and retire the token.

        Args:
            profile_id: Owner of the token
            purpose: Token scope
            token: Plain token supplied by the caller
            side_effect: Idempotent identity provider update gated by the token
            profile_fields: Profile fields written together with the token clear

        Raises:
            TokenFailure: The token is no longer live (lost a race, expired or used)
            ConsistencyError: The side effect was applied but the token could not be cleared
        """
        digest = hash_security_token(token)
        marker = new_claim_marker()

        claimed = await self.store.compare_and_swap_token(
            profile_id, purpose, digest, marker, unexpired_at=self.clock()
        )
        if not claimed:
            logger.info(
                "security_token_claim_lost", profile_id=profile_id, purpose=purpose.value
            )
            raise TokenFailure("INVALID_OR_EXPIRED_TOKEN")

        try:
            await side_effect()
        except BaseException:
            # Put the token back so the caller can retry, cancellation included
            try:
                await self.store.compare_and_swap_token(profile_id, purpose, marker, digest)
            except ProfileStoreError:
                logger.error(
                    "security_token_restore_failed",
                    profile_id=profile_id,
                    purpose=purpose.value,
                )
            raise

        try:
            cleared = await self.store.compare_and_clear_token(
                profile_id, purpose, marker, extra=profile_fields
            )
        except ProfileStoreError as e:
            logger.error(
                "security_token_partial_consume",
                profile_id=profile_id,
                purpose=purpose.value,
                error=str(e),
            )
            raise ConsistencyError(
                "The change was applied but the token could not be retired"
            ) from e

        if not cleared:
            logger.error(
                "security_token_partial_consume",
                profile_id=profile_id,
                purpose=purpose.value,
            )
            raise ConsistencyError("The change was applied but the token could not be retired")

        logger.info("security_token_consumed", profile_id=profile_id, purpose=purpose.value)

    async def verify_email(self, token: str) -> str:
        """
        Mark the token owner's email verified.

        Returns:
            The verified profile id
        """
        profile_id = await self.validate(token, TokenPurpose.VERIFY_EMAIL)

        async def mark_verified() -> None:
            try:
                await self.identity.update_identity(profile_id, email_verified=True)
            except IdentityNotFound as e:
                raise TokenFailure("INVALID_OR_EXPIRED_TOKEN") from e

        await self.consume(
            profile_id,
            TokenPurpose.VERIFY_EMAIL,
            token,
            mark_verified,
            profile_fields={"email_verified": True},
        )
        return profile_id

    async def reset_password(self, token: str, new_password: str) -> str:
        """
        Set a new password for the token owner.

        Returns:
            The profile id whose password changed
        """
        record = await self._match(token, TokenPurpose.RESET_PASSWORD)
        profile_id = record["id"]

        async def set_password() -> None:
            try:
                await self.identity.update_identity(profile_id, password=new_password)
            except IdentityNotFound as e:
                raise TokenFailure("INVALID_OR_EXPIRED_TOKEN") from e

        await self.consume(profile_id, TokenPurpose.RESET_PASSWORD, token, set_password)

        await self.notifier.notify(
            "password_changed",
            self.notifier.send_password_changed_email,
            record["email"],
            record.get("display_name"),
        )
        return profile_id

    async def request_password_reset(self, email: str) -> None:
        """
        Issue a reset token and email it, if the account can be reset.

        Unknown emails and accounts that are not active are a silent no-op so
        callers cannot probe which emails are registered.
        """
        identity = await self.identity.get_identity_by_email(email)
        if identity is None:
            logger.info("password_reset_skipped", reason="unknown_email")
            return

        profile = await self.store.get(identity["id"])
        if profile is None or profile["status"] != AccountStatus.ACTIVE.value:
            logger.info(
                "password_reset_skipped",
                reason="no_active_profile",
                profile_id=identity["id"],
            )
            return

        token = await self.issue(profile["id"], TokenPurpose.RESET_PASSWORD)

        await self.notifier.notify(
            "password_reset",
            self.notifier.send_password_reset_email,
            identity["email"] or profile["email"],
            token,
            profile.get("display_name") or identity.get("display_name"),
        )

    async def send_email_verification(self, profile: dict[str, Any]) -> bool:
        """
        Issue a verification token for ``profile`` and email it.

        Returns:
            True if the email was delivered
        """
        token = await self.issue(profile["id"], TokenPurpose.VERIFY_EMAIL)
        return await self.notifier.notify(
            "email_verification",
            self.notifier.send_verification_email,
            profile["email"],
            token,
            profile.get("display_name"),
        )

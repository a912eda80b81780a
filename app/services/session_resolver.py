"""Resolve bearer credentials into an authenticated principal."""

from typing import Any

import structlog

from app.core.exceptions import (
    AuthFailure,
    CodedFailure,
    IdentityProviderError,
    IdentityTokenExpired,
    IdentityTokenInvalid,
    LookupFailure,
    PolicyFailure,
    ProfileStoreError,
)
from app.core.firebase import IdentityProvider
from app.schemas.users import AccountStatus, Principal
from app.services.profile_store import ProfileStore, public_view

logger = structlog.get_logger(__name__)

BEARER_PREFIX = "Bearer "


def build_principal(claims: dict[str, Any], profile: dict[str, Any]) -> Principal:
    """
    Merge verified token claims with the stored profile.

    Profile fields win, except ``id``, ``email`` and ``email_verified`` which
    always come from the verified token.
    """
    merged = public_view(profile)
    merged.update(
        id=claims["uid"],
        email=claims.get("email"),
        email_verified=bool(claims.get("email_verified", False)),
    )
    return Principal.model_validate(merged)


class SessionResolver:
    """Turn an ``Authorization`` header into a ``Principal`` or a typed failure."""

    def __init__(self, identity: IdentityProvider, store: ProfileStore):
        """Initialize resolver with the identity provider and profile store."""
        self.identity = identity
        self.store = store

    def _reject(self, failure: CodedFailure, uid: str | None = None) -> CodedFailure:
        logger.warning("auth_audit", outcome="rejected", reason=failure.code, uid=uid)
        return failure

    async def resolve(self, authorization: str | None) -> Principal:
        """
        Verify the bearer token and hydrate the principal.

        Args:
            authorization: Raw ``Authorization`` header value

        Returns:
            The authenticated principal

        Raises:
            AuthFailure: Missing, empty, expired or invalid token, or provider error
            LookupFailure: The profile could not be read or does not exist
            PolicyFailure: ACCOUNT_INACTIVE
        """
        if not authorization or not authorization.startswith(BEARER_PREFIX):
            raise self._reject(AuthFailure("MISSING_AUTH_TOKEN"))

        token = authorization[len(BEARER_PREFIX) :].strip()
        if not token:
            raise self._reject(AuthFailure("EMPTY_AUTH_TOKEN"))

        try:
            claims = await self.identity.verify_token(token)
        except IdentityTokenExpired:
            raise self._reject(AuthFailure("TOKEN_EXPIRED"))
        except IdentityTokenInvalid:
            raise self._reject(AuthFailure("INVALID_TOKEN"))
        except IdentityProviderError as e:
            logger.error("auth_provider_error", error=e.message)
            raise self._reject(AuthFailure("AUTH_ERROR"))

        uid = claims["uid"]

        try:
            profile = await self.store.get(uid)
        except ProfileStoreError as e:
            logger.error("auth_profile_fetch_failed", uid=uid, error=e.message)
            raise self._reject(LookupFailure("USER_FETCH_ERROR"), uid)

        if profile is None:
            raise self._reject(LookupFailure("USER_NOT_FOUND"), uid)

        if profile["status"] != AccountStatus.ACTIVE.value:
            raise self._reject(PolicyFailure("ACCOUNT_INACTIVE", status=profile["status"]), uid)

        principal = build_principal(claims, profile)
        logger.info(
            "auth_audit",
            outcome="authenticated",
            uid=principal.id,
            email=principal.email,
            role=principal.role.value,
        )
        return principal

"""Firebase Admin SDK initialization and the identity provider client."""

import asyncio
import json
import os
from collections.abc import Callable
from typing import Any, TypeVar

import firebase_admin
import httpx
from firebase_admin import auth, credentials
from firebase_admin import exceptions as firebase_exceptions
from structlog import get_logger

from app.core.exceptions import (
    EmailAlreadyExists,
    IdentityNotFound,
    IdentityProviderError,
    IdentityTokenExpired,
    IdentityTokenInvalid,
)

logger = get_logger(__name__)

T = TypeVar("T")

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signInWithPassword"

# Identity Toolkit error messages that mean "wrong credentials" rather than an outage
_BAD_CREDENTIAL_ERRORS = {
    "EMAIL_NOT_FOUND",
    "INVALID_PASSWORD",
    "INVALID_LOGIN_CREDENTIALS",
    "USER_DISABLED",
}

_firebase_app: firebase_admin.App | None = None


def initialize_firebase(
    firebase_credentials_path: str | None = None, firebase_config_json: str | None = None
) -> None:
    """
    Initialize Firebase Admin SDK.

    Args:
        firebase_credentials_path: Optional path to service account JSON file.
        firebase_config_json: Optional raw JSON string of service account.

    Looks for Firebase credentials in order:
    1. firebase_config_json parameter
    2. firebase_credentials_path parameter
    3. Default application credentials
    """
    global _firebase_app

    if _firebase_app is not None:
        logger.info("Firebase already initialized")
        return

    try:
        cred = None

        if firebase_config_json:
            logger.info("Initializing Firebase with JSON string from environment")
            cred_dict = json.loads(firebase_config_json)
            # Escaped newlines survive most secret stores
            if "private_key" in cred_dict:
                cred_dict["private_key"] = cred_dict["private_key"].replace("\\n", "\n")
            cred = credentials.Certificate(cred_dict)

        elif firebase_credentials_path and os.path.exists(firebase_credentials_path):
            logger.info("Initializing Firebase with JSON file", path=firebase_credentials_path)
            cred = credentials.Certificate(firebase_credentials_path)

        if cred:
            _firebase_app = firebase_admin.initialize_app(cred)
        else:
            _firebase_app = firebase_admin.initialize_app()
            logger.info("Firebase initialized with default credentials")

    except Exception as e:
        logger.error("Failed to initialize Firebase", error=str(e))
        raise


def is_firebase_initialized() -> bool:
    """Check whether the Admin SDK app has been initialized."""
    return _firebase_app is not None


def close_firebase() -> None:
    """Delete the Firebase app so a later initialize_firebase() starts clean."""
    global _firebase_app

    if _firebase_app is not None:
        firebase_admin.delete_app(_firebase_app)
        _firebase_app = None


def _identity_to_dict(record: auth.UserRecord) -> dict[str, Any]:
    metadata = record.user_metadata
    return {
        "id": record.uid,
        "email": record.email,
        "email_verified": record.email_verified,
        "display_name": record.display_name,
        "disabled": record.disabled,
        "metadata": {
            "creation_time": metadata.creation_timestamp if metadata else None,
            "last_sign_in_time": metadata.last_sign_in_timestamp if metadata else None,
        },
    }


class IdentityProvider:
    """
    Async facade over Firebase Authentication.

    The Admin SDK is blocking, so every call runs in a worker thread and is
    bounded by ``timeout`` seconds. A timeout is reported as
    ``IdentityProviderError``; nothing here retries.
    """

    def __init__(self, timeout: float, web_api_key: str | None = None):
        """Initialize the provider with a per-call timeout."""
        self.timeout = timeout
        self.web_api_key = web_api_key

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout,
            )
        except TimeoutError:
            logger.error("identity_provider_timeout", operation=operation, timeout=self.timeout)
            raise IdentityProviderError(f"Identity provider timed out during {operation}")

    async def verify_token(self, id_token: str) -> dict[str, Any]:
        """
        Verify a Firebase ID token.

        Returns:
            Decoded claims (``uid``, ``email``, ``email_verified``, ...)

        Raises:
            IdentityTokenExpired: The token has expired
            IdentityTokenInvalid: The token is malformed, revoked or forged
            IdentityProviderError: Any other provider failure, including timeouts
        """
        try:
            return await self._call(
                "verify_token", auth.verify_id_token, id_token, clock_skew_seconds=10
            )
        except auth.ExpiredIdTokenError as e:
            raise IdentityTokenExpired(str(e)) from e
        except (auth.InvalidIdTokenError, ValueError) as e:
            raise IdentityTokenInvalid(str(e)) from e
        except IdentityProviderError:
            raise
        except Exception as e:
            logger.error("firebase_token_verification_failed", error=str(e))
            raise IdentityProviderError("Token verification failed") from e

    async def get_identity(self, uid: str) -> dict[str, Any]:
        """Get an identity record by uid."""
        try:
            record = await self._call("get_identity", auth.get_user, uid)
        except auth.UserNotFoundError as e:
            raise IdentityNotFound(uid) from e
        except firebase_exceptions.FirebaseError as e:
            raise IdentityProviderError(str(e)) from e
        return _identity_to_dict(record)

    async def get_identity_by_email(self, email: str) -> dict[str, Any] | None:
        """Get an identity record by email, or None when no account uses it."""
        try:
            record = await self._call("get_identity_by_email", auth.get_user_by_email, email)
        except auth.UserNotFoundError:
            return None
        except firebase_exceptions.FirebaseError as e:
            raise IdentityProviderError(str(e)) from e
        return _identity_to_dict(record)

    async def create_identity(
        self,
        email: str,
        password: str,
        display_name: str | None = None,
    ) -> dict[str, Any]:
        """Create an identity record with an unverified email."""
        try:
            record = await self._call(
                "create_identity",
                auth.create_user,
                email=email,
                password=password,
                display_name=display_name,
                email_verified=False,
                disabled=False,
            )
        except auth.EmailAlreadyExistsError as e:
            raise EmailAlreadyExists() from e
        except firebase_exceptions.FirebaseError as e:
            raise IdentityProviderError(str(e)) from e
        return _identity_to_dict(record)

    async def update_identity(self, uid: str, **fields: Any) -> dict[str, Any]:
        """
        Update identity fields.

        Accepts ``email``, ``display_name``, ``password``, ``email_verified`` and
        ``disabled``; ``None`` values are left untouched.
        """
        changes = {key: value for key, value in fields.items() if value is not None}
        try:
            record = await self._call("update_identity", auth.update_user, uid, **changes)
        except auth.UserNotFoundError as e:
            raise IdentityNotFound(uid) from e
        except auth.EmailAlreadyExistsError as e:
            raise EmailAlreadyExists() from e
        except firebase_exceptions.FirebaseError as e:
            raise IdentityProviderError(str(e)) from e
        return _identity_to_dict(record)

    async def delete_identity(self, uid: str) -> None:
        """Hard-delete an identity record."""
        try:
            await self._call("delete_identity", auth.delete_user, uid)
        except auth.UserNotFoundError as e:
            raise IdentityNotFound(uid) from e
        except firebase_exceptions.FirebaseError as e:
            raise IdentityProviderError(str(e)) from e

    async def set_claims(self, uid: str, claims: dict[str, Any]) -> None:
        """Replace the custom claims carried in the user's ID tokens."""
        try:
            await self._call("set_claims", auth.set_custom_user_claims, uid, claims)
        except auth.UserNotFoundError as e:
            raise IdentityNotFound(uid) from e
        except firebase_exceptions.FirebaseError as e:
            raise IdentityProviderError(str(e)) from e

    async def verify_password(self, email: str, password: str) -> bool:
        """
        Re-authenticate a user by email and password.

        The Admin SDK cannot check passwords, so this goes through the
        Identity Toolkit REST endpoint with the project's web API key.
        """
        if not self.web_api_key:
            raise IdentityProviderError("Password verification is not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    IDENTITY_TOOLKIT_URL,
                    params={"key": self.web_api_key},
                    json={"email": email, "password": password, "returnSecureToken": False},
                )
        except httpx.HTTPError as e:
            logger.error("password_verification_failed", error=str(e))
            raise IdentityProviderError("Password verification failed") from e

        if response.status_code == 200:
            return True

        message = response.json().get("error", {}).get("message", "")
        # Messages may carry a suffix, e.g. "TOO_MANY_ATTEMPTS_TRY_LATER : ..."
        if message.split(" ")[0] in _BAD_CREDENTIAL_ERRORS:
            return False

        logger.error(
            "password_verification_failed",
            status_code=response.status_code,
            error=message,
        )
        raise IdentityProviderError("Password verification failed")

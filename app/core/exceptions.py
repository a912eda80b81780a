"""Custom application exceptions."""

from typing import Any, ClassVar


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: str | None = None,
        error: str | None = None,
        extra: dict[str, Any] | None = None,
    ):
        """Initialize exception with message, status code and optional machine code."""
        self.message = message
        self.status_code = status_code
        self.code = code
        self.error = error
        self.extra = extra or {}
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404, error="Not found")


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str = "Bad request", code: str | None = None):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400, code=code, error="Bad request")


class ConflictException(AppException):
    """Conflict exception."""

    def __init__(self, message: str = "Conflict", code: str | None = None):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409, code=code, error="Conflict")


class RateLimitException(AppException):
    """Rate limit exceeded exception."""

    def __init__(self, message: str = "Rate limit exceeded"):
        """Initialize with 429 status code."""
        super().__init__(message, status_code=429, code="RATE_LIMITED", error="Too many requests")


class CodedFailure(AppException):
    """
    Failure identified by a machine-readable code.

    Subclasses declare a catalogue mapping each code to
    ``(status_code, error summary, default message)``.
    """

    CATALOGUE: ClassVar[dict[str, tuple[int, str, str]]] = {}

    def __init__(self, code: str, message: str | None = None, **extra: Any):
        """Initialize from a catalogue code."""
        if code not in self.CATALOGUE:
            raise KeyError(f"Unknown {self.__class__.__name__} code: {code}")
        status_code, error, default_message = self.CATALOGUE[code]
        super().__init__(
            message or default_message,
            status_code=status_code,
            code=code,
            error=error,
            extra=extra,
        )


class AuthFailure(CodedFailure):
    """Bearer credentials could not be verified."""

    CATALOGUE = {
        "MISSING_AUTH_TOKEN": (401, "Unauthorized", "An authentication token is required"),
        "EMPTY_AUTH_TOKEN": (401, "Unauthorized", "The authentication token is empty"),
        "TOKEN_EXPIRED": (
            401,
            "Session expired",
            "Your session has expired. Please sign in again.",
        ),
        "INVALID_TOKEN": (
            401,
            "Invalid token",
            "The authentication token is malformed or invalid",
        ),
        "AUTH_ERROR": (
            500,
            "Authentication error",
            "An error occurred while processing authentication",
        ),
    }


class LookupFailure(CodedFailure):
    """Authenticated subject could not be hydrated from the profile store."""

    CATALOGUE = {
        "USER_FETCH_ERROR": (500, "Server error", "The user profile could not be retrieved"),
        "USER_NOT_FOUND": (404, "User not found", "The user profile does not exist"),
    }


class PolicyFailure(CodedFailure):
    """Access to the requested resource was denied."""

    CATALOGUE = {
        "UNAUTHENTICATED": (
            401,
            "Not authenticated",
            "Authentication is required to access this resource",
        ),
        "ACCOUNT_INACTIVE": (
            403,
            "Account inactive",
            "Your account has been deactivated or suspended",
        ),
        "FORBIDDEN_ROLE": (
            403,
            "Access denied",
            "You do not have the required role to access this resource",
        ),
        "FORBIDDEN_OWNERSHIP": (
            403,
            "Access denied",
            "You can only access your own resources",
        ),
    }


class TokenFailure(CodedFailure):
    """A security token was wrong, expired or already used."""

    CATALOGUE = {
        "INVALID_OR_EXPIRED_TOKEN": (
            400,
            "Invalid token",
            "The token is invalid or has expired",
        ),
    }


class IdentityProviderError(AppException):
    """Identity provider is unreachable or returned an unexpected error."""

    def __init__(self, message: str = "Identity provider error"):
        """Initialize with 500 status code."""
        super().__init__(message, status_code=500, code="IDENTITY_PROVIDER_ERROR")


class ProfileStoreError(AppException):
    """Profile store is unreachable or a statement failed."""

    def __init__(self, message: str = "Profile store error"):
        """Initialize with 500 status code."""
        super().__init__(message, status_code=500, code="STORE_ERROR")


class ConsistencyError(AppException):
    """Provider and store disagree after a partially applied update."""

    def __init__(self, message: str = "Inconsistent account state"):
        """Initialize with 500 status code."""
        super().__init__(message, status_code=500, code="CONSISTENCY_ERROR")


class IdentityTokenExpired(Exception):
    """The provider reported an expired ID token."""


class IdentityTokenInvalid(Exception):
    """The provider rejected the ID token as malformed or invalid."""


class IdentityNotFound(Exception):
    """No identity record exists for the given uid or email."""


class EmailAlreadyExists(ConflictException):
    """An identity with this email already exists."""

    def __init__(self, message: str = "Email already registered"):
        """Initialize with 409 status code."""
        super().__init__(message, code="EMAIL_ALREADY_EXISTS")

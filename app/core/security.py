"""Security token primitives and password policy."""

import hashlib
import re
import secrets
import time
from enum import Enum

# 32 random bytes, hex encoded: 256 bits of entropy
TOKEN_BYTES = 32

# Stored in place of a token digest while a consumer applies its side effect
CLAIM_PREFIX = "claimed:"

PASSWORD_MIN_LENGTH = 8


class TokenPurpose(str, Enum):
    """Scope of a single-use security token."""

    VERIFY_EMAIL = "verify-email"
    RESET_PASSWORD = "reset-password"

    @property
    def token_column(self) -> str:
        """Profile column holding the token digest."""
        if self is TokenPurpose.VERIFY_EMAIL:
            return "email_verification_token"
        return "reset_token"

    @property
    def expiry_column(self) -> str:
        """Profile column holding the expiry in epoch milliseconds."""
        if self is TokenPurpose.VERIFY_EMAIL:
            return "email_verification_expires"
        return "reset_token_expiry"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_security_token() -> str:
    """Generate a cryptographically secure, URL-safe token."""
    return secrets.token_hex(TOKEN_BYTES)


def hash_security_token(token: str) -> str:
    """
    SHA-256 digest of a token.

    Only digests are persisted, so a leaked profile row cannot be replayed.
    """
    return hashlib.sha256(token.encode()).hexdigest()


def new_claim_marker() -> str:
    """Marker written over a token digest by the consumer that won the claim."""
    return f"{CLAIM_PREFIX}{secrets.token_hex(16)}"


def password_policy_errors(password: str) -> list[str]:
    """
    Check a candidate password against the account password policy.

    Returns:
        Human-readable violations; empty when the password is acceptable
    """
    errors = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[^A-Za-z0-9]", password):
        errors.append("Password must contain at least one special character")
    return errors

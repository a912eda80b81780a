"""Tests for bearer token resolution."""

from unittest.mock import AsyncMock

import pytest

from app.core.exceptions import AuthFailure, LookupFailure, PolicyFailure, ProfileStoreError
from app.schemas.users import AccountStatus, Role
from app.services.session_resolver import SessionResolver


@pytest.fixture
def resolver(identity, store) -> SessionResolver:
    return SessionResolver(identity, store)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("header", "code"),
    [
        (None, "MISSING_AUTH_TOKEN"),
        ("", "MISSING_AUTH_TOKEN"),
        ("Basic dXNlcjpwYXNz", "MISSING_AUTH_TOKEN"),
        ("bearer lowercase-scheme", "MISSING_AUTH_TOKEN"),
        ("Bearer ", "EMPTY_AUTH_TOKEN"),
        ("Bearer    ", "EMPTY_AUTH_TOKEN"),
        ("Bearer garbage", "INVALID_TOKEN"),
        ("Bearer expired-id-token", "TOKEN_EXPIRED"),
    ],
)
async def test_rejected_headers(resolver, header, code):
    with pytest.raises(AuthFailure) as exc_info:
        await resolver.resolve(header)

    assert exc_info.value.code == code
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_provider_outage_fails_closed(resolver, identity, create_account):
    await create_account("alice")
    token = identity.issue_id_token("alice")
    identity.unavailable = True

    with pytest.raises(AuthFailure) as exc_info:
        await resolver.resolve(f"Bearer {token}")

    assert exc_info.value.code == "AUTH_ERROR"
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_missing_profile(resolver, identity):
    identity.add_user("orphan", "orphan@example.com")

    with pytest.raises(LookupFailure) as exc_info:
        await resolver.resolve(f"Bearer {identity.issue_id_token('orphan')}")

    assert exc_info.value.code == "USER_NOT_FOUND"
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_profile_store_failure(identity, create_account):
    await create_account("alice")
    broken_store = AsyncMock()
    broken_store.get.side_effect = ProfileStoreError("Profile store timed out during get")

    with pytest.raises(LookupFailure) as exc_info:
        await SessionResolver(identity, broken_store).resolve(
            f"Bearer {identity.issue_id_token('alice')}"
        )

    assert exc_info.value.code == "USER_FETCH_ERROR"
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["inactive", "suspended", "deleted"])
async def test_inactive_account(resolver, identity, create_account, status):
    await create_account("alice", status=status)

    with pytest.raises(PolicyFailure) as exc_info:
        await resolver.resolve(f"Bearer {identity.issue_id_token('alice')}")

    assert exc_info.value.code == "ACCOUNT_INACTIVE"
    assert exc_info.value.status_code == 403
    assert exc_info.value.extra == {"status": status}


@pytest.mark.asyncio
async def test_principal_merges_claims_and_profile(resolver, identity, store, create_account):
    """Token claims own id, email and email_verified; the profile supplies the rest."""
    await create_account("alice", email="alice@example.com", role="doctor")
    await store.update_fields("alice", {"email": "stale@example.com", "email_verified": True})
    identity.users["alice"]["email_verified"] = False

    principal = await resolver.resolve(f"Bearer {identity.issue_id_token('alice')}")

    assert principal.id == "alice"
    assert principal.email == "alice@example.com"
    assert principal.email_verified is False
    assert principal.role == Role.DOCTOR
    assert principal.status == AccountStatus.ACTIVE
    assert principal.display_name == "Alice"


@pytest.mark.asyncio
async def test_principal_never_carries_security_tokens(resolver, identity, store, create_account):
    await create_account("alice")
    await store.update_fields("alice", {"reset_token": "digest", "reset_token_expiry": 1})

    principal = await resolver.resolve(f"Bearer {identity.issue_id_token('alice')}")
    dumped = principal.model_dump()

    assert "reset_token" not in dumped
    assert "reset_token_expiry" not in dumped
    assert "email_verification_token" not in dumped

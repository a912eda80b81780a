"""Tests for the security token workflow."""

import asyncio

import pytest

from app.core.exceptions import (
    ConsistencyError,
    IdentityProviderError,
    LookupFailure,
    ProfileStoreError,
    TokenFailure,
)
from app.core.security import TokenPurpose, hash_security_token
from app.services.profile_store import TokenCollision


@pytest.mark.asyncio
async def test_issue_then_validate_returns_owner(create_account, workflow, store):
    """A fresh token resolves to its owner."""
    await create_account("alice")

    token = await workflow.issue("alice", TokenPurpose.RESET_PASSWORD)

    assert len(token) == 64
    assert await workflow.validate(token, TokenPurpose.RESET_PASSWORD) == "alice"

    profile = await store.get("alice")
    assert profile["reset_token"] == hash_security_token(token)
    assert profile["reset_token"] != token


@pytest.mark.asyncio
async def test_token_is_scoped_to_its_purpose(create_account, workflow):
    """A reset token does not verify an email and vice versa."""
    await create_account("alice")
    token = await workflow.issue("alice", TokenPurpose.RESET_PASSWORD)

    with pytest.raises(TokenFailure) as exc_info:
        await workflow.validate(token, TokenPurpose.VERIFY_EMAIL)

    assert exc_info.value.code == "INVALID_OR_EXPIRED_TOKEN"


@pytest.mark.asyncio
async def test_issue_replaces_previous_token(create_account, workflow):
    """Only the most recently issued token per purpose is live."""
    await create_account("alice")
    first = await workflow.issue("alice", TokenPurpose.VERIFY_EMAIL)
    second = await workflow.issue("alice", TokenPurpose.VERIFY_EMAIL)

    assert first != second
    with pytest.raises(TokenFailure):
        await workflow.validate(first, TokenPurpose.VERIFY_EMAIL)
    assert await workflow.validate(second, TokenPurpose.VERIFY_EMAIL) == "alice"


@pytest.mark.asyncio
async def test_issue_for_unknown_profile(workflow):
    """Issuing for a missing profile is a lookup failure."""
    with pytest.raises(LookupFailure) as exc_info:
        await workflow.issue("ghost", TokenPurpose.RESET_PASSWORD)

    assert exc_info.value.code == "USER_NOT_FOUND"


@pytest.mark.asyncio
async def test_issue_retries_on_collision(create_account, workflow, monkeypatch):
    """A digest collision is retried with a new token."""
    await create_account("alice")
    original = workflow.store.set_token
    attempts = []

    async def flaky_set_token(*args, **kwargs):
        attempts.append(args)
        if len(attempts) == 1:
            raise TokenCollision("reset-password")
        return await original(*args, **kwargs)

    monkeypatch.setattr(workflow.store, "set_token", flaky_set_token)

    token = await workflow.issue("alice", TokenPurpose.RESET_PASSWORD)

    assert len(attempts) == 2
    assert await workflow.validate(token, TokenPurpose.RESET_PASSWORD) == "alice"


@pytest.mark.asyncio
async def test_issue_gives_up_after_repeated_collisions(create_account, workflow, monkeypatch):
    await create_account("alice")

    async def always_collides(*args, **kwargs):
        raise TokenCollision("reset-password")

    monkeypatch.setattr(workflow.store, "set_token", always_collides)

    with pytest.raises(ConsistencyError):
        await workflow.issue("alice", TokenPurpose.RESET_PASSWORD)


@pytest.mark.asyncio
async def test_unique_digest_enforced_by_store(create_account, store):
    """The store refuses to put the same digest on two profiles."""
    await create_account("alice")
    await create_account("bob")

    await store.set_token("alice", TokenPurpose.RESET_PASSWORD, "digest", 10)

    with pytest.raises(TokenCollision):
        await store.set_token("bob", TokenPurpose.RESET_PASSWORD, "digest", 10)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("offset_ms", "accepted"),
    [(-1, True), (0, False), (1, False)],
)
async def test_expiry_boundary(create_account, workflow, clock, offset_ms, accepted):
    """Tokens are accepted strictly before expiry and rejected at or after it."""
    await create_account("alice")
    token = await workflow.issue("alice", TokenPurpose.RESET_PASSWORD)

    clock.advance(hours=1, ms=offset_ms)

    if accepted:
        assert await workflow.validate(token, TokenPurpose.RESET_PASSWORD) == "alice"
    else:
        with pytest.raises(TokenFailure):
            await workflow.validate(token, TokenPurpose.RESET_PASSWORD)


@pytest.mark.asyncio
async def test_validate_rejects_empty_and_unknown_tokens(workflow):
    for token in ("", "not-a-token"):
        with pytest.raises(TokenFailure) as exc_info:
            await workflow.validate(token, TokenPurpose.VERIFY_EMAIL)
        assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_reset_password_consumes_token(create_account, workflow, identity, notifier, store):
    """A reset applies the new password once and retires the token."""
    await create_account("alice", email="alice@example.com")
    token = await workflow.issue("alice", TokenPurpose.RESET_PASSWORD)

    assert await workflow.reset_password(token, "Brand-new1") == "alice"

    assert identity.passwords["alice"] == "Brand-new1"
    profile = await store.get("alice")
    assert profile["reset_token"] is None
    assert profile["reset_token_expiry"] is None
    assert notifier.last("password_changed")["to"] == "alice@example.com"


@pytest.mark.asyncio
async def test_consume_twice_is_invalid_both_times(create_account, workflow, identity):
    """Replaying a consumed token never repeats the side effect."""
    await create_account("alice")
    token = await workflow.issue("alice", TokenPurpose.RESET_PASSWORD)
    await workflow.reset_password(token, "Brand-new1")

    for _ in range(2):
        with pytest.raises(TokenFailure):
            await workflow.reset_password(token, "Another-new2")

    assert identity.password_changes("alice") == 1
    assert identity.passwords["alice"] == "Brand-new1"


@pytest.mark.asyncio
async def test_direct_consume_after_consumption(create_account, workflow):
    await create_account("alice")
    token = await workflow.issue("alice", TokenPurpose.VERIFY_EMAIL)
    calls = []

    async def side_effect():
        calls.append(1)

    await workflow.consume("alice", TokenPurpose.VERIFY_EMAIL, token, side_effect)

    for _ in range(2):
        with pytest.raises(TokenFailure):
            await workflow.consume("alice", TokenPurpose.VERIFY_EMAIL, token, side_effect)

    assert calls == [1]


@pytest.mark.asyncio
async def test_consume_rejects_token_of_another_profile(create_account, workflow):
    """A live token only unlocks the profile it was issued for."""
    await create_account("alice")
    await create_account("bob")
    token = await workflow.issue("alice", TokenPurpose.RESET_PASSWORD)
    calls = []

    async def side_effect():
        calls.append(1)

    with pytest.raises(TokenFailure) as exc_info:
        await workflow.consume("bob", TokenPurpose.RESET_PASSWORD, token, side_effect)

    assert exc_info.value.code == "INVALID_OR_EXPIRED_TOKEN"
    assert calls == []
    assert await workflow.validate(token, TokenPurpose.RESET_PASSWORD) == "alice"


@pytest.mark.asyncio
async def test_concurrent_resets_apply_exactly_once(
    create_account, make_workflow, session_factory, identity
):
    """Two racing consumers of one token yield one change and one rejection."""
    await create_account("alice")

    async with session_factory() as first_session, session_factory() as second_session:
        first = make_workflow(first_session)
        second = make_workflow(second_session)
        token = await first.issue("alice", TokenPurpose.RESET_PASSWORD)

        results = await asyncio.gather(
            first.reset_password(token, "First-pass1"),
            second.reset_password(token, "Second-pass2"),
            return_exceptions=True,
        )

    successes = [result for result in results if result == "alice"]
    failures = [result for result in results if isinstance(result, TokenFailure)]

    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].code == "INVALID_OR_EXPIRED_TOKEN"
    assert identity.password_changes("alice") == 1


@pytest.mark.asyncio
async def test_provider_failure_keeps_token(create_account, workflow, identity, store):
    """When the provider rejects the change the token stays usable."""
    await create_account("alice")
    token = await workflow.issue("alice", TokenPurpose.RESET_PASSWORD)
    identity.fail_updates = 1

    with pytest.raises(IdentityProviderError):
        await workflow.reset_password(token, "Brand-new1")

    profile = await store.get("alice")
    assert profile["reset_token"] == hash_security_token(token)
    assert identity.passwords["alice"] == "Original1!"

    await workflow.reset_password(token, "Brand-new1")
    assert identity.passwords["alice"] == "Brand-new1"


@pytest.mark.asyncio
async def test_cancelled_side_effect_keeps_token(create_account, workflow, store):
    """A consume cancelled mid-flight leaves the token usable."""
    await create_account("alice")
    token = await workflow.issue("alice", TokenPurpose.RESET_PASSWORD)

    async def cancelled():
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await workflow.consume("alice", TokenPurpose.RESET_PASSWORD, token, cancelled)

    profile = await store.get("alice")
    assert profile["reset_token"] == hash_security_token(token)
    assert await workflow.validate(token, TokenPurpose.RESET_PASSWORD) == "alice"


@pytest.mark.asyncio
async def test_failed_clear_after_side_effect_is_consistency_error(
    create_account, workflow, monkeypatch
):
    await create_account("alice")
    token = await workflow.issue("alice", TokenPurpose.VERIFY_EMAIL)

    async def broken_clear(*args, **kwargs):
        raise ProfileStoreError("Profile store timed out during compare_and_swap_token")

    monkeypatch.setattr(workflow.store, "compare_and_clear_token", broken_clear)

    with pytest.raises(ConsistencyError):
        await workflow.verify_email(token)


@pytest.mark.asyncio
async def test_verify_email_marks_profile_and_identity(create_account, workflow, identity, store):
    await create_account("alice")
    token = await workflow.issue("alice", TokenPurpose.VERIFY_EMAIL)

    assert await workflow.verify_email(token) == "alice"

    profile = await store.get("alice")
    assert profile["email_verified"] is True
    assert profile["email_verification_token"] is None
    assert profile["email_verification_expires"] is None
    assert identity.users["alice"]["email_verified"] is True


@pytest.mark.asyncio
async def test_verification_token_lapses_after_a_day(create_account, workflow, clock, store):
    """A verification link opened 25 hours later is rejected and changes nothing."""
    await create_account("alice")
    token = await workflow.issue("alice", TokenPurpose.VERIFY_EMAIL)

    clock.advance(hours=25)

    with pytest.raises(TokenFailure) as exc_info:
        await workflow.verify_email(token)

    assert exc_info.value.code == "INVALID_OR_EXPIRED_TOKEN"
    profile = await store.get("alice")
    assert profile["email_verified"] is False


@pytest.mark.asyncio
async def test_request_password_reset_sends_link(create_account, workflow, notifier):
    await create_account("alice", email="alice@example.com")

    await workflow.request_password_reset("alice@example.com")

    email = notifier.last("reset_password")
    assert email["to"] == "alice@example.com"
    token = notifier.token_from("reset_password")
    assert await workflow.validate(token, TokenPurpose.RESET_PASSWORD) == "alice"
    assert "http://frontend.test/reset-password?token=" in email["text"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["inactive", "suspended", "deleted"])
async def test_request_password_reset_skips_inactive_accounts(
    create_account, workflow, notifier, store, status
):
    await create_account("alice", email="alice@example.com", status=status)

    await workflow.request_password_reset("alice@example.com")

    assert notifier.sent == []
    profile = await store.get("alice")
    assert profile["reset_token"] is None


@pytest.mark.asyncio
async def test_request_password_reset_unknown_email_is_silent(workflow, notifier):
    await workflow.request_password_reset("nobody@example.com")
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_request_password_reset_survives_send_failure(create_account, workflow, notifier):
    """Delivery failures are logged, not raised, and the token stays issued."""
    await create_account("alice", email="alice@example.com")
    notifier.fail = True

    await workflow.request_password_reset("alice@example.com")

    assert notifier.sent == []


@pytest.mark.asyncio
async def test_send_email_verification(create_account, workflow, notifier):
    profile = await create_account("alice", email="alice@example.com")

    assert await workflow.send_email_verification(profile) is True

    token = notifier.token_from("verify_email")
    assert await workflow.validate(token, TokenPurpose.VERIFY_EMAIL) == "alice"
    assert "confirm-email?token=" in notifier.last("verify_email")["text"]

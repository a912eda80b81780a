import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

# Settings are read at import time; point them at throwaway backends first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("EMAIL_MODE", "console")
os.environ.setdefault("LOG_FORMAT", "console")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.core.exceptions import (
    EmailAlreadyExists,
    IdentityNotFound,
    IdentityProviderError,
    IdentityTokenExpired,
    IdentityTokenInvalid,
)
from app.core.security import now_ms
from app.database import get_db
from app.dependencies import (
    get_clock,
    get_identity_provider,
    get_notification_sender,
    get_rate_limiter,
)
from app.main import app
from app.models import metadata
from app.services.notification_service import NotificationError, NotificationSender
from app.services.profile_store import ProfileStore
from app.services.token_workflow import SecurityTokenWorkflow

EXPIRED_ID_TOKEN = "expired-id-token"


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int | None = None):
        self.now = start if start is not None else now_ms()

    def __call__(self) -> int:
        return self.now

    def advance(self, *, hours: float = 0, minutes: float = 0, ms: int = 0) -> None:
        self.now += int(hours * 3_600_000 + minutes * 60_000) + ms


class FakeIdentityProvider:
    """In-memory stand-in for the Firebase identity provider."""

    def __init__(self):
        self.users: dict[str, dict[str, Any]] = {}
        self.passwords: dict[str, str] = {}
        self.claims: dict[str, dict[str, Any]] = {}
        self.id_tokens: dict[str, str] = {}
        self.unavailable = False
        self.fail_updates = 0
        self.update_calls: list[tuple[str, dict[str, Any]]] = []
        self._next_uid = 0

    def add_user(
        self,
        uid: str,
        email: str,
        password: str = "Original1!",
        email_verified: bool = False,
        display_name: str | None = None,
    ) -> dict[str, Any]:
        self.users[uid] = {
            "id": uid,
            "email": email,
            "email_verified": email_verified,
            "display_name": display_name,
            "disabled": False,
            "metadata": {"creation_time": 1_700_000_000_000, "last_sign_in_time": None},
        }
        self.passwords[uid] = password
        return self.users[uid]

    def issue_id_token(self, uid: str) -> str:
        token = f"id-token-{uid}"
        self.id_tokens[token] = uid
        return token

    def _check_available(self) -> None:
        if self.unavailable:
            raise IdentityProviderError("Identity provider timed out")

    async def verify_token(self, id_token: str) -> dict[str, Any]:
        self._check_available()
        if id_token == EXPIRED_ID_TOKEN:
            raise IdentityTokenExpired("Token expired")
        uid = self.id_tokens.get(id_token)
        if uid is None or uid not in self.users:
            raise IdentityTokenInvalid("Token invalid")
        user = self.users[uid]
        return {
            "uid": uid,
            "sub": uid,
            "email": user["email"],
            "email_verified": user["email_verified"],
            **self.claims.get(uid, {}),
        }

    async def get_identity(self, uid: str) -> dict[str, Any]:
        self._check_available()
        if uid not in self.users:
            raise IdentityNotFound(uid)
        return dict(self.users[uid])

    async def get_identity_by_email(self, email: str) -> dict[str, Any] | None:
        self._check_available()
        for user in self.users.values():
            if user["email"] == email:
                return dict(user)
        return None

    async def create_identity(
        self, email: str, password: str, display_name: str | None = None
    ) -> dict[str, Any]:
        self._check_available()
        if await self.get_identity_by_email(email) is not None:
            raise EmailAlreadyExists()
        self._next_uid += 1
        uid = f"uid-new-{self._next_uid}"
        return dict(self.add_user(uid, email, password, False, display_name))

    async def update_identity(self, uid: str, **fields: Any) -> dict[str, Any]:
        self._check_available()
        if self.fail_updates:
            self.fail_updates -= 1
            raise IdentityProviderError("Identity provider rejected the update")
        if uid not in self.users:
            raise IdentityNotFound(uid)
        changes = {key: value for key, value in fields.items() if value is not None}
        self.update_calls.append((uid, dict(changes)))
        if "password" in changes:
            self.passwords[uid] = changes.pop("password")
        self.users[uid].update(changes)
        return dict(self.users[uid])

    async def delete_identity(self, uid: str) -> None:
        self._check_available()
        if uid not in self.users:
            raise IdentityNotFound(uid)
        del self.users[uid]
        self.passwords.pop(uid, None)

    async def set_claims(self, uid: str, claims: dict[str, Any]) -> None:
        self._check_available()
        if uid not in self.users:
            raise IdentityNotFound(uid)
        self.claims[uid] = claims

    async def verify_password(self, email: str, password: str) -> bool:
        self._check_available()
        for uid, user in self.users.items():
            if user["email"] == email:
                return self.passwords.get(uid) == password
        return False

    def password_changes(self, uid: str) -> int:
        return sum(
            1
            for call_uid, changes in self.update_calls
            if call_uid == uid and "password" in changes
        )


class RecordingNotifier(NotificationSender):
    """Notification sender that renders templates and records instead of delivering."""

    def __init__(self):
        super().__init__(
            mode="console",
            from_address="noreply@test.local",
            from_name="Careline Tests",
            frontend_url="http://frontend.test",
            app_name="Careline",
            timeout=1,
        )
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    async def send_email(
        self, to: str, subject: str, template: str, context: dict[str, Any]
    ) -> None:
        html, text = self.render(template, context)
        if self.fail:
            raise NotificationError(f"Failed to send {template} email")
        self.sent.append(
            {"to": to, "subject": subject, "template": template, "context": context, "text": text}
        )

    def last(self, template: str) -> dict[str, Any]:
        matching = [email for email in self.sent if email["template"] == template]
        assert matching, f"no {template} email was sent"
        return matching[-1]

    def token_from(self, template: str) -> str:
        context = self.last(template)["context"]
        url = context.get("reset_url") or context["confirm_url"]
        return parse_qs(urlparse(url).query)["token"][0]


class StaticRateLimiter:
    """Rate limiter with a fixed verdict."""

    def __init__(self, allow: bool = True):
        self.allow = allow
        self.keys: list[str] = []

    async def check_rate_limit(self, key: str, limit: int, window: int = 60) -> bool:
        self.keys.append(key)
        return self.allow


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def rate_limiter() -> StaticRateLimiter:
    return StaticRateLimiter()


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite database so separate sessions use separate connections."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'profiles.db'}"
    engine = create_async_engine(url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(db_session: AsyncSession) -> ProfileStore:
    return ProfileStore(db_session, timeout=5)


@pytest.fixture
def make_workflow(
    session_factory: async_sessionmaker[AsyncSession],
    identity: FakeIdentityProvider,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> Callable[[AsyncSession], SecurityTokenWorkflow]:
    """Build a workflow on a given session, sharing the fakes of this test."""

    def build(session: AsyncSession) -> SecurityTokenWorkflow:
        return SecurityTokenWorkflow(
            ProfileStore(session, timeout=5), identity, notifier, clock=clock
        )

    return build


@pytest.fixture
def workflow(
    db_session: AsyncSession,
    make_workflow: Callable[[AsyncSession], SecurityTokenWorkflow],
) -> SecurityTokenWorkflow:
    return make_workflow(db_session)


@pytest.fixture
def create_account(
    store: ProfileStore, identity: FakeIdentityProvider
) -> Callable[..., Awaitable[dict[str, Any]]]:
    """Seed an identity and its profile; returns the profile record."""

    async def create(
        uid: str,
        email: str | None = None,
        role: str = "patient",
        status: str = "active",
        email_verified: bool = False,
        display_name: str | None = None,
        password: str = "Original1!",
    ) -> dict[str, Any]:
        email = email or f"{uid}@example.com"
        display_name = display_name or uid.title()
        identity.add_user(uid, email, password, email_verified, display_name)
        return await store.create(
            uid,
            {
                "email": email,
                "email_verified": email_verified,
                "display_name": display_name,
                "role": role,
                "status": status,
                "personal_info": {},
                "preferences": {},
            },
        )

    return create


@pytest.fixture
def auth_headers(identity: FakeIdentityProvider) -> Callable[[str], dict[str, str]]:
    """Bearer headers carrying a valid ID token for ``uid``."""

    def headers(uid: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {identity.issue_id_token(uid)}"}

    return headers


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    identity: FakeIdentityProvider,
    notifier: RecordingNotifier,
    clock: FakeClock,
    rate_limiter: StaticRateLimiter,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client wired to the fakes."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity_provider] = lambda: identity
    app.dependency_overrides[get_notification_sender] = lambda: notifier
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()

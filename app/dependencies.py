"""FastAPI dependencies."""

from collections.abc import Awaitable, Callable
from datetime import timedelta
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, Path, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import PolicyFailure, RateLimitException
from app.core.firebase import IdentityProvider
from app.core.redis_client import RateLimiter, get_redis_client
from app.core.security import now_ms
from app.database import get_db
from app.schemas.users import Principal, Role
from app.services.access_policy import evaluate, require_role, require_self_or_admin
from app.services.notification_service import NotificationSender
from app.services.profile_store import ProfileStore
from app.services.session_resolver import SessionResolver
from app.services.token_workflow import SecurityTokenWorkflow
from app.services.user_service import UserService


@lru_cache
def get_identity_provider() -> IdentityProvider:
    """Process-wide identity provider client."""
    return IdentityProvider(
        timeout=settings.identity_timeout_seconds,
        web_api_key=settings.firebase_web_api_key,
    )


@lru_cache
def get_notification_sender() -> NotificationSender:
    """Process-wide notification sender."""
    return NotificationSender(
        mode=settings.email_mode,
        from_address=settings.email_from_address,
        from_name=settings.email_from_name,
        frontend_url=settings.frontend_url,
        app_name=settings.app_name,
        timeout=settings.email_timeout_seconds,
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
    )


def get_clock() -> Callable[[], int]:
    """Clock used for token expiry, in epoch milliseconds."""
    return now_ms


def get_rate_limiter() -> RateLimiter:
    """Rate limiter on the shared Redis client."""
    return RateLimiter(get_redis_client())


async def get_profile_store(db: Annotated[AsyncSession, Depends(get_db)]) -> ProfileStore:
    """Profile store bound to the request's database session."""
    return ProfileStore(db, timeout=settings.store_timeout_seconds)


IdentityProviderDep = Annotated[IdentityProvider, Depends(get_identity_provider)]
NotificationSenderDep = Annotated[NotificationSender, Depends(get_notification_sender)]
ProfileStoreDep = Annotated[ProfileStore, Depends(get_profile_store)]


async def get_token_workflow(
    store: ProfileStoreDep,
    identity: IdentityProviderDep,
    notifier: NotificationSenderDep,
    clock: Annotated[Callable[[], int], Depends(get_clock)],
) -> SecurityTokenWorkflow:
    """Security token workflow for the current request."""
    return SecurityTokenWorkflow(
        store,
        identity,
        notifier,
        clock=clock,
        verification_ttl=timedelta(hours=settings.email_verification_ttl_hours),
        reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
    )


TokenWorkflowDep = Annotated[SecurityTokenWorkflow, Depends(get_token_workflow)]


async def get_session_resolver(
    identity: IdentityProviderDep, store: ProfileStoreDep
) -> SessionResolver:
    """Session resolver for the current request."""
    return SessionResolver(identity, store)


async def get_user_service(
    store: ProfileStoreDep,
    identity: IdentityProviderDep,
    tokens: TokenWorkflowDep,
    notifier: NotificationSenderDep,
) -> UserService:
    """User service for the current request."""
    return UserService(store, identity, tokens, notifier)


async def get_current_principal(
    request: Request,
    resolver: Annotated[SessionResolver, Depends(get_session_resolver)],
    authorization: Annotated[str | None, Header()] = None,
) -> Principal:
    """
    Resolve the bearer token into the request principal.

    The principal is also attached to ``request.state.principal``.

    Raises:
        AuthFailure, LookupFailure, PolicyFailure: From the session resolver
    """
    principal = await resolver.resolve(authorization)
    request.state.principal = principal
    return principal


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]


def require_roles(*roles: Role) -> Callable[[Principal], Awaitable[Principal]]:
    """
    Build a dependency that admits only principals holding one of ``roles``.

    Raises:
        PolicyFailure: FORBIDDEN_ROLE
    """
    gate = require_role(roles)

    async def dependency(principal: CurrentPrincipal) -> Principal:
        decision = evaluate(principal, gate)
        if not decision.allowed:
            raise PolicyFailure(decision.reason)
        return principal

    return dependency


async def require_owner_or_admin(
    principal: CurrentPrincipal,
    user_id: Annotated[str, Path()],
) -> Principal:
    """
    Admit admins and the principal whose id matches the ``user_id`` path parameter.

    Raises:
        PolicyFailure: FORBIDDEN_OWNERSHIP
    """
    decision = evaluate(principal, require_self_or_admin(user_id))
    if not decision.allowed:
        raise PolicyFailure(decision.reason)
    return principal


async def enforce_password_reset_rate_limit(
    request: Request,
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
) -> None:
    """
    Limit password reset requests per client address.

    Raises:
        RateLimitException: Too many requests in the current window
    """
    client = request.client.host if request.client else "unknown"
    allowed = await limiter.check_rate_limit(
        f"rate_limit:password_reset:{client}", settings.rate_limit_per_minute
    )
    if not allowed:
        raise RateLimitException("Too many password reset requests. Try again later.")


# Type aliases for dependency injection
AdminPrincipal = Annotated[Principal, Depends(require_roles(Role.ADMIN))]
OwnerOrAdminPrincipal = Annotated[Principal, Depends(require_owner_or_admin)]
UserServiceDep = Annotated[UserService, Depends(get_user_service)]

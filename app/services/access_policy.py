"""Composable access gates evaluated against a resolved principal."""

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from app.schemas.users import Principal, Role


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of a gate: allowed, or denied with a reason code."""

    allowed: bool
    reason: str | None = None


ALLOW = PolicyDecision(allowed=True)

Gate = Callable[[Principal | None], PolicyDecision]


def require_authenticated(principal: Principal | None) -> PolicyDecision:
    """Deny when no principal is attached to the request."""
    if principal is None:
        return PolicyDecision(allowed=False, reason="UNAUTHENTICATED")
    return ALLOW


def require_role(allowed: Iterable[Role | str]) -> Gate:
    """Gate admitting principals whose role is in ``allowed``."""
    allowed_roles = {Role(role) for role in allowed}

    def gate(principal: Principal | None) -> PolicyDecision:
        if principal is None:
            return PolicyDecision(allowed=False, reason="UNAUTHENTICATED")
        if principal.role not in allowed_roles:
            return PolicyDecision(allowed=False, reason="FORBIDDEN_ROLE")
        return ALLOW

    return gate


def require_self_or_admin(resource_id: str) -> Gate:
    """Gate admitting admins and the owner of ``resource_id``."""

    def gate(principal: Principal | None) -> PolicyDecision:
        if principal is None:
            return PolicyDecision(allowed=False, reason="UNAUTHENTICATED")
        if principal.is_admin or principal.id == resource_id:
            return ALLOW
        return PolicyDecision(allowed=False, reason="FORBIDDEN_OWNERSHIP")

    return gate


def evaluate(principal: Principal | None, *gates: Gate) -> PolicyDecision:
    """Run the authentication gate, then ``gates`` in order, stopping at the first denial."""
    decision = require_authenticated(principal)
    if not decision.allowed:
        return decision

    for gate in gates:
        decision = gate(principal)
        if not decision.allowed:
            return decision

    return ALLOW

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

from rundeklar.storage.models import Principal, Role, SessionState

# Minimum-role ordering; strings outside this map rank below every known role
ROLE_ORDER = {
    Role.COACH.value: 1,
    Role.ADMIN.value: 2,
    Role.SYSTEM_ADMIN.value: 3,
}


class GuardVerdict(str, Enum):
    ALLOW = "allow"
    DENY_REDIRECT_TO_LOGIN = "deny-redirect-to-login"
    LOADING = "loading"


def role_rank(role: Optional[str]) -> int:
    return ROLE_ORDER.get(role or "", 0)


def _pending(state: SessionState) -> bool:
    return state is SessionState.INITIALIZING


def evaluate(
    state: SessionState,
    principal: Optional[Principal],
    required_role: Optional[str] = None,
) -> GuardVerdict:
    """Verdict for a route that needs a session and optionally a minimum role.

    A refresh in progress does not bounce the user; the principal is still
    the one that was authenticated.
    """
    if _pending(state):
        return GuardVerdict.LOADING
    if state not in (SessionState.AUTHENTICATED, SessionState.REFRESHING) or principal is None:
        return GuardVerdict.DENY_REDIRECT_TO_LOGIN
    if required_role is None:
        return GuardVerdict.ALLOW
    if role_rank(principal.role) >= role_rank(required_role) and role_rank(principal.role) > 0:
        return GuardVerdict.ALLOW
    return GuardVerdict.DENY_REDIRECT_TO_LOGIN


def require_any_role(
    state: SessionState,
    principal: Optional[Principal],
    roles: Iterable[str],
) -> GuardVerdict:
    """Verdict for a route open to an exact set of roles."""
    verdict = evaluate(state, principal)
    if verdict is not GuardVerdict.ALLOW:
        return verdict
    allowed = {role.value if isinstance(role, Role) else role for role in roles}
    if principal.role in allowed:
        return GuardVerdict.ALLOW
    return GuardVerdict.DENY_REDIRECT_TO_LOGIN

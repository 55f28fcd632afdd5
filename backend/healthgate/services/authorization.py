"""
HealthGate Backend — Authorization Policy Evaluator
=====================================================

What:  Pure allow/deny decision over a route's policy gates.
Why:   Authorization is the easiest layer to get subtly wrong; keeping it a
       pure function of (principal, gates, owner id) makes every decision
       unit-testable without HTTP or storage.
How:   Gates are evaluated in a fixed priority order. The first decisive gate
       short-circuits; otherwise all gates must pass (AND). The only OR is
       inside OwnerOrRole.
Who:   Called by the authorization pipeline stage.

Gate Priority (lowest number evaluated first):
    1. Public          → Allow immediately
    2. OptionalAuth    → Allow immediately (principal attached if resolvable)
    3. Authenticated   → principal required            else Deny(unauthenticated)
    4. RequireRole     → principal.role in roles       else Deny(forbidden)
    5. OwnerOrRole     → subject == owner or role in roles  else Deny(forbidden)
    6. VerifiedOnly    → principal.verified            else Deny(not_verified)

    Any gate from 3 onward denies with `unauthenticated` when there is no
    principal, so a route guarded only by RequireRole still answers 401 to
    anonymous callers and 403 to authenticated ones.

Fail closed:
    A route with no gates at all is denied (`unauthenticated`). Public
    routes must say so explicitly.
"""

import enum
from dataclasses import dataclass
from typing import ClassVar, FrozenSet, Iterable, Optional, Sequence, Union

from healthgate.services.token_service import Principal, Role


class DenyReason(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_VERIFIED = "not_verified"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason) -> "Decision":
        return cls(allowed=False, reason=reason)


# ── Gates ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Public:
    priority: ClassVar[int] = 1


@dataclass(frozen=True)
class OptionalAuth:
    priority: ClassVar[int] = 2


@dataclass(frozen=True)
class Authenticated:
    priority: ClassVar[int] = 3


@dataclass(frozen=True)
class RequireRole:
    roles: FrozenSet[Role]
    priority: ClassVar[int] = 4

    @classmethod
    def of(cls, *roles: Role) -> "RequireRole":
        return cls(frozenset(roles))


@dataclass(frozen=True)
class OwnerOrRole:
    roles: FrozenSet[Role]
    priority: ClassVar[int] = 5

    @classmethod
    def of(cls, *roles: Role) -> "OwnerOrRole":
        return cls(frozenset(roles))


@dataclass(frozen=True)
class VerifiedOnly:
    priority: ClassVar[int] = 6


Gate = Union[Public, OptionalAuth, Authenticated, RequireRole, OwnerOrRole, VerifiedOnly]


def credential_mode(gates: Iterable[Gate]) -> str:
    """
    How the authentication stage should treat a missing or invalid token:
    "none" (never read it), "optional" (resolve if valid) or "required".
    """
    kinds = {type(g) for g in gates}
    if Public in kinds:
        return "none"
    if OptionalAuth in kinds:
        return "optional"
    return "required"


def evaluate(
    principal: Optional[Principal],
    gates: Sequence[Gate],
    resource_owner_id: Optional[str] = None,
) -> Decision:
    """
    Decide whether `principal` may pass `gates`.

    Args:
        principal:          The resolved caller, or None for anonymous requests
        gates:              The route's gates, in any order
        resource_owner_id:  Subject id owning the target resource (for OwnerOrRole)
    """
    if not gates:
        return Decision.deny(DenyReason.UNAUTHENTICATED)

    for gate in sorted(gates, key=lambda g: g.priority):
        if isinstance(gate, (Public, OptionalAuth)):
            return Decision.allow()

        if principal is None:
            return Decision.deny(DenyReason.UNAUTHENTICATED)

        if isinstance(gate, RequireRole):
            if principal.role not in gate.roles:
                return Decision.deny(DenyReason.FORBIDDEN)
        elif isinstance(gate, OwnerOrRole):
            is_owner = resource_owner_id is not None and principal.subject_id == resource_owner_id
            if not is_owner and principal.role not in gate.roles:
                return Decision.deny(DenyReason.FORBIDDEN)
        elif isinstance(gate, VerifiedOnly):
            if not principal.verified:
                return Decision.deny(DenyReason.NOT_VERIFIED)

    return Decision.allow()

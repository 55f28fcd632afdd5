"""
HealthGate Backend — Route Policy Table
=========================================

What:  Maps (method, path) to the security policy for that route: its
       authorization gates, rate-limit policy, audit action/resource and
       how to find the owner of the target resource.
Why:   The pipeline runs before FastAPI's router, so it needs its own view of
       which policy applies. Keeping every rule in one table makes the
       security surface reviewable in one place.
How:   Path patterns use Starlette's own compile_path(), so `{user_id}`
       placeholders and convertors behave exactly like the FastAPI routes.
       Rules are tried in order; the first match wins. Paths matching no
       rule get the deny-by-default rule (authenticated, `api` policy).
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Pattern, Sequence, Tuple

from starlette.routing import compile_path

from healthgate.services.audit_service import AuditAction
from healthgate.services.authorization import (
    Authenticated,
    Gate,
    OwnerOrRole,
    Public,
    RequireRole,
    credential_mode,
)
from healthgate.services.token_service import Role

OwnerLookup = Callable[[Any], Awaitable[Optional[str]]]


@dataclass(frozen=True)
class RouteRule:
    """
    Security policy for one route.

    Attributes:
        path:          Starlette path pattern, e.g. "/api/v1/users/{user_id}"
        methods:       HTTP methods this rule applies to (empty = all)
        gates:         Authorization gates (ANDed)
        rate_limit:    Named policy from build_policies(), or None
        audit_action:  Action recorded for successful requests
        resource:      Resource name recorded in the audit log
        owner_param:   Path parameter holding the resource owner's subject id
        owner_lookup:  Coroutine (ctx) → owner id; overrides owner_param
        audit:         False for noise endpoints (health checks, docs)
    """

    path: str
    methods: FrozenSet[str] = frozenset()
    gates: Tuple[Gate, ...] = (Authenticated(),)
    rate_limit: Optional[str] = "api"
    audit_action: str = AuditAction.ACCESS.value
    resource: str = "api"
    owner_param: Optional[str] = None
    owner_lookup: Optional[OwnerLookup] = None
    audit: bool = True
    _compiled: Tuple[Pattern[str], Dict[str, Any]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        regex, _, convertors = compile_path(self.path)
        object.__setattr__(self, "_compiled", (regex, convertors))

    @property
    def credential_mode(self) -> str:
        return credential_mode(self.gates)

    def match(self, method: str, path: str) -> Optional[Dict[str, Any]]:
        if self.methods and method.upper() not in self.methods:
            return None
        regex, convertors = self._compiled
        m = regex.match(path)
        if m is None:
            return None
        return {key: convertors[key].convert(value) for key, value in m.groupdict().items()}


DEFAULT_RULE = RouteRule(path="/{path:path}", gates=(Authenticated(),), rate_limit="api")


class RouteTable:
    def __init__(self, rules: Sequence[RouteRule], default: RouteRule = DEFAULT_RULE):
        self._rules = list(rules)
        self.default = default

    def __iter__(self):
        return iter(self._rules)

    def match(self, method: str, path: str) -> Tuple[RouteRule, Dict[str, Any]]:
        for rule in self._rules:
            params = rule.match(method, path)
            if params is not None:
                return rule, params
        return self.default, {}


def _methods(*names: str) -> FrozenSet[str]:
    return frozenset(names)


def default_route_table() -> RouteTable:
    """The policy for every endpoint this service exposes."""
    public = (Public(),)
    return RouteTable(
        [
            # ── Infrastructure ────────────────────────────────────────────
            RouteRule("/health", _methods("GET", "HEAD"), public, rate_limit=None, resource="health", audit=False),
            RouteRule("/docs", _methods("GET"), public, rate_limit=None, resource="docs", audit=False),
            RouteRule("/redoc", _methods("GET"), public, rate_limit=None, resource="docs", audit=False),
            RouteRule("/openapi.json", _methods("GET"), public, rate_limit=None, resource="docs", audit=False),
            # ── Authentication ────────────────────────────────────────────
            RouteRule(
                "/api/v1/auth/login", _methods("POST"), public,
                rate_limit="auth", audit_action=AuditAction.LOGIN.value, resource="auth",
            ),
            RouteRule(
                "/api/v1/auth/refresh", _methods("POST"), public,
                rate_limit="auth", audit_action=AuditAction.TOKEN_REFRESH.value, resource="auth",
            ),
            RouteRule(
                "/api/v1/auth/forgot-password", _methods("POST"), public,
                rate_limit="password_reset",
                audit_action=AuditAction.PASSWORD_RESET_REQUEST.value, resource="auth",
            ),
            RouteRule(
                "/api/v1/auth/logout", _methods("POST"), (Authenticated(),),
                audit_action=AuditAction.LOGOUT.value, resource="auth",
            ),
            RouteRule("/api/v1/auth/me", _methods("GET"), (Authenticated(),), resource="users"),
            # ── Users ─────────────────────────────────────────────────────
            RouteRule(
                "/api/v1/users/{user_id}", _methods("GET"),
                (OwnerOrRole.of(Role.DOCTOR, Role.ADMIN),),
                resource="users", owner_param="user_id",
            ),
            # ── Security administration ───────────────────────────────────
            RouteRule(
                "/api/v1/security/blocked-ips", _methods("POST"), (RequireRole.of(Role.ADMIN),),
                audit_action=AuditAction.IP_BLOCKED.value, resource="blocklist",
            ),
            RouteRule(
                "/api/v1/security/blocked-ips/{ip}", _methods("DELETE"), (RequireRole.of(Role.ADMIN),),
                audit_action=AuditAction.IP_UNBLOCKED.value, resource="blocklist",
            ),
            RouteRule(
                "/api/v1/security/csp-violation", _methods("POST"), public,
                audit_action=AuditAction.CSP_VIOLATION.value, resource="csp",
            ),
        ]
    )

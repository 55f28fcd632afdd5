"""
Request-scoped accessors shared by the route handlers.

The security pipeline has already authenticated and authorized the request
by the time a handler runs; these helpers only read what it left on
request.state and the services main.create_app() put on app.state.
"""

from typing import Any, Dict

from fastapi import Request

from healthgate.exceptions import AuthRequiredError
from healthgate.services.token_service import Principal


def get_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if principal is None:
        # Only reachable if a route is wired with weaker gates than its handler expects
        raise AuthRequiredError()
    return principal


def client_ip(request: Request) -> str:
    ip = getattr(request.state, "client_ip", None)
    if ip:
        return ip
    return request.client.host if request.client else "unknown"


def audit(request: Request, **fields: Any) -> None:
    """Refine this request's audit record (action, principal_id, resource_id, details)."""
    overrides: Dict[str, Any] = getattr(request.state, "audit", None) or {}
    details = fields.pop("details", None)
    overrides.update(fields)
    if details:
        overrides.setdefault("details", {}).update(details)
    request.state.audit = overrides

"""
HealthGate Backend — Security Response Headers
================================================

What:  Adds browser hardening headers to every response.
Why:   Patient data is rendered by a browser frontend; these headers stop
       framing, MIME sniffing, referrer leakage and inline script injection
       at the browser, independently of the API's own input checks.
How:   BaseHTTPMiddleware that sets headers after the response is built.
       Headers already set further in (a route that needs a laxer policy)
       are left alone.

Headers:
    Content-Security-Policy        restrictive baseline, violations reported
                                   to /api/v1/security/csp-violation
    Strict-Transport-Security      production only (dev runs on plain HTTP)
    X-Frame-Options                DENY
    X-Content-Type-Options         nosniff
    Referrer-Policy                strict-origin-when-cross-origin
    Permissions-Policy             camera, microphone, geolocation disabled
    Clear-Site-Data                logout only; wipes browser cache, cookies
                                   and storage for the origin
"""

import logging
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

CSP_REPORT_PATH = "/api/v1/security/csp-violation"
LOGOUT_PATH = "/api/v1/auth/logout"

_BASE_CSP = (
    "default-src 'self'; "
    "script-src 'self'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data:; "
    "font-src 'self'; "
    "object-src 'none'; "
    "frame-ancestors 'none'; "
    "base-uri 'self'; "
    "form-action 'self'"
)


def build_csp(api_url: Optional[str] = None) -> str:
    policy = _BASE_CSP
    policy += f"; connect-src 'self' {api_url}" if api_url else "; connect-src 'self'"
    return policy + f"; report-uri {CSP_REPORT_PATH}"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Args:
        csp_report_only:  Send Content-Security-Policy-Report-Only instead of
                          enforcing, for rolling out a tighter policy
        hsts:             Emit Strict-Transport-Security
        api_url:          Extra origin allowed in connect-src
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        csp_report_only: bool = False,
        hsts: bool = False,
        api_url: Optional[str] = None,
    ) -> None:
        super().__init__(app)
        self._csp = build_csp(api_url)
        self._csp_header = (
            "Content-Security-Policy-Report-Only" if csp_report_only else "Content-Security-Policy"
        )
        self._hsts = hsts

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        headers = response.headers

        headers.setdefault(self._csp_header, self._csp)
        headers.setdefault("X-Frame-Options", "DENY")
        headers.setdefault("X-Content-Type-Options", "nosniff")
        headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
        if self._hsts:
            headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")

        if request.url.path == LOGOUT_PATH and response.status_code < 400:
            headers["Clear-Site-Data"] = '"cache", "cookies", "storage"'
        return response

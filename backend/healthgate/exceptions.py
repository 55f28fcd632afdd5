"""
HealthGate Backend — Custom Exception Hierarchy
=================================================

What:  Defines application-specific exceptions for every way a request can be
       refused by the security pipeline or fail inside a handler.
Why:   Each exception carries its HTTP status and a machine-readable code, so
       the pipeline and the global handlers render the same JSON shape:
       {"success": false, "message": ..., "code": ...}
How:   Each exception class carries a message and optional context dict.
       Context is logged server-side and never returned to the client.
Who:   Raised by services and routes; caught by global handlers in main.py.
When:  During request processing.

Exception Hierarchy:
    HealthGateError (base)                       → 500
    ├── AuthenticationError                      → 401 AUTH_FAILED
    │   ├── TokenExpiredError                    → 401 (logged as TOKEN_EXPIRED)
    │   ├── TokenMalformedError                  → 401 (logged as TOKEN_MALFORMED)
    │   ├── SignatureInvalidError                → 401 (logged as SIGNATURE_INVALID)
    │   ├── SubjectNotFoundError                 → 401 (logged as SUBJECT_NOT_FOUND)
    │   ├── AuthRequiredError                    → 401 AUTH_REQUIRED
    │   ├── InvalidRefreshTokenError             → 401 INVALID_REFRESH_TOKEN
    │   └── InvalidCredentialsError              → 401 INVALID_CREDENTIALS
    ├── ForbiddenError                           → 403 INSUFFICIENT_PERMISSIONS
    ├── NotVerifiedError                         → 403 EMAIL_NOT_VERIFIED
    ├── IpBlockedError                           → 403 IP_BLOCKED
    ├── RateLimitExceededError                   → 429 RATE_LIMIT_EXCEEDED
    ├── InputRejectedError                       → 400 INPUT_REJECTED
    ├── PayloadTooLargeError                     → 413 PAYLOAD_TOO_LARGE
    ├── ValidationError                          → 400 VALIDATION_ERROR
    ├── NotFoundError                            → 404 NOT_FOUND
    ├── StoreError                               → 503 STORE_UNAVAILABLE
    └── DatabaseError                            → 500 SERVER_ERROR

Information leakage:
    Token failures are distinguished internally (`reason`) for logging, but
    the token-verification subclasses all render the same public message and
    code (AUTH_FAILED).
"""

from typing import Any, Dict, Optional


class HealthGateError(Exception):
    """
    Base exception for all HealthGate application errors.

    Attributes:
        message:      User-facing error description (safe to return in API response)
        context:      Additional debug info (logged but NOT returned to client)
        status_code:  HTTP status the global handler responds with
        code:         Machine-readable error code for the client
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def to_body(self) -> Dict[str, Any]:
        """The public JSON body for this error."""
        return {"success": False, "message": self.message, "code": self.code}


# ══════════════════════════════════════════════════════════════════════════
# Authentication
# ══════════════════════════════════════════════════════════════════════════


class AuthenticationError(HealthGateError):
    """
    Raised when the caller's identity cannot be established.

    `reason` is the internal failure kind (logged only). The public message
    and code stay generic so a client cannot tell an expired token from a
    forged one.
    """

    status_code = 401
    code = "AUTH_FAILED"
    reason = "unauthenticated"

    def __init__(
        self,
        message: str = "Authentication failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class TokenExpiredError(AuthenticationError):
    """The token's signature is valid but its `exp` claim has passed."""

    reason = "token_expired"


class TokenMalformedError(AuthenticationError):
    """The token is not a decodable three-segment token or its claims are invalid."""

    reason = "token_malformed"


class SignatureInvalidError(AuthenticationError):
    """The token decodes but its signature does not verify."""

    reason = "signature_invalid"


class SubjectNotFoundError(AuthenticationError):
    """
    The token is valid but its subject no longer exists or is deactivated.

    Kept distinct from SignatureInvalidError so logs can tell a deleted
    account from a forged token; the public response is identical.
    """

    reason = "subject_not_found"


class AuthRequiredError(AuthenticationError):
    """No credentials were presented for a route that requires them."""

    code = "AUTH_REQUIRED"
    reason = "credentials_missing"

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token expired, forged, already used, revoked, or not a refresh token."""

    code = "INVALID_REFRESH_TOKEN"
    reason = "invalid_refresh_token"

    def __init__(
        self,
        message: str = "Invalid or expired refresh token",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair did not match an active account."""

    code = "INVALID_CREDENTIALS"
    reason = "invalid_credentials"

    def __init__(
        self,
        message: str = "Invalid email or password",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


# ══════════════════════════════════════════════════════════════════════════
# Authorization
# ══════════════════════════════════════════════════════════════════════════


class ForbiddenError(HealthGateError):
    """Authenticated, but the principal's role/ownership does not satisfy the route policy."""

    status_code = 403
    code = "INSUFFICIENT_PERMISSIONS"

    def __init__(
        self,
        message: str = "Insufficient permissions",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotVerifiedError(HealthGateError):
    """The route requires a verified account."""

    status_code = 403
    code = "EMAIL_NOT_VERIFIED"

    def __init__(
        self,
        message: str = "Please verify your email address to continue",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class IpBlockedError(HealthGateError):
    """
    The source IP is on the blocklist.

    HTTP:    403 Forbidden
    When:    Manual block by an admin, brute-force threshold crossed, or too
             many suspicious payloads from the same IP.
    """

    status_code = 403
    code = "IP_BLOCKED"

    def __init__(
        self,
        message: str = "Access denied",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


# ══════════════════════════════════════════════════════════════════════════
# Abuse Protection
# ══════════════════════════════════════════════════════════════════════════


class RateLimitExceededError(HealthGateError):
    """
    Raised when a client exceeds a named rate-limit policy.

    HTTP:    429 Too Many Requests

    Response includes:
        - retryAfter:   Seconds until the fixed window resets
        - retryAfterMs: The same delay in milliseconds
        - Retry-After header for HTTP-compliant clients
    """

    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        retry_after: int = 60,
        message: str = "Too many requests, please try again later.",
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        retry_after_ms: Optional[int] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
        self.retry_after_ms = retry_after * 1000 if retry_after_ms is None else retry_after_ms
        if code:
            self.code = code

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        body["retryAfter"] = self.retry_after
        body["retryAfterMs"] = self.retry_after_ms
        return body


class InputRejectedError(HealthGateError):
    """
    Raised in block mode when a payload matches a suspicious-input pattern family.

    The matched kind is kept in context for logging; the client only learns
    that its input was rejected.
    """

    status_code = 400
    code = "INPUT_REJECTED"

    def __init__(
        self,
        kind: str,
        message: str = "Invalid input detected",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["kind"] = kind
        super().__init__(message=message, context=ctx)
        self.kind = kind


class PayloadTooLargeError(HealthGateError):
    """The request body exceeds MAX_BODY_BYTES and was not read further."""

    status_code = 413
    code = "PAYLOAD_TOO_LARGE"

    def __init__(
        self,
        message: str = "Request body too large",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


# ══════════════════════════════════════════════════════════════════════════
# Generic
# ══════════════════════════════════════════════════════════════════════════


class ValidationError(HealthGateError):
    """Raised when client input fails a business rule (schema errors are FastAPI's 422)."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class NotFoundError(HealthGateError):
    """Raised when a requested resource does not exist."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class StoreError(HealthGateError):
    """
    Raised when the counter store (memory or Redis) cannot complete an operation
    after retries. The pipeline catches it and fails open; handlers that
    depend on the store (token refresh) surface it as 503.
    """

    status_code = 503
    code = "STORE_UNAVAILABLE"

    def __init__(
        self,
        message: str = "Security store is temporarily unavailable",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(HealthGateError):
    """
    Raised when audit persistence fails after retries.

    Security Note:
        The message returned to the client is always generic; SQL and
        constraint names stay in server logs.
    """

    status_code = 500
    code = "SERVER_ERROR"

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)

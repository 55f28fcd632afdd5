"""
HealthGate Backend — Authentication Route Handlers
====================================================

What:  Login, token refresh, logout, current-user and forgot-password.
Why:   These are the endpoints the named rate-limit policies exist for:
       `auth` (5 / 15 min per IP+email, successful logins not counted) on
       login and refresh, `password_reset` (3 / hour per IP+email) on
       forgot-password.
How:   The pipeline has already rate limited, scanned and (for logout / me)
       authenticated the request. Handlers talk to the TokenService and
       UserDirectory on app.state and refine the audit record through
       request.state.

Flow (login):
    POST /api/v1/auth/login {email, password}
        ├── bad credentials → count a brute-force attempt (may block the IP)
        │                     → 401 INVALID_CREDENTIALS, audited FAILED_LOGIN
        └── ok              → token pair, audited LOGIN with principal_id
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status

from healthgate.exceptions import InvalidCredentialsError, StoreError
from healthgate.routes.deps import audit, client_ip, get_principal
from healthgate.schemas.auth import (
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    TokenPairResponse,
    UserResponse,
)
from healthgate.schemas.envelope import build_envelope
from healthgate.services.audit_service import AuditAction
from healthgate.services.token_service import Principal, TokenPair

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("healthgate.security")

router = APIRouter(prefix="/api/v1/auth", tags=["Auth"])


def _tokens_body(pair: TokenPair) -> dict:
    return TokenPairResponse(
        accessToken=pair.access_token,
        refreshToken=pair.refresh_token,
        expiresIn=pair.expires_in,
        tokenType=pair.token_type,
    ).model_dump()


@router.post("/login", summary="Exchange email and password for a token pair")
async def login(payload: LoginRequest, request: Request):
    services = request.app.state
    user = await services.directory.authenticate(payload.email, payload.password)

    if user is None:
        ip = client_ip(request)
        blocked = False
        try:
            blocked = await services.brute_force.track_failed_attempt(ip, payload.email)
        except StoreError as e:
            # Brute-force tracking fails open like the rest of the pipeline
            logger.error("Could not record failed login from %s: %s", ip, e.message)
            services.error_sink.report(e, {"stage": "login"})
        security_logger.warning("Failed login from %s", ip)
        audit(request, action=AuditAction.FAILED_LOGIN.value, details={"ip_blocked": blocked})
        raise InvalidCredentialsError()

    pair = await services.tokens.issue_pair(user.id, user.role, user.verified)
    audit(request, principal_id=user.id)
    logger.info("Login succeeded for %s (%s)", user.id, user.role.value)

    data = {
        "user": UserResponse(id=user.id, email=user.email, role=user.role.value, verified=user.verified).model_dump(),
        "tokens": _tokens_body(pair),
    }
    return build_envelope(request, data)


@router.post("/refresh", summary="Rotate a refresh token")
async def refresh(payload: RefreshRequest, request: Request):
    """
    Single use: the presented refresh token is consumed, so replaying it
    returns 401 INVALID_REFRESH_TOKEN.
    """
    services = request.app.state
    pair = await services.tokens.refresh(payload.refreshToken, services.directory)
    return build_envelope(request, {"tokens": _tokens_body(pair)})


@router.post("/logout", summary="Revoke the caller's refresh token")
async def logout(
    request: Request,
    payload: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_principal),
):
    revoked = False
    if payload is not None and payload.refreshToken:
        revoked = await request.app.state.tokens.revoke(payload.refreshToken)
    audit(request, details={"refresh_revoked": revoked})
    return build_envelope(request, {"loggedOut": True, "refreshRevoked": revoked})


@router.get("/me", summary="The authenticated caller")
async def me(request: Request, principal: Principal = Depends(get_principal)):
    user = await request.app.state.directory.get(principal.subject_id)
    email = user.email if user is not None else None
    data = UserResponse(
        id=principal.subject_id,
        email=email,
        role=principal.role.value,
        verified=principal.verified,
    )
    return build_envelope(request, data.model_dump())


@router.post(
    "/forgot-password",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request a password reset link",
)
async def forgot_password(payload: ForgotPasswordRequest, request: Request):
    """
    Always answers 202 with the same body whether or not the account exists,
    so the endpoint cannot be used to enumerate patients. Delivering the
    reset link is the job of the notification service.
    """
    logger.info("Password reset requested from %s", client_ip(request))
    return build_envelope(
        request,
        {"message": "If an account exists for that email, a reset link has been sent."},
    )

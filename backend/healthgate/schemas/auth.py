"""
HealthGate Backend — Pydantic Request/Response Schemas
=======================================================

What:  The API contract of the auth, user, security and health endpoints.
Why:   FastAPI validates request bodies against these models (422 on
       mismatch) and generates the OpenAPI document from them.

Design Decision:
    Response schemas never carry the password hash or token ids; they are
    built from UserRecord / Principal explicitly rather than from_attributes.
"""

import ipaddress
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# ══════════════════════════════════════════════════════════════════════════
# Requests
# ══════════════════════════════════════════════════════════════════════════


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        email = v.strip().lower()
        if "@" not in email:
            raise ValueError("Invalid email address")
        return email


class RefreshRequest(BaseModel):
    refreshToken: str = Field(min_length=1)


class LogoutRequest(BaseModel):
    # Optional: without it only the access token expires naturally
    refreshToken: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)


class BlockIpRequest(BaseModel):
    """
    What:  Manual blocklist entry.
    Who:   Admins reacting to an incident.
    When:  `seconds` omitted → blocked until unblocked by hand.
    """

    ip: str
    seconds: Optional[int] = Field(default=None, ge=60, le=31_536_000)
    reason: str = Field(default="manual", max_length=200)

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        try:
            return str(ipaddress.ip_address(v.strip()))
        except ValueError:
            raise ValueError(f"'{v}' is not a valid IPv4 or IPv6 address")


# ══════════════════════════════════════════════════════════════════════════
# Responses (the `data` part of the success envelope)
# ══════════════════════════════════════════════════════════════════════════


class TokenPairResponse(BaseModel):
    accessToken: str
    refreshToken: str
    expiresIn: int = Field(description="Access token lifetime in seconds")
    tokenType: str = "Bearer"


class UserResponse(BaseModel):
    id: str
    email: Optional[str] = None
    role: str
    verified: bool


class BlocklistResponse(BaseModel):
    ip: str
    blocked: bool
    seconds: Optional[int] = None


class HealthResponse(BaseModel):
    """
    What:  Aggregate service status.
    Status levels:
        healthy    counter store and audit sink both reachable
        degraded   audit sink unreachable (requests still served, audit lost)
        unhealthy  counter store unreachable (rate limiting fails open)
    """

    status: str
    version: str
    counter_store: str
    audit_sink: str
    uptime_seconds: float

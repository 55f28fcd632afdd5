"""
HealthGate Backend — Per-Request Pipeline Context
===================================================

What:  Everything the pipeline stages learn about one request, in one object.
Why:   Stages communicate only through this context (the rate-limit stage
       records its key so finalization can release it; the authentication
       stage attaches the principal for the authorization stage), which keeps
       each stage independently testable with a hand-built context.
Who:   Created by SecurityPipelineMiddleware, mutated by stages, read by
       SecurityPipeline.finalize().
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from healthgate.middleware.routing import RouteRule
from healthgate.services.rate_limiter import RateLimitDecision, RateLimitKey, RateLimitPolicy
from healthgate.services.token_service import Principal


@dataclass
class RequestContext:
    method: str
    path: str
    ip: str
    headers: Mapping[str, str]
    rule: RouteRule
    path_params: Dict[str, Any] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    raw_body: bytes = b""
    content_type: str = ""
    oversized_body: bool = False
    user_agent: Optional[str] = None
    request_id: str = ""
    started_at: float = field(default_factory=time.perf_counter)

    # Set by stages
    principal: Optional[Principal] = None
    rate_limit_key: Optional[RateLimitKey] = None
    rate_limit_policy: Optional[RateLimitPolicy] = None
    rate_limit_decision: Optional[RateLimitDecision] = None
    input_modified: bool = False
    response_headers: Dict[str, str] = field(default_factory=dict)

    # Audit overrides: stages that short-circuit set these so the record
    # says *why* the request ended (RATE_LIMIT_EXCEEDED, ACCESS_DENIED, ...)
    audit_action: Optional[str] = None
    audit_details: Dict[str, Any] = field(default_factory=dict)
    halted_by: Optional[str] = None

    # Shared with handlers through request.state (scope["state"])
    state: Dict[str, Any] = field(default_factory=dict)

    @property
    def email_hint(self) -> Optional[str]:
        """The `email` field of a JSON/form body, used by ip+email rate-limit keys."""
        if isinstance(self.body, Mapping):
            value = self.body.get("email")
            if isinstance(value, str):
                return value
        return None

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000

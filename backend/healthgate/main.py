"""
HealthGate Backend — FastAPI Application Factory
==================================================

What:  Creates and configures the FastAPI application instance.
Why:   One place assembles the counter store, token service, limiter, input
       guard, audit trail and pipeline, so tests can build an app around a
       fake clock and in-memory collaborators with the same wiring as
       production.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn (uvicorn healthgate.main:app) and by the tests.

Application Architecture:
    ┌──────────────────────────────────────────────────────────────────┐
    │                           FastAPI App                            │
    │                                                                  │
    │  Middleware Chain (outermost first):                             │
    │  CORS → Security Headers → Access Log → Security Pipeline → GZip │
    │                                                                  │
    │  Security Pipeline stages:                                       │
    │  request_id → blocklist → rate_limit → input_scan →              │
    │  authentication → authorization                                  │
    │                                                                  │
    │  Routes:                                                         │
    │  /health  /api/v1/auth/*  /api/v1/users/*  /api/v1/security/*    │
    │                                                                  │
    │  Exception Handlers:                                             │
    │  HealthGateError → its status/code │ 422 → VALIDATION_ERROR      │
    │  Exception → 500 (reported to the ErrorSink)                     │
    └──────────────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging, configuration check
    Shutdown: drain pending audit writes, close the counter store,
              dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from healthgate import __version__
from healthgate.config import Settings, settings as default_settings
from healthgate.database import dispose_engine, init_engine
from healthgate.exceptions import HealthGateError
from healthgate.middleware.authentication import AuthenticationStage
from healthgate.middleware.authorization import AuthorizationStage
from healthgate.middleware.blocklist import BlocklistStage
from healthgate.middleware.input_scan import InputScanStage
from healthgate.middleware.logging import RequestLoggingMiddleware
from healthgate.middleware.pipeline import SecurityPipeline, SecurityPipelineMiddleware
from healthgate.middleware.rate_limit import RateLimitStage
from healthgate.middleware.request_id import RequestIdStage, request_id_var
from healthgate.middleware.routing import RouteTable, default_route_table
from healthgate.middleware.security_headers import SecurityHeadersMiddleware
from healthgate.routes import auth, health, security, users
from healthgate.schemas.envelope import error_response
from healthgate.services.audit_service import AuditSink, AuditTrail, build_audit_sink
from healthgate.services.counter_store import CounterStore, InMemoryCounterStore, build_counter_store
from healthgate.services.error_sink import ErrorSink, build_error_sink
from healthgate.services.input_guard import IpBlocklist, SuspiciousActivityMonitor, SuspiciousInputDetector
from healthgate.services.rate_limiter import BruteForceTracker, FixedWindowRateLimiter, build_policies
from healthgate.services.token_service import Role, TokenCodec, TokenService
from healthgate.services.user_directory import InMemoryUserDirectory, UserDirectory

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Structured Logging Configuration
# ══════════════════════════════════════════════════════════════════════════


class RequestIdFilter(logging.Filter):
    """Stamps every record with the current request ID (or "-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get() or "-"
        return True


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure logging for the entire application.

    When:    Called once during app startup (before ANY other initialization).
    Format:  %(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s

    Named channels:
        healthgate.access    one line per request
        healthgate.audit     audit records (log sink)
        healthgate.security  suspicious input, blocks, failed logins
        healthgate.errors    ErrorSink reports
    """
    handler = logging.StreamHandler(sys.stdout)  # Docker captures stdout
    handler.addFilter(RequestIdFilter())

    logging.basicConfig(
        level=getattr(logging, level or default_settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,  # Override any existing logging config
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup sequence:
        1. Setup logging
        2. Validate security-critical configuration (fatal in production)

    Shutdown sequence:
        1. Wait for in-flight audit writes
        2. Close the counter store connection
        3. Dispose the database engine
    """
    # ── Startup ───────────────────────────────────────────────────────────
    config: Settings = app.state.config
    setup_logging(config.log_level)
    logger.info("=" * 60)
    logger.info("HealthGate Backend %s starting up...", __version__)

    try:
        config.validate_required_for_production()
    except ValueError as e:
        if config.is_production:
            logger.critical("Configuration error: %s", e)
            raise
        logger.warning("Development configuration: %s", e)

    logger.info("Audit sink: %s | Input guard: %s", app.state.audit_trail.sink.kind, config.input_guard_mode)
    logger.info("Server ready at http://%s:%d", config.backend_host, config.backend_port)
    logger.info("=" * 60)

    yield  # Application runs here

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("HealthGate Backend shutting down...")
    await app.state.audit_trail.drain()
    await app.state.store.close()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════


def register_exception_handlers(app: FastAPI) -> None:
    """
    Handler hierarchy:
        HealthGateError         → exc.status_code, {success, message, code}
        RequestValidationError  → 422 VALIDATION_ERROR (schema mismatch)
        Exception (fallback)    → 500 INTERNAL_ERROR, reported to the ErrorSink

    Security: handlers NEVER expose internal details (stack traces, SQL,
    token failure kinds) in the response. Details are logged server-side.
    """

    @app.exception_handler(HealthGateError)
    async def handle_healthgate_error(request: Request, exc: HealthGateError):
        rid = getattr(request.state, "request_id", "")
        if exc.status_code >= 500:
            logger.error("[%s] %s: %s | Context: %s", rid, exc.code, exc.message, exc.context)
            request.app.state.error_sink.report(exc, {"request_id": rid, "path": request.url.path})
        else:
            logger.info("[%s] %s: %s", rid, exc.code, exc.message)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        """FastAPI schema validation: field names only, never the submitted values."""
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "message": "Request validation failed",
                "code": "VALIDATION_ERROR",
                "fields": fields,
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """Catch-all: generic 500 with the request ID for support tickets."""
        rid = getattr(request.state, "request_id", "")
        logger.error("[%s] Unexpected error: %s", rid, exc, exc_info=True)
        request.app.state.error_sink.report(exc, {"request_id": rid, "path": request.url.path})
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "An unexpected error occurred. Please try again or contact support.",
                "code": "INTERNAL_ERROR",
                "requestId": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════


def _default_directory(config: Settings) -> InMemoryUserDirectory:
    directory = InMemoryUserDirectory(rounds=config.bcrypt_rounds)
    if config.seed_admin_email and config.seed_admin_password:
        directory.add_user(config.seed_admin_email, config.seed_admin_password, role=Role.ADMIN, verified=True)
        logger.info("Seeded admin account %s", config.seed_admin_email)
    return directory


def create_app(
    config: Optional[Settings] = None,
    store: Optional[CounterStore] = None,
    directory: Optional[UserDirectory] = None,
    audit_sink: Optional[AuditSink] = None,
    error_sink: Optional[ErrorSink] = None,
    clock_ms: Optional[Callable[[], int]] = None,
    routes: Optional[RouteTable] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Every collaborator can be injected; anything omitted is built from
    `config`. A `clock_ms` drives the store, limiter, monitor and token codec
    together so tests can move time deterministically.
    """
    config = config or default_settings

    # ── Collaborators ─────────────────────────────────────────────────────
    if store is None:
        store = (
            InMemoryCounterStore(clock=clock_ms)
            if clock_ms is not None and not config.redis_url
            else build_counter_store(config.redis_url, config.redis_key_prefix)
        )
    directory = directory or _default_directory(config)
    error_sink = error_sink or build_error_sink(config.error_sink)
    if audit_sink is None:
        session_factory = init_engine(config.database_url) if config.audit_sink == "database" else None
        audit_sink = build_audit_sink(
            config.audit_sink,
            file_path=config.audit_file_path,
            session_factory=session_factory,
            retry_attempts=config.audit_retry_attempts,
        )

    codec_clock = (lambda: clock_ms() // 1000) if clock_ms is not None else None
    tokens = TokenService(TokenCodec(config, clock=codec_clock), store, config)
    limiter = FixedWindowRateLimiter(store, clock=clock_ms)
    policies = build_policies(config)
    blocklist = IpBlocklist(store)
    monitor = SuspiciousActivityMonitor(store, blocklist, config, clock=clock_ms)
    audit_trail = AuditTrail(audit_sink, error_sink)

    pipeline = SecurityPipeline(
        routes=routes or default_route_table(),
        stages=[
            RequestIdStage(),
            BlocklistStage(blocklist),
            RateLimitStage(limiter, policies),
            InputScanStage(SuspiciousInputDetector(), monitor, config.input_guard_mode, error_sink),
            AuthenticationStage(tokens, directory),
            AuthorizationStage(),
        ],
        limiter=limiter,
        audit_trail=audit_trail,
        error_sink=error_sink,
        trust_proxy_headers=config.trust_proxy_headers,
    )

    app = FastAPI(
        title="HealthGate API",
        description="Security pipeline for the patient-portal API: tokens, rate limits, input guard, RBAC.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.store = store
    app.state.directory = directory
    app.state.tokens = tokens
    app.state.limiter = limiter
    app.state.blocklist = blocklist
    app.state.brute_force = BruteForceTracker(store, blocklist, config)
    app.state.audit_trail = audit_trail
    app.state.error_sink = error_sink
    app.state.pipeline = pipeline

    # ── Register Middleware ───────────────────────────────────────────────
    # Middleware executes in REVERSE order of addition (last added = outermost)

    # GZip innermost: compresses handler output only
    app.add_middleware(GZipMiddleware, minimum_size=500)

    app.add_middleware(SecurityPipelineMiddleware, pipeline=pipeline, max_body_bytes=config.max_body_bytes)

    app.add_middleware(RequestLoggingMiddleware)

    app.add_middleware(
        SecurityHeadersMiddleware,
        csp_report_only=config.csp_report_only,
        hsts=config.is_production,
        api_url=config.api_url or None,
    )

    # CORS outermost: preflight requests never reach the pipeline
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-Response-Time",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
    )

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(users.router)
    app.include_router(security.router)

    return app


# ── Application Instance ─────────────────────────────────────────────────
# uvicorn expects `healthgate.main:app` to be importable
app = create_app()

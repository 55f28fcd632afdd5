"""
HealthGate Backend — Test Configuration (conftest.py)
======================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Every security decision depends on time and on the counter store;
       the fixtures give each test a fake millisecond clock and a fresh
       in-memory store wired through the same create_app() as production.

Fixture Hierarchy (all function-scoped):
    clock            FakeClock, epoch milliseconds, advanced by hand
    store            InMemoryCounterStore on that clock
    test_settings    Settings with test secrets, audit sink "none"
    codec            TokenCodec on the same clock (seconds)
    directory        InMemoryUserDirectory seeded with one user per role
    users            The seeded UserRecords by name
    audit_sink       RecordingAuditSink (records kept in a list)
    app / client     FastAPI app + HTTPX AsyncClient over ASGITransport
"""

import os
from typing import Dict, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings for testing BEFORE any healthgate imports
# Why: the Settings singleton is built on first import
os.environ["JWT_SECRET"] = "test-access-secret-0123456789abcdef0123"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret-0123456789abcdef012"
os.environ["AUDIT_SINK"] = "none"
os.environ["ERROR_SINK"] = "none"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise during tests
os.environ.pop("REDIS_URL", None)

from healthgate.config import Settings  # noqa: E402
from healthgate.services.audit_service import AuditRecord  # noqa: E402
from healthgate.services.counter_store import InMemoryCounterStore  # noqa: E402
from healthgate.services.error_sink import NullErrorSink  # noqa: E402
from healthgate.services.token_service import Role, TokenCodec  # noqa: E402
from healthgate.services.user_directory import InMemoryUserDirectory, UserRecord  # noqa: E402

START_MS = 1_700_000_000_000
PASSWORD = "correct-horse-battery"
CLIENT_IP = "10.1.2.3"


class FakeClock:
    """Millisecond clock that only moves when a test says so."""

    def __init__(self, start_ms: int = START_MS):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

    def seconds(self) -> int:
        return self.now // 1000


class RecordingAuditSink:
    kind = "memory"

    def __init__(self):
        self.records: List[AuditRecord] = []

    async def write(self, record: AuditRecord) -> None:
        self.records.append(record)

    async def ping(self) -> bool:
        return True

    def actions(self) -> List[str]:
        return [r.action for r in self.records]


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures (created fresh for each test)
# ══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def test_settings() -> Settings:
    """
    Settings built explicitly (not from .env) so every test sees the
    documented defaults for limits and thresholds.
    """
    return Settings(
        _env_file=None,
        jwt_secret="test-access-secret-0123456789abcdef0123",
        jwt_refresh_secret="test-refresh-secret-0123456789abcdef012",
        audit_sink="none",
        error_sink="none",
        bcrypt_rounds=4,
        input_guard_mode="block",
    )


@pytest.fixture
def codec(test_settings, clock) -> TokenCodec:
    return TokenCodec(test_settings, clock=clock.seconds)


@pytest.fixture
def directory() -> InMemoryUserDirectory:
    directory = InMemoryUserDirectory(rounds=4)
    directory.add_user("patient@example.com", PASSWORD, Role.PATIENT, verified=True, user_id="patient-1")
    directory.add_user("other@example.com", PASSWORD, Role.PATIENT, verified=True, user_id="patient-2")
    directory.add_user("new@example.com", PASSWORD, Role.PATIENT, verified=False, user_id="patient-3")
    directory.add_user("doctor@example.com", PASSWORD, Role.DOCTOR, verified=True, user_id="doctor-1")
    directory.add_user("admin@example.com", PASSWORD, Role.ADMIN, verified=True, user_id="admin-1")
    return directory


@pytest.fixture
def users(directory) -> Dict[str, UserRecord]:
    return {
        "patient": directory._by_id["patient-1"],
        "other": directory._by_id["patient-2"],
        "unverified": directory._by_id["patient-3"],
        "doctor": directory._by_id["doctor-1"],
        "admin": directory._by_id["admin-1"],
    }


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def app(test_settings, store, directory, audit_sink, clock):
    from healthgate.main import create_app

    return create_app(
        config=test_settings,
        store=store,
        directory=directory,
        audit_sink=audit_sink,
        error_sink=NullErrorSink(),
        clock_ms=clock,
    )


@pytest_asyncio.fixture
async def client(app):
    """
    HTTPX AsyncClient talking to the app in-process.

    Requests come from CLIENT_IP so blocklist and rate-limit keys are
    predictable.
    """
    transport = ASGITransport(app=app, client=(CLIENT_IP, 50000))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def bearer(codec, users):
    """Build an Authorization header for a seeded user."""

    def _bearer(name: str, ttl=None) -> Dict[str, str]:
        user = users[name]
        token = codec.issue(user.id, user.role, ttl=ttl, verified=user.verified)
        return {"Authorization": f"Bearer {token}"}

    return _bearer

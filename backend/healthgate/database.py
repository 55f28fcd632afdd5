"""
HealthGate Backend — Database Session Management
==================================================

What:  Async SQLAlchemy engine and session factory for the audit trail.
Why:   The audit trail persists to the `audit_logs` table; all connection
       logic lives here.
How:   The engine is built lazily by init_engine() so importing the package
       never opens a pool (deployments using the file or log audit sink
       never touch a database at all).
Who:   init_engine() is called from the app lifespan when AUDIT_SINK=database;
       DatabaseAuditSink writes through the returned session factory.

Connection Pooling Strategy:
    pool_size=10:      Audit writes are small and short-lived
    max_overflow=5:    Bursts (e.g. an attack generating many audit rows)
    pool_pre_ping:     Validates connections before use (catches stale connections)
    pool_recycle=3600: Recycles connections every hour

    SQLite URLs (tests, local development with aiosqlite) get no pool
    arguments; SQLAlchemy picks the right pool class for them.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from healthgate.config import settings

engine: Optional[AsyncEngine] = None
async_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Registers models with one shared metadata object, which Alembic reads
    for migrations.
    """

    pass


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine with pool settings appropriate for the URL's dialect."""
    kwargs = {"echo": settings.log_level == "DEBUG"}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )
    return create_async_engine(url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    # expire_on_commit=False: audit rows are read back after commit in tests
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


def init_engine(url: Optional[str] = None) -> async_sessionmaker:
    """
    Create the module-level engine and session factory (idempotent).

    Returns:
        The session factory bound to the engine.
    """
    global engine, async_session_factory
    if engine is None:
        engine = build_engine(url or settings.database_url)
        async_session_factory = build_session_factory(engine)
    return async_session_factory


async def dispose_engine() -> None:
    """
    What:  Gracefully closes all connections in the pool.
    When:  Called during application shutdown (lifespan handler).
    """
    global engine, async_session_factory
    if engine is not None:
        await engine.dispose()
    engine = None
    async_session_factory = None

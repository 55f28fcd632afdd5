"""
HealthGate Backend — Application Package Initializer
====================================================

What: The inbound security core of the patient-portal API.
Who:  Imported by uvicorn (`healthgate.main:app`), Alembic and pytest.

Architecture Note:
    ┌─────────────────────────────────────┐
    │      Middleware (Security Pipeline) │  ← every request, before any route
    ├─────────────────────────────────────┤
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │         Services (Security Logic)   │  ← tokens, limits, input guard, policy
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← audit_logs ORM + Pydantic contracts
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘

    Services never import from middleware or routes, so each can be tested
    without HTTP.
"""

__version__ = "1.0.0"

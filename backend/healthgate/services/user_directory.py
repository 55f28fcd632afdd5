"""
HealthGate Backend — User Directory
=====================================

What:  Credential lookup used by login and by principal resolution.
Why:   User persistence belongs to the business domain, not the security
       core. The pipeline only needs "does this subject exist and is it
       active" and "do these credentials match".
How:   UserDirectory protocol plus an in-memory implementation with bcrypt
       password hashes. Deployments plug in their own directory (database,
       identity provider) by implementing the same two coroutines.

Timing:
    authenticate() runs a bcrypt comparison even when the email is unknown,
    against a fixed dummy hash, so response time does not reveal whether an
    account exists.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import bcrypt

from healthgate.services.token_service import Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: str
    password_hash: bytes
    role: Role
    verified: bool = False
    active: bool = True


class UserDirectory(Protocol):
    async def get(self, subject_id: str) -> Optional[UserRecord]: ...

    async def authenticate(self, email: str, password: str) -> Optional[UserRecord]: ...


class InMemoryUserDirectory:
    """
    Dict-backed UserDirectory.

    Used in development, by the test-suite and as the reference for custom
    directories. bcrypt work runs in a worker thread so a login does not
    block the event loop for the ~250ms a cost-12 hash takes.
    """

    def __init__(self, rounds: int = 12):
        self._rounds = rounds
        self._by_id: Dict[str, UserRecord] = {}
        self._by_email: Dict[str, str] = {}
        self._dummy_hash = bcrypt.hashpw(b"dummy-password", bcrypt.gensalt(rounds=rounds))

    def add_user(
        self,
        email: str,
        password: str,
        role: Role = Role.PATIENT,
        verified: bool = False,
        active: bool = True,
        user_id: Optional[str] = None,
    ) -> UserRecord:
        """Hash the password and register the user. Emails are case-insensitive."""
        record = UserRecord(
            id=user_id or str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self._rounds)),
            role=role,
            verified=verified,
            active=active,
        )
        self._by_id[record.id] = record
        self._by_email[record.email] = record.id
        return record

    def deactivate(self, user_id: str) -> None:
        record = self._by_id.get(user_id)
        if record is not None:
            self._by_id[user_id] = UserRecord(
                id=record.id,
                email=record.email,
                password_hash=record.password_hash,
                role=record.role,
                verified=record.verified,
                active=False,
            )

    async def get(self, subject_id: str) -> Optional[UserRecord]:
        return self._by_id.get(subject_id)

    async def authenticate(self, email: str, password: str) -> Optional[UserRecord]:
        user_id = self._by_email.get(email.strip().lower())
        record = self._by_id.get(user_id) if user_id else None
        hashed = record.password_hash if record else self._dummy_hash
        matches = await asyncio.to_thread(bcrypt.checkpw, password.encode("utf-8"), hashed)
        if record is None or not matches or not record.active:
            return None
        return record

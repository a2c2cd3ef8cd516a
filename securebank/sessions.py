"""Bearer session handling backed by the database."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .config import DEFAULT_SESSION_TTL
from .database import Database
from .errors import InvalidSession, SessionExpired
from .models import Session


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Generate, validate, and revoke bearer sessions.

    Sessions have a fixed lifetime; resolving a session never extends it.
    Expired rows are removed lazily the next time they are looked up, so a
    session that is never presented again stays in the table until
    :meth:`purge_expired` runs.
    """

    def __init__(
        self,
        database: Database,
        *,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._database = database
        self._ttl = ttl
        self._clock = clock or _utcnow

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def now(self) -> datetime:
        return self._clock()

    def create(self, user_id: int) -> Session:
        token = secrets.token_urlsafe(32)
        created_at = self.now()
        return self._database.create_session(token, user_id, created_at, created_at + self._ttl)

    def resolve(self, token: str) -> Session:
        session = self._database.get_session(token)
        if session is None:
            raise InvalidSession("Invalid session")
        if session.is_expired(self.now()):
            self._database.delete_session(token)
            raise SessionExpired("Session has expired, please sign in again")
        return session

    def destroy(self, token: str) -> bool:
        return self._database.delete_session(token)

    def destroy_all(self, user_id: int) -> int:
        return self._database.delete_user_sessions(user_id)

    def purge_expired(self) -> int:
        return self._database.delete_expired_sessions(self.now())


__all__ = ["SessionManager"]

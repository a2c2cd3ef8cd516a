"""Request authorization for the banking API."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .database import Database
from .errors import Forbidden, Unauthenticated
from .lifecycle import AccountLifecycle
from .models import Session, User
from .sessions import SessionManager


@dataclass(frozen=True)
class AuthContext:
    user: User
    session: Session


class SessionAuth:
    """Resolve ``Authorization: Bearer <session>`` to a user and session.

    Checks run in a fixed order: header, session lookup (with lazy expiry),
    owning user, then the optional admin and lifecycle gates. The resolved
    context is stored on ``request.state.auth``.
    """

    def __init__(
        self,
        database: Database,
        sessions: SessionManager,
        *,
        require_admin: bool = False,
        lifecycle: Optional[AccountLifecycle] = None,
    ) -> None:
        self._database = database
        self._sessions = sessions
        self._require_admin = require_admin
        self._lifecycle = lifecycle
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> AuthContext:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise Unauthenticated("Authentication required")
        token = credentials.credentials.strip()
        if not token:
            raise Unauthenticated("Authentication required")

        session = self._sessions.resolve(token)
        user = self._database.get_user(session.user_id)
        if user is None:
            raise Unauthenticated("User not found")

        context = AuthContext(user=user, session=session)
        request.state.auth = context

        if self._require_admin and not user.is_admin:
            raise Forbidden("Admin access required")
        if self._lifecycle is not None:
            self._lifecycle.ensure_active(user)
        return context


__all__ = ["AuthContext", "SessionAuth"]

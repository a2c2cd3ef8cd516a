"""Signup, signin and administrative account operations."""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Mapping, Optional, Tuple

from .config import Settings
from .database import Database
from .errors import Forbidden, InvalidCredentials, NotFound, ValidationError
from .lifecycle import AccountLifecycle
from .models import AccountStatus, Session, User
from .notifications import NotificationRelay
from .sessions import SessionManager

logger = logging.getLogger("securebank.accounts")

WELCOME_MESSAGE = (
    "Welcome to SecureBank! Your account is pending approval. Please submit your "
    "credit card details to continue the verification process. If you have any "
    "questions, feel free to message us here."
)


@dataclass(frozen=True)
class SignupRequest:
    username: str
    email: str
    password: str
    profile: Mapping[str, Optional[str]]


@dataclass(frozen=True)
class AccountStats:
    total_users: int
    pending_count: int
    approved_count: int
    unread_messages: int
    active_today: int


class AccountService:
    def __init__(
        self,
        database: Database,
        sessions: SessionManager,
        lifecycle: AccountLifecycle,
        relay: NotificationRelay,
        settings: Settings,
    ) -> None:
        self._database = database
        self._sessions = sessions
        self._lifecycle = lifecycle
        self._relay = relay
        self._settings = settings

    def bootstrap_admin(self) -> Tuple[User, Optional[str]]:
        """Make sure the administrator exists.

        Returns the admin and, when a password had to be generated, that
        password so the caller can report it once.
        """

        password = self._settings.admin_password
        generated: Optional[str] = None
        if not password:
            generated = password = secrets.token_urlsafe(12)
        admin, created = self._database.ensure_admin(
            self._settings.admin_username,
            self._settings.admin_email,
            password,
        )
        if created:
            logger.info("Bootstrap administrator %s created", admin.username)
            return admin, generated
        return admin, None

    def signup(self, request: SignupRequest) -> Tuple[User, Session]:
        if "@" in request.username:
            raise ValidationError("Username must not contain '@'")
        # Usernames and emails share one sign-in namespace.
        for identifier in (request.username, request.email):
            if self._database.get_user_by_identifier(identifier) is not None:
                raise ValidationError("User already exists")

        user = self._database.create_user(
            request.username,
            request.email,
            request.password,
            profile=request.profile,
        )
        session = self._sessions.create(user.id)
        logger.info("New user %s (%s) signed up", user.id, user.username)

        self._relay.notify_admin(
            "New account pending approval",
            f"{user.username} <{user.email}> signed up and is awaiting approval.",
        )
        self._relay.message_from_admin(user.id, WELCOME_MESSAGE)
        return user, session

    def signin(self, identifier: str, password: str) -> Tuple[User, Session]:
        user = self._database.authenticate_user(identifier, password)
        if user is None:
            logger.warning("Failed sign-in attempt for %s", identifier)
            raise InvalidCredentials("Invalid credentials")
        self._lifecycle.check_sign_in(user)
        session = self._sessions.create(user.id)
        logger.info("User %s signed in", user.id)
        return user, session

    def logout(self, session: Session) -> None:
        self._sessions.destroy(session.token)
        logger.info("User %s signed out", session.user_id)

    def update_profile(
        self,
        user: User,
        fields: Mapping[str, Optional[str]],
        *,
        email: Optional[str] = None,
    ) -> User:
        updated = self._database.update_user_profile(user.id, fields, email=email)
        if updated is None:
            raise NotFound("User not found")
        return updated

    def request_password_reset(self, identifier: str) -> None:
        """Forward a reset request to the administrator.

        The caller learns nothing about whether the identifier matched.
        """

        user = self._database.get_user_by_identifier(identifier)
        if user is None or user.is_admin:
            logger.info("Password reset requested for unknown identifier")
            return
        self._relay.notify_admin(
            "Password reset requested",
            f"{user.username} (user #{user.id}) asked for a password reset.",
        )

    def reset_password(self, actor: User, user_id: int) -> str:
        """Force a new temporary password on a customer and return it once."""

        if not actor.is_admin:
            raise Forbidden("Admin access required")
        target = self._database.get_user(user_id)
        if target is None:
            raise NotFound("User not found")
        self._lifecycle.ensure_mutable(target)

        temporary = secrets.token_urlsafe(12)
        if not self._database.set_user_password(user_id, temporary):
            raise NotFound("User not found")
        revoked = self._sessions.destroy_all(user_id)
        logger.info("Admin %s reset the password of user %s (%d sessions revoked)", actor.id, user_id, revoked)

        self._relay.notify(
            user_id,
            "Password reset",
            "An administrator reset your password. Use the temporary password you were given to sign in.",
        )
        return temporary

    def delete_user(self, actor: User, user_id: int) -> None:
        if not actor.is_admin:
            raise Forbidden("Admin access required")
        target = self._database.get_user(user_id)
        if target is None:
            raise NotFound("User not found")
        self._lifecycle.ensure_mutable(target)
        if not self._database.delete_user(user_id):
            raise NotFound("User not found")
        logger.info("Admin %s deleted user %s (%s)", actor.id, user_id, target.username)

    def stats(self, admin: User, now: datetime) -> AccountStats:
        counts: Dict[str, int] = self._database.count_users_by_status()
        customers = [user for user in self._database.list_users() if not user.is_admin]
        active_today = sum(1 for user in customers if user.updated_at.date() == now.date())
        return AccountStats(
            total_users=sum(counts.values()),
            pending_count=counts.get(AccountStatus.PENDING.value, 0),
            approved_count=counts.get(AccountStatus.APPROVED.value, 0),
            unread_messages=self._database.count_unread_messages(admin.id),
            active_today=active_today,
        )


__all__ = ["AccountService", "AccountStats", "SignupRequest", "WELCOME_MESSAGE"]

"""Account approval workflow and the lifecycle gates derived from it."""
from __future__ import annotations

import logging
from typing import Optional

from .config import Settings
from .database import Database
from .errors import AccountNotActive, Forbidden, NotFound, ProtectedAccount, ValidationError
from .models import AccountStatus, User
from .notifications import NotificationRelay

logger = logging.getLogger("securebank.lifecycle")

# Any customer may be moved to any of these states, including the one it is
# already in.
TRANSITION_TARGETS = frozenset(
    {AccountStatus.APPROVED, AccountStatus.REJECTED, AccountStatus.SUSPENDED}
)

_ACTIVE_STATES = frozenset({AccountStatus.PENDING, AccountStatus.APPROVED})

_STATUS_TITLES = {
    AccountStatus.APPROVED: "Account approved",
    AccountStatus.REJECTED: "Account application rejected",
    AccountStatus.SUSPENDED: "Account suspended",
}

_STATUS_MESSAGES = {
    AccountStatus.APPROVED: (
        "Good news! Your SecureBank account has been approved. "
        "You now have full access to your account."
    ),
    AccountStatus.REJECTED: (
        "We are sorry, your SecureBank account application has been rejected. "
        "Reply to this message if you believe this is a mistake."
    ),
    AccountStatus.SUSPENDED: (
        "Your SecureBank account has been suspended. "
        "Please contact support to restore access."
    ),
}


def parse_status(value: str) -> AccountStatus:
    try:
        return AccountStatus(value.strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Invalid status: {value!r}") from exc


class AccountLifecycle:
    def __init__(self, database: Database, relay: NotificationRelay, settings: Settings) -> None:
        self._database = database
        self._relay = relay
        self._settings = settings

    def transition(
        self,
        actor: User,
        user_id: int,
        status: AccountStatus | str,
        message: Optional[str] = None,
    ) -> User:
        """Move a customer to ``status`` and tell them about it.

        The status change is committed first. The notification and the
        message from the administrator follow as side effects.
        """

        if not actor.is_admin:
            raise Forbidden("Admin access required")
        target_status = parse_status(status) if isinstance(status, str) else status
        if target_status not in TRANSITION_TARGETS:
            raise ValidationError(f"Cannot move an account to {target_status.value!r}")

        target = self._database.get_user(user_id)
        if target is None:
            raise NotFound("User not found")
        self.ensure_mutable(target)

        updated = self._database.update_user_status(user_id, target_status)
        if updated is None:
            raise NotFound("User not found")

        logger.info(
            "Admin %s moved user %s from %s to %s",
            actor.id,
            user_id,
            target.status.value,
            target_status.value,
        )

        text = (message or "").strip() or _STATUS_MESSAGES[target_status]
        self._relay.notify(user_id, _STATUS_TITLES[target_status], _STATUS_MESSAGES[target_status])
        self._relay.send_message(actor.id, user_id, text)
        return updated

    def check_sign_in(self, user: User) -> None:
        """Raise :class:`AccountNotActive` when ``user`` may not sign in."""

        if user.is_admin and self._settings.admin_bypasses_lifecycle:
            return
        if user.status is AccountStatus.APPROVED:
            return
        if user.status is AccountStatus.PENDING and self._settings.allow_pending_sign_in:
            return
        raise AccountNotActive(user.status.value)

    def ensure_active(self, user: User) -> None:
        """Gate for business actions available to pending and approved users."""

        if user.is_admin and self._settings.admin_bypasses_lifecycle:
            return
        if user.status not in _ACTIVE_STATES:
            raise AccountNotActive(user.status.value)

    def ensure_mutable(self, user: User) -> None:
        if user.is_admin:
            raise ProtectedAccount("The bootstrap administrator cannot be modified")


__all__ = ["AccountLifecycle", "TRANSITION_TARGETS", "parse_status"]

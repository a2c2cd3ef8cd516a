"""Notification and direct-message relay."""
from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List, Optional

from .database import Database
from .errors import Forbidden, NotFound, ValidationError
from .models import Conversation, Message, Notification, User

logger = logging.getLogger("securebank.notifications")

MAX_MESSAGE_LENGTH = 5000


class NotificationRelay:
    """Write notifications and messages on behalf of other components.

    :meth:`notify` and :meth:`send_message` are side effects of a primary
    action. A failure to persist them is logged and reported as ``None``;
    it never undoes the action that triggered it.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    def notify(self, user_id: int, title: str, text: str) -> Optional[Notification]:
        try:
            return self._database.create_notification(user_id, title, text)
        except (sqlite3.Error, ValidationError):
            logger.exception("Failed to record notification %r for user %s", title, user_id)
            return None

    def notify_admin(self, title: str, text: str) -> Optional[Notification]:
        try:
            admin = self._database.get_admin()
        except sqlite3.Error:
            logger.exception("Failed to look up the administrator for notification %r", title)
            return None
        if admin is None:
            logger.warning("No administrator account to receive notification %r", title)
            return None
        return self.notify(admin.id, title, text)

    def message_from_admin(self, receiver_id: int, content: str) -> Optional[Message]:
        try:
            admin = self._database.get_admin()
        except sqlite3.Error:
            logger.exception("Failed to look up the administrator to message user %s", receiver_id)
            return None
        if admin is None:
            logger.warning("No administrator account to message user %s", receiver_id)
            return None
        return self.send_message(admin.id, receiver_id, content)

    def send_message(self, sender_id: int, receiver_id: int, content: str) -> Optional[Message]:
        try:
            return self._database.create_message(sender_id, receiver_id, content)
        except (sqlite3.Error, ValidationError):
            logger.exception("Failed to deliver message from %s to %s", sender_id, receiver_id)
            return None

    # ------------------------------------------------------------------
    # User-facing messaging
    # ------------------------------------------------------------------
    def post_message(self, sender: User, receiver_id: Optional[int], content: str) -> Message:
        """Send a message typed by a user; defaults to the administrator."""

        text = content.strip()
        if not text:
            raise ValidationError("Message content is required")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Messages are limited to {MAX_MESSAGE_LENGTH} characters")

        if receiver_id is None:
            admin = self._database.get_admin()
            if admin is None:
                raise NotFound("No administrator is available to receive messages")
            receiver_id = admin.id
        if receiver_id == sender.id:
            raise ValidationError("You cannot send a message to yourself")

        receiver = self._database.get_user(receiver_id)
        if receiver is None:
            raise NotFound("Recipient not found")
        if not sender.is_admin and not receiver.is_admin:
            raise Forbidden("Customers may only message the bank administrator")

        return self._database.create_message(sender.id, receiver.id, text)

    def conversations(self, user_id: int) -> List[Conversation]:
        """Summarise a user's messages as one entry per conversation partner."""

        latest: Dict[int, Message] = {}
        unread: Dict[int, int] = {}
        # Messages arrive newest first, so the first one seen per partner is the latest.
        for message in self._database.list_messages_for_user(user_id):
            partner_id = message.partner_of(user_id)
            latest.setdefault(partner_id, message)
            if message.receiver_id == user_id and not message.is_read:
                unread[partner_id] = unread.get(partner_id, 0) + 1

        ordered = sorted(
            latest.items(),
            key=lambda item: (item[1].created_at, item[1].id),
            reverse=True,
        )
        return [
            Conversation(
                partner_id=partner_id,
                partner=self._database.get_user(partner_id),
                last_message=message,
                unread_count=unread.get(partner_id, 0),
            )
            for partner_id, message in ordered
        ]

    def thread(self, user_id: int, partner_id: int, *, mark_read: bool = True) -> List[Message]:
        if mark_read:
            self._database.mark_messages_read(user_id, sender_id=partner_id)
        return self._database.list_messages_between(user_id, partner_id)

    def delete_message(self, actor: User, message_id: int) -> None:
        message = self._database.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        if not actor.is_admin and message.sender_id != actor.id:
            raise Forbidden("Only the sender or an administrator can delete this message")
        self._database.delete_message(message_id)


__all__ = ["MAX_MESSAGE_LENGTH", "NotificationRelay"]

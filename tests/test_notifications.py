from __future__ import annotations

import logging
import sqlite3
from unittest import mock

import pytest

from securebank.errors import Forbidden, NotFound, ValidationError
from securebank.models import AccountStatus

from conftest import Bank


def test_notify_and_send_message_append_unread_rows(bank: Bank) -> None:
    user = bank.signup("alice")

    notification = bank.relay.notify(user.id, "Hello", "First notification")
    message = bank.relay.send_message(bank.admin.id, user.id, "Hi Alice")

    assert notification is not None and notification.read is False
    assert message is not None and message.is_read is False
    assert bank.database.list_notifications(user.id)[0].id == notification.id


def test_side_effect_failure_is_logged_not_raised(bank: Bank, caplog: pytest.LogCaptureFixture) -> None:
    user = bank.signup("alice")
    caplog.set_level(logging.ERROR, logger="securebank.notifications")

    with mock.patch.object(
        bank.database, "create_notification", side_effect=sqlite3.OperationalError("database is locked")
    ), mock.patch.object(
        bank.database, "create_message", side_effect=sqlite3.OperationalError("database is locked")
    ):
        updated = bank.lifecycle.transition(bank.admin, user.id, AccountStatus.APPROVED)

    assert updated.status is AccountStatus.APPROVED
    assert bank.database.get_user(user.id).status is AccountStatus.APPROVED
    assert "Failed to record notification" in caplog.text
    assert "Failed to deliver message" in caplog.text


def test_signup_survives_notification_failure(bank: Bank) -> None:
    with mock.patch.object(bank.relay, "notify", return_value=None) as notify:
        user = bank.signup("alice")

    notify.assert_called_once()
    assert bank.database.get_user(user.id) is not None


def test_post_message_defaults_to_admin(bank: Bank) -> None:
    user = bank.signup("alice")

    message = bank.relay.post_message(user, None, "  Where is my card?  ")

    assert message.receiver_id == bank.admin.id
    assert message.content == "Where is my card?"


def test_post_message_validation(bank: Bank) -> None:
    alice = bank.signup("alice")
    bob = bank.signup("bob")

    with pytest.raises(ValidationError):
        bank.relay.post_message(alice, None, "   ")
    with pytest.raises(ValidationError):
        bank.relay.post_message(alice, alice.id, "talking to myself")
    with pytest.raises(NotFound):
        bank.relay.post_message(bank.admin, 9999, "hello?")
    with pytest.raises(Forbidden):
        bank.relay.post_message(alice, bob.id, "hi bob")


def test_conversations_group_by_partner(bank: Bank) -> None:
    alice = bank.signup("alice")
    bob = bank.signup("bob")
    admin = bank.admin

    bank.relay.post_message(alice, None, "alice one")
    bank.relay.post_message(alice, None, "alice two")
    bank.relay.post_message(bob, None, "bob one")
    bank.relay.post_message(admin, alice.id, "reply to alice")
    bank.relay.post_message(alice, None, "alice three")

    conversations = bank.relay.conversations(admin.id)

    assert [c.partner_id for c in conversations] == [alice.id, bob.id]
    by_partner = {c.partner_id: c for c in conversations}
    assert by_partner[alice.id].last_message.content == "alice three"
    assert by_partner[alice.id].unread_count == 3
    assert by_partner[bob.id].unread_count == 1
    assert by_partner[bob.id].partner.username == "bob"


def test_conversation_unread_counts_only_incoming(bank: Bank) -> None:
    alice = bank.signup("alice")
    bank.relay.post_message(alice, None, "question")

    # Alice has the welcome message and one from the admin she has not read;
    # her own outgoing message never counts as unread for her.
    bank.relay.post_message(bank.admin, alice.id, "answer")
    (conversation,) = bank.relay.conversations(alice.id)

    assert conversation.partner_id == bank.admin.id
    assert conversation.last_message.content == "answer"
    assert conversation.unread_count == 2


def test_thread_marks_partner_messages_read(bank: Bank) -> None:
    alice = bank.signup("alice")
    bank.relay.post_message(alice, None, "one")
    bank.relay.post_message(alice, None, "two")

    thread = bank.relay.thread(bank.admin.id, alice.id)

    assert [m.content for m in thread][-2:] == ["one", "two"]
    assert bank.database.unread_counts_by_sender(bank.admin.id) == {}
    # Messages sent by the admin stay unread for alice.
    assert bank.database.count_unread_messages(alice.id) == 1


def test_delete_message_permissions(bank: Bank) -> None:
    alice = bank.signup("alice")
    bob = bank.signup("bob")
    message = bank.relay.post_message(alice, None, "oops")

    with pytest.raises(Forbidden):
        bank.relay.delete_message(bob, message.id)
    bank.relay.delete_message(alice, message.id)
    assert bank.database.get_message(message.id) is None

    other = bank.relay.post_message(bob, None, "moderate me")
    bank.relay.delete_message(bank.admin, other.id)
    with pytest.raises(NotFound):
        bank.relay.delete_message(bank.admin, other.id)


def test_thread_reflects_read_state(bank: Bank) -> None:
    alice = bank.signup("alice")
    bank.relay.post_message(alice, None, "are you there?")

    thread = bank.relay.thread(bank.admin.id, alice.id)

    incoming = [m for m in thread if m.sender_id == alice.id]
    assert [m.is_read for m in incoming] == [True]
    outgoing = [m for m in thread if m.sender_id == bank.admin.id]
    assert all(not m.is_read for m in outgoing)


def test_admin_lookup_failure_does_not_fail_signup(bank: Bank, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR, logger="securebank.notifications")

    with mock.patch.object(
        bank.database, "get_admin", side_effect=sqlite3.OperationalError("database is locked")
    ):
        user = bank.signup("alice")

    assert bank.database.get_user(user.id) is not None
    assert bank.database.list_messages_for_user(user.id) == []
    assert "Failed to look up the administrator" in caplog.text

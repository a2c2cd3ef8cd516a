from __future__ import annotations

from pathlib import Path

import pytest

from securebank.errors import AccountNotActive, Forbidden, NotFound, ProtectedAccount, ValidationError
from securebank.models import AccountStatus

from conftest import ADMIN_PASSWORD, Bank, build_bank, make_settings

ALL_STATES = list(AccountStatus)
TARGETS = [AccountStatus.APPROVED, AccountStatus.REJECTED, AccountStatus.SUSPENDED]


def _counts(bank: Bank, user_id: int) -> tuple[int, int]:
    notifications = len(bank.database.list_notifications(user_id))
    messages = len(
        [m for m in bank.database.list_messages_for_user(user_id) if m.receiver_id == user_id]
    )
    return notifications, messages


@pytest.mark.parametrize("start", ALL_STATES)
@pytest.mark.parametrize("target", TARGETS)
def test_every_transition_notifies_once(bank: Bank, start: AccountStatus, target: AccountStatus) -> None:
    user = bank.signup("alice")
    bank.database.update_user_status(user.id, start)
    before = _counts(bank, user.id)

    updated = bank.lifecycle.transition(bank.admin, user.id, target)

    assert updated.status is target
    assert bank.database.get_user(user.id).status is target
    after = _counts(bank, user.id)
    assert after == (before[0] + 1, before[1] + 1)


def test_transition_message_comes_from_admin(bank: Bank) -> None:
    user = bank.signup("alice")

    bank.lifecycle.transition(bank.admin, user.id, "approved")

    latest = bank.database.list_messages_between(bank.admin.id, user.id)[-1]
    assert latest.sender_id == bank.admin.id
    assert "approved" in latest.content
    assert bank.database.list_notifications(user.id)[0].title == "Account approved"


def test_custom_message_replaces_default_text(bank: Bank) -> None:
    user = bank.signup("alice")

    bank.lifecycle.transition(bank.admin, user.id, AccountStatus.REJECTED, "Documents were unreadable.")

    latest = bank.database.list_messages_between(bank.admin.id, user.id)[-1]
    assert latest.content == "Documents were unreadable."


def test_pending_is_not_a_transition_target(bank: Bank) -> None:
    user = bank.signup("alice")
    with pytest.raises(ValidationError):
        bank.lifecycle.transition(bank.admin, user.id, AccountStatus.PENDING)
    with pytest.raises(ValidationError):
        bank.lifecycle.transition(bank.admin, user.id, "frozen")


def test_only_admin_can_transition(bank: Bank) -> None:
    alice = bank.signup("alice")
    bob = bank.signup("bob")
    with pytest.raises(Forbidden):
        bank.lifecycle.transition(alice, bob.id, AccountStatus.APPROVED)


def test_unknown_user_cannot_transition(bank: Bank) -> None:
    with pytest.raises(NotFound):
        bank.lifecycle.transition(bank.admin, 4242, AccountStatus.APPROVED)


@pytest.mark.parametrize("target", TARGETS)
def test_bootstrap_admin_is_exempt(bank: Bank, target: AccountStatus) -> None:
    with pytest.raises(ProtectedAccount):
        bank.lifecycle.transition(bank.admin, bank.admin.id, target)
    assert bank.database.get_user(bank.admin.id).status is AccountStatus.APPROVED


@pytest.mark.parametrize("status", ALL_STATES)
def test_sign_in_requires_approval(bank: Bank, status: AccountStatus) -> None:
    user = bank.signup("alice", password="pw123456")
    bank.database.update_user_status(user.id, status)

    if status is AccountStatus.APPROVED:
        signed_in, session = bank.accounts.signin("alice", "pw123456")
        assert signed_in.id == user.id
        assert session.user_id == user.id
    else:
        with pytest.raises(AccountNotActive) as excinfo:
            bank.accounts.signin("alice", "pw123456")
        assert excinfo.value.status == status.value


@pytest.mark.parametrize("status", ALL_STATES)
def test_admin_always_signs_in(bank: Bank, status: AccountStatus) -> None:
    bank.database.update_user_status(bank.admin.id, status)

    admin, session = bank.accounts.signin(bank.settings.admin_username, ADMIN_PASSWORD)

    assert admin.is_admin
    assert session.user_id == admin.id


def test_admin_bypass_can_be_disabled(tmp_path: Path) -> None:
    bank = build_bank(make_settings(tmp_path, admin_bypasses_lifecycle=False))
    bank.database.update_user_status(bank.admin.id, AccountStatus.SUSPENDED)

    with pytest.raises(AccountNotActive):
        bank.accounts.signin(bank.settings.admin_username, ADMIN_PASSWORD)


def test_pending_sign_in_can_be_allowed(tmp_path: Path) -> None:
    bank = build_bank(make_settings(tmp_path, allow_pending_sign_in=True))
    bank.signup("alice", password="pw123456")

    user, _ = bank.accounts.signin("alice", "pw123456")
    assert user.status is AccountStatus.PENDING

    bank.database.update_user_status(user.id, AccountStatus.SUSPENDED)
    with pytest.raises(AccountNotActive):
        bank.accounts.signin("alice", "pw123456")

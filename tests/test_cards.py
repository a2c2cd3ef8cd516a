from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest

from securebank.cards import CardTokenizer, detect_brand, luhn_valid
from securebank.errors import Forbidden, NotFound, ValidationError

from conftest import Bank

VISA = "4111 1111 1111 1111"
NOW = datetime(2026, 10, 18, tzinfo=timezone.utc)


@pytest.fixture()
def tokenizer() -> CardTokenizer:
    return CardTokenizer("tests-secret-key")


def _tokenize(tokenizer: CardTokenizer, **overrides):
    fields = {
        "card_number": VISA,
        "expiry_month": 12,
        "expiry_year": 2030,
        "cvv": "123",
        "cardholder_name": "  Alice   Liddell ",
        "now": NOW,
    }
    fields.update(overrides)
    return tokenizer.tokenize(**fields)


def test_luhn_and_brand_detection() -> None:
    assert luhn_valid("4111111111111111")
    assert not luhn_valid("4111111111111112")
    assert detect_brand("4111111111111111") == "visa"
    assert detect_brand("5555555555554444") == "mastercard"
    assert detect_brand("378282246310005") == "amex"
    assert detect_brand("6011111111111117") == "discover"
    assert detect_brand("3530111333300000") == "unknown"


def test_tokenize_keeps_only_safe_fields(tokenizer: CardTokenizer) -> None:
    card = _tokenize(tokenizer)

    assert card.token.startswith("tok_")
    assert "4111111111111111" not in card.token
    assert card.last4 == "1111"
    assert card.brand == "visa"
    assert card.cardholder_name == "Alice Liddell"
    assert card.fingerprint == tokenizer.fingerprint("4111111111111111")
    assert card.fingerprint != CardTokenizer("another-secret").fingerprint("4111111111111111")


def test_two_digit_year_is_expanded(tokenizer: CardTokenizer) -> None:
    assert _tokenize(tokenizer, expiry_year=30).expiry_year == 2030


@pytest.mark.parametrize(
    "overrides",
    [
        {"card_number": "4111 1111 1111 1112"},
        {"card_number": "4111-abcd-1111-1111"},
        {"card_number": "411111"},
        {"expiry_month": 13},
        {"expiry_month": 9, "expiry_year": 2026},
        {"cvv": "12"},
        {"cvv": "12a"},
        {"cvv": "\u0661\u0662\u0663"},
        {"card_number": "\u0664" + "\u0661" * 15},
        {"card_number": "4111111111111111\u00b2"},
        {"cardholder_name": "   "},
    ],
)
def test_invalid_cards_are_rejected(tokenizer: CardTokenizer, overrides) -> None:
    with pytest.raises(ValidationError):
        _tokenize(tokenizer, **overrides)


def test_card_expiring_this_month_is_accepted(tokenizer: CardTokenizer) -> None:
    assert _tokenize(tokenizer, expiry_month=10, expiry_year=2026).expiry_month == 10


def _submit(bank: Bank, user, number: str = VISA):
    return bank.cards.submit(
        user,
        card_number=number,
        expiry_month=12,
        expiry_year=2030,
        cvv="123",
        cardholder_name="Alice Liddell",
        now=NOW,
    )


def test_submit_stores_no_card_number_or_cvv(bank: Bank) -> None:
    user = bank.signup("alice")
    card = _submit(bank, user)

    with sqlite3.connect(bank.database.path) as conn:
        row = conn.execute("SELECT * FROM credit_cards WHERE user_id = ?", (user.id,)).fetchone()

    stored = " ".join(str(value) for value in row)
    assert "4111111111111111" not in stored
    assert "123" not in stored.split()
    assert card.is_verified is False


def test_submit_notifies_admin(bank: Bank) -> None:
    user = bank.signup("alice")
    before = len(bank.database.list_notifications(bank.admin.id))

    _submit(bank, user)

    notifications = bank.database.list_notifications(bank.admin.id)
    assert len(notifications) == before + 1
    assert "ending in 1111" in notifications[0].message


def test_resubmission_replaces_card_and_resets_verification(bank: Bank) -> None:
    user = bank.signup("alice")
    _submit(bank, user)
    bank.cards.verify(bank.admin, user.id, True)

    replaced = _submit(bank, user, number="5555 5555 5555 4444")

    assert replaced.brand == "mastercard"
    assert replaced.is_verified is False
    assert len(bank.database.list_credit_cards()) == 1


def test_verify_card(bank: Bank) -> None:
    user = bank.signup("alice")
    _submit(bank, user)

    with pytest.raises(Forbidden):
        bank.cards.verify(user, user.id, True)

    card = bank.cards.verify(bank.admin, user.id, True)
    assert card.is_verified is True
    assert bank.database.list_notifications(user.id)[0].title == "Card verified"

    other = bank.signup("bob")
    with pytest.raises(NotFound):
        bank.cards.verify(bank.admin, other.id, True)

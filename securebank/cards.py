"""Credit-card capture with tokenization at the boundary."""
from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cryptography.hazmat.primitives import hashes, hmac

from .database import Database
from .errors import Forbidden, NotFound, ValidationError
from .models import CreditCard, User
from .notifications import NotificationRelay

logger = logging.getLogger("securebank.cards")

_BRAND_PATTERNS = (
    ("amex", re.compile(r"^3[47][0-9]{13}$")),
    ("visa", re.compile(r"^4[0-9]{11,18}$")),
    ("mastercard", re.compile(r"^(5[1-5][0-9]{14}|2(2[2-9]|[3-6][0-9]|7[01])[0-9]{13}|2720[0-9]{12})$")),
    ("discover", re.compile(r"^6(011|5[0-9]{2})[0-9]{12,15}$")),
)

_CARD_NUMBER = re.compile(r"[0-9]{12,19}")
_CVV = re.compile(r"[0-9]{3,4}")


def luhn_valid(number: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def detect_brand(number: str) -> str:
    for brand, pattern in _BRAND_PATTERNS:
        if pattern.match(number):
            return brand
    return "unknown"


@dataclass(frozen=True)
class TokenizedCard:
    token: str
    brand: str
    last4: str
    expiry_month: int
    expiry_year: int
    cardholder_name: str
    fingerprint: str


class CardTokenizer:
    """Validate raw card fields and replace them with opaque references.

    Only the brand, the last four digits, the expiry and a keyed fingerprint
    of the card number survive; the number and the CVV are dropped.
    """

    def __init__(self, secret: Optional[str]) -> None:
        if not secret:
            logger.warning("BANK_SECRET is not set; card fingerprints will change on restart")
            secret = secrets.token_hex(32)
        self._key = secret.encode("utf-8")

    def fingerprint(self, card_number: str) -> str:
        mac = hmac.HMAC(self._key, hashes.SHA256())
        mac.update(card_number.encode("ascii"))
        return mac.finalize().hex()

    def tokenize(
        self,
        *,
        card_number: str,
        expiry_month: int,
        expiry_year: int,
        cvv: str,
        cardholder_name: str,
        now: datetime,
    ) -> TokenizedCard:
        number = re.sub(r"[\s-]", "", card_number)
        if not _CARD_NUMBER.fullmatch(number):
            raise ValidationError("Card number must contain 12 to 19 digits")
        if not luhn_valid(number):
            raise ValidationError("Card number is not valid")

        if not 1 <= expiry_month <= 12:
            raise ValidationError("Expiry month must be between 1 and 12")
        if expiry_year < 100:
            expiry_year += 2000
        if (expiry_year, expiry_month) < (now.year, now.month):
            raise ValidationError("Card has expired")

        cleaned_cvv = cvv.strip()
        if not _CVV.fullmatch(cleaned_cvv):
            raise ValidationError("CVV must be 3 or 4 digits")

        name = " ".join(cardholder_name.split())
        if not name:
            raise ValidationError("Cardholder name is required")

        return TokenizedCard(
            token=f"tok_{secrets.token_urlsafe(18)}",
            brand=detect_brand(number),
            last4=number[-4:],
            expiry_month=expiry_month,
            expiry_year=expiry_year,
            cardholder_name=name,
            fingerprint=self.fingerprint(number),
        )


class CardService:
    def __init__(self, database: Database, tokenizer: CardTokenizer, relay: NotificationRelay) -> None:
        self._database = database
        self._tokenizer = tokenizer
        self._relay = relay

    def submit(
        self,
        user: User,
        *,
        card_number: str,
        expiry_month: int,
        expiry_year: int,
        cvv: str,
        cardholder_name: str,
        now: datetime,
    ) -> CreditCard:
        tokenized = self._tokenizer.tokenize(
            card_number=card_number,
            expiry_month=expiry_month,
            expiry_year=expiry_year,
            cvv=cvv,
            cardholder_name=cardholder_name,
            now=now,
        )
        card = self._database.save_credit_card(
            user.id,
            token=tokenized.token,
            brand=tokenized.brand,
            last4=tokenized.last4,
            expiry_month=tokenized.expiry_month,
            expiry_year=tokenized.expiry_year,
            cardholder_name=tokenized.cardholder_name,
            fingerprint=tokenized.fingerprint,
        )
        logger.info("User %s submitted a %s card ending in %s", user.id, card.brand, card.last4)
        self._relay.notify_admin(
            "Card details submitted",
            f"{user.username} submitted a {card.brand} card ending in {card.last4} for verification.",
        )
        return card

    def verify(self, actor: User, user_id: int, is_verified: bool) -> CreditCard:
        if not actor.is_admin:
            raise Forbidden("Admin access required")
        card = self._database.set_credit_card_verified(user_id, is_verified)
        if card is None:
            raise NotFound("No card on file for this user")
        if is_verified:
            self._relay.notify(
                user_id,
                "Card verified",
                f"Your card ending in {card.last4} has been verified.",
            )
        else:
            self._relay.notify(
                user_id,
                "Card verification revoked",
                f"Your card ending in {card.last4} needs to be verified again.",
            )
        return card


__all__ = ["CardService", "CardTokenizer", "TokenizedCard", "detect_brand", "luhn_valid"]

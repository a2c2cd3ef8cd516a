"""Domain models for the SecureBank service."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Optional


class AccountStatus(str, Enum):
    """Lifecycle state governing what a customer account may do."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


@dataclass(frozen=True)
class Profile:
    """Free-form personal details captured at signup."""

    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


PROFILE_FIELDS = tuple(item.name for item in fields(Profile))


@dataclass(frozen=True)
class User:
    """Represents a customer or the bootstrap administrator."""

    id: int
    username: str
    email: str
    status: AccountStatus
    is_admin: bool
    created_at: datetime
    updated_at: datetime
    profile: Profile = field(default_factory=Profile)


@dataclass(frozen=True)
class Session:
    token: str
    user_id: int
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class Notification:
    id: int
    user_id: int
    title: str
    message: str
    read: bool
    created_at: datetime


@dataclass(frozen=True)
class Message:
    id: int
    sender_id: int
    receiver_id: int
    content: str
    is_read: bool
    created_at: datetime

    def partner_of(self, user_id: int) -> int:
        """Return the id of the other party from ``user_id``'s point of view."""

        return self.receiver_id if self.sender_id == user_id else self.sender_id


@dataclass(frozen=True)
class CreditCard:
    """A tokenized card submission; the raw card number is never stored."""

    id: int
    user_id: int
    token: str
    brand: str
    last4: str
    expiry_month: int
    expiry_year: int
    cardholder_name: str
    fingerprint: str
    is_verified: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Conversation:
    partner_id: int
    partner: Optional[User]
    last_message: Message
    unread_count: int


__all__ = [
    "AccountStatus",
    "Conversation",
    "CreditCard",
    "Message",
    "Notification",
    "PROFILE_FIELDS",
    "Profile",
    "Session",
    "User",
]

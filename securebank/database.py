"""SQLite-backed persistence for users, sessions, messages and cards."""
from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from passlib.context import CryptContext

from .errors import ValidationError
from .models import (
    PROFILE_FIELDS,
    AccountStatus,
    CreditCard,
    Message,
    Notification,
    Profile,
    Session,
    User,
)


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=10)


def _hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def _verify_password(password: str, hashed: str) -> bool:
    try:
        return _pwd_context.verify(password, hashed)
    except ValueError:
        return False


def _placeholders(values: Sequence[object]) -> str:
    return ", ".join("?" for _ in values)


class Database:
    """Repository over a single SQLite file.

    Each public method opens its own connection and commits on exit, so every
    write is a single transaction and readers never observe a half-applied
    record.
    """

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    is_admin INTEGER NOT NULL DEFAULT 0,
                    first_name TEXT NOT NULL DEFAULT '',
                    last_name TEXT NOT NULL DEFAULT '',
                    phone TEXT,
                    date_of_birth TEXT,
                    address TEXT,
                    city TEXT,
                    state TEXT,
                    zip_code TEXT,
                    country TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sessions (
                    token TEXT PRIMARY KEY,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sender_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    receiver_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    content TEXT NOT NULL,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS credit_cards (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
                    token TEXT NOT NULL UNIQUE,
                    brand TEXT NOT NULL,
                    last4 TEXT NOT NULL,
                    expiry_month INTEGER NOT NULL,
                    expiry_year INTEGER NOT NULL,
                    cardholder_name TEXT NOT NULL,
                    fingerprint TEXT NOT NULL,
                    is_verified INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id);
                CREATE INDEX IF NOT EXISTS idx_notifications_user_id ON notifications(user_id);
                CREATE INDEX IF NOT EXISTS idx_messages_sender_id ON messages(sender_id);
                CREATE INDEX IF NOT EXISTS idx_messages_receiver_id ON messages(receiver_id);
                """
            )

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        profile: Optional[Mapping[str, Optional[str]]] = None,
        status: AccountStatus = AccountStatus.PENDING,
        is_admin: bool = False,
    ) -> User:
        """Create a new user with a hashed password."""

        normalized_username = username.strip()
        if not normalized_username:
            raise ValidationError("Username must not be empty")
        normalized_email = email.strip().lower()
        if not normalized_email:
            raise ValidationError("Email must not be empty")
        if not password:
            raise ValidationError("Password must not be empty")

        profile_values = self._clean_profile(profile or {})
        created_at = _serialize_datetime(_current_timestamp())
        password_hash = _hash_password(password)

        columns = ["username", "email", "password_hash", "status", "is_admin", *profile_values, "created_at", "updated_at"]
        values: List[object] = [
            normalized_username,
            normalized_email,
            password_hash,
            AccountStatus(status).value,
            int(bool(is_admin)),
            *profile_values.values(),
            created_at,
            created_at,
        ]

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    f"INSERT INTO users ({', '.join(columns)}) VALUES ({_placeholders(values)})",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError("A user with that username or email already exists") from exc
            user_id = cursor.lastrowid

        user = self.get_user(user_id)
        if user is None:
            raise RuntimeError("Failed to load user after creation")
        return user

    def ensure_admin(self, username: str, email: str, password: str) -> tuple[User, bool]:
        """Create the bootstrap administrator unless one already exists.

        Returns the admin together with a flag telling whether it was created.
        """

        existing = self.get_admin()
        if existing is not None:
            return existing, False
        admin = self.create_user(
            username,
            email,
            password,
            profile={"first_name": "Bank", "last_name": "Administrator"},
            status=AccountStatus.APPROVED,
            is_admin=True,
        )
        return admin, True

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = ?",
                (username.strip(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        """Look a user up by email address or username."""

        row = self._find_user_row(identifier)
        if row is None:
            return None
        return self._row_to_user(row)

    def get_admin(self) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE is_admin = 1 ORDER BY id LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def authenticate_user(self, identifier: str, password: str) -> Optional[User]:
        row = self._find_user_row(identifier)
        if row is None:
            return None
        if not _verify_password(password, str(row["password_hash"])):
            return None
        return self._row_to_user(row)

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at DESC, id DESC").fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_status(self, user_id: int, status: AccountStatus) -> Optional[User]:
        updated_at = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET status = ?, updated_at = ? WHERE id = ?",
                (AccountStatus(status).value, updated_at, user_id),
            )
            if cursor.rowcount == 0:
                return None
        return self.get_user(user_id)

    def update_user_profile(
        self,
        user_id: int,
        fields: Mapping[str, Optional[str]],
        *,
        email: Optional[str] = None,
    ) -> Optional[User]:
        """Update profile details (and optionally the email) for a user."""

        updates = self._clean_profile(fields)
        if email is not None:
            normalized_email = email.strip().lower()
            if not normalized_email:
                raise ValidationError("Email must not be empty")
            updates["email"] = normalized_email
        if not updates:
            return self.get_user(user_id)

        updates["updated_at"] = _serialize_datetime(_current_timestamp())
        assignments = ", ".join(f"{column} = ?" for column in updates)
        values = [*updates.values(), user_id]

        with self._connect() as conn:
            try:
                cursor = conn.execute(f"UPDATE users SET {assignments} WHERE id = ?", values)
            except sqlite3.IntegrityError as exc:
                raise ValidationError("A user with that email already exists") from exc
            if cursor.rowcount == 0:
                return None
        return self.get_user(user_id)

    def set_user_password(self, user_id: int, password: str) -> bool:
        if not password:
            raise ValidationError("Password must not be empty")
        password_hash = _hash_password(password)
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
                (password_hash, _serialize_datetime(_current_timestamp()), user_id),
            )
            return cursor.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Delete a user together with every record that references it."""

        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM notifications WHERE user_id = ?", (user_id,))
            conn.execute(
                "DELETE FROM messages WHERE sender_id = ? OR receiver_id = ?",
                (user_id, user_id),
            )
            conn.execute("DELETE FROM credit_cards WHERE user_id = ?", (user_id,))
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    def count_users_by_status(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS total FROM users WHERE is_admin = 0 GROUP BY status"
            ).fetchall()
        return {str(row["status"]): int(row["total"]) for row in rows}

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------
    def create_session(self, token: str, user_id: int, created_at: datetime, expires_at: datetime) -> Session:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO sessions (token, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (token, user_id, _serialize_datetime(created_at), _serialize_datetime(expires_at)),
            )
        return Session(token=token, user_id=user_id, created_at=created_at, expires_at=expires_at)

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE token = ?", (token,)).fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    def delete_session(self, token: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
            return cursor.rowcount > 0

    def delete_user_sessions(self, user_id: int) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
            return cursor.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sessions WHERE expires_at < ?",
                (_serialize_datetime(now),),
            )
            return cursor.rowcount

    def list_sessions_for_user(self, user_id: int) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE user_id = ? ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def create_notification(self, user_id: int, title: str, message: str) -> Notification:
        created_at = _current_timestamp()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO notifications (user_id, title, message, read, created_at) VALUES (?, ?, ?, 0, ?)",
                (user_id, title, message, _serialize_datetime(created_at)),
            )
            notification_id = cursor.lastrowid
        return Notification(
            id=int(notification_id),
            user_id=user_id,
            title=title,
            message=message,
            read=False,
            created_at=created_at,
        )

    def list_notifications(self, user_id: int) -> List[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    def mark_notifications_read(self, user_id: int, ids: Optional[Iterable[int]] = None) -> int:
        query = "UPDATE notifications SET read = 1 WHERE user_id = ? AND read = 0"
        values: List[object] = [user_id]
        if ids is not None:
            id_list = list(ids)
            if not id_list:
                return 0
            query += f" AND id IN ({_placeholders(id_list)})"
            values.extend(id_list)
        with self._connect() as conn:
            cursor = conn.execute(query, values)
            return cursor.rowcount

    def count_unread_notifications(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND read = 0",
                (user_id,),
            ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def create_message(self, sender_id: int, receiver_id: int, content: str) -> Message:
        created_at = _current_timestamp()
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO messages (sender_id, receiver_id, content, is_read, created_at) VALUES (?, ?, ?, 0, ?)",
                    (sender_id, receiver_id, content, _serialize_datetime(created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError("Message participants must be existing users") from exc
            message_id = cursor.lastrowid
        return Message(
            id=int(message_id),
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            is_read=False,
            created_at=created_at,
        )

    def get_message(self, message_id: int) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_message(row)

    def list_messages_for_user(self, user_id: int) -> List[Message]:
        """Return every message sent or received by ``user_id``, newest first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                 WHERE sender_id = ? OR receiver_id = ?
                 ORDER BY created_at DESC, id DESC
                """,
                (user_id, user_id),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def list_messages_between(self, user_id: int, partner_id: int) -> List[Message]:
        """Return the conversation between two users, oldest first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                 WHERE (sender_id = ? AND receiver_id = ?)
                    OR (sender_id = ? AND receiver_id = ?)
                 ORDER BY created_at, id
                """,
                (user_id, partner_id, partner_id, user_id),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def mark_messages_read(
        self,
        receiver_id: int,
        *,
        sender_id: Optional[int] = None,
        ids: Optional[Iterable[int]] = None,
    ) -> int:
        """Flag messages addressed to ``receiver_id`` as read."""

        query = "UPDATE messages SET is_read = 1 WHERE receiver_id = ? AND is_read = 0"
        values: List[object] = [receiver_id]
        if sender_id is not None:
            query += " AND sender_id = ?"
            values.append(sender_id)
        if ids is not None:
            id_list = list(ids)
            if not id_list:
                return 0
            query += f" AND id IN ({_placeholders(id_list)})"
            values.extend(id_list)
        with self._connect() as conn:
            cursor = conn.execute(query, values)
            return cursor.rowcount

    def count_unread_messages(self, receiver_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE receiver_id = ? AND is_read = 0",
                (receiver_id,),
            ).fetchone()
        return int(row[0])

    def unread_counts_by_sender(self, receiver_id: int) -> Dict[int, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT sender_id, COUNT(*) AS total FROM messages
                 WHERE receiver_id = ? AND is_read = 0
                 GROUP BY sender_id
                """,
                (receiver_id,),
            ).fetchall()
        return {int(row["sender_id"]): int(row["total"]) for row in rows}

    def delete_message(self, message_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Credit cards
    # ------------------------------------------------------------------
    def save_credit_card(
        self,
        user_id: int,
        *,
        token: str,
        brand: str,
        last4: str,
        expiry_month: int,
        expiry_year: int,
        cardholder_name: str,
        fingerprint: str,
    ) -> CreditCard:
        """Store the tokenized card for a user, replacing any earlier submission."""

        now = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO credit_cards (
                        user_id, token, brand, last4, expiry_month, expiry_year,
                        cardholder_name, fingerprint, is_verified, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        token = excluded.token,
                        brand = excluded.brand,
                        last4 = excluded.last4,
                        expiry_month = excluded.expiry_month,
                        expiry_year = excluded.expiry_year,
                        cardholder_name = excluded.cardholder_name,
                        fingerprint = excluded.fingerprint,
                        is_verified = 0,
                        updated_at = excluded.updated_at
                    """,
                    (
                        user_id,
                        token,
                        brand,
                        last4,
                        expiry_month,
                        expiry_year,
                        cardholder_name,
                        fingerprint,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValidationError("Card owner must be an existing user") from exc

        card = self.get_credit_card(user_id)
        if card is None:
            raise RuntimeError("Failed to load card after saving")
        return card

    def get_credit_card(self, user_id: int) -> Optional[CreditCard]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM credit_cards WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_card(row)

    def list_credit_cards(self) -> List[CreditCard]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM credit_cards ORDER BY updated_at DESC, id DESC").fetchall()
        return [self._row_to_card(row) for row in rows]

    def set_credit_card_verified(self, user_id: int, is_verified: bool) -> Optional[CreditCard]:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE credit_cards SET is_verified = ?, updated_at = ? WHERE user_id = ?",
                (int(bool(is_verified)), _serialize_datetime(_current_timestamp()), user_id),
            )
            if cursor.rowcount == 0:
                return None
        return self.get_credit_card(user_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _find_user_row(self, identifier: str) -> Optional[sqlite3.Row]:
        cleaned = identifier.strip()
        if not cleaned:
            return None
        with self._connect() as conn:
            return conn.execute(
                "SELECT * FROM users WHERE email = ? OR username = ? ORDER BY id LIMIT 1",
                (cleaned.lower(), cleaned),
            ).fetchone()

    @staticmethod
    def _clean_profile(fields: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        cleaned: Dict[str, Optional[str]] = {}
        for key in PROFILE_FIELDS:
            if key not in fields:
                continue
            value = fields[key]
            if value is not None:
                value = str(value).strip()
            if key in {"first_name", "last_name"}:
                cleaned[key] = value or ""
            else:
                cleaned[key] = value or None
        return cleaned

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            username=str(row["username"]),
            email=str(row["email"]),
            status=AccountStatus(str(row["status"])),
            is_admin=bool(row["is_admin"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
            profile=Profile(**{key: row[key] for key in PROFILE_FIELDS}),
        )

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            token=str(row["token"]),
            user_id=int(row["user_id"]),
            created_at=_parse_datetime(str(row["created_at"])),
            expires_at=_parse_datetime(str(row["expires_at"])),
        )

    def _row_to_notification(self, row: sqlite3.Row) -> Notification:
        return Notification(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            title=str(row["title"]),
            message=str(row["message"]),
            read=bool(row["read"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=int(row["id"]),
            sender_id=int(row["sender_id"]),
            receiver_id=int(row["receiver_id"]),
            content=str(row["content"]),
            is_read=bool(row["is_read"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_card(self, row: sqlite3.Row) -> CreditCard:
        return CreditCard(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            token=str(row["token"]),
            brand=str(row["brand"]),
            last4=str(row["last4"]),
            expiry_month=int(row["expiry_month"]),
            expiry_year=int(row["expiry_year"]),
            cardholder_name=str(row["cardholder_name"]),
            fingerprint=str(row["fingerprint"]),
            is_verified=bool(row["is_verified"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )


__all__ = ["Database"]

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from securebank.accounts import AccountService, SignupRequest
from securebank.cards import CardService, CardTokenizer
from securebank.config import Settings
from securebank.database import Database
from securebank.lifecycle import AccountLifecycle
from securebank.models import User
from securebank.notifications import NotificationRelay
from securebank.sessions import SessionManager

ADMIN_PASSWORD = "AdminPassw0rd!"


class FakeClock:
    def __init__(self) -> None:
        self.current = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current += delta


@dataclass
class Bank:
    settings: Settings
    database: Database
    clock: FakeClock
    sessions: SessionManager
    relay: NotificationRelay
    lifecycle: AccountLifecycle
    accounts: AccountService
    cards: CardService
    admin: User

    def signup(self, username: str, password: str = "pw123456", email: str | None = None) -> User:
        user, _ = self.accounts.signup(
            SignupRequest(
                username=username,
                email=email or f"{username}@example.com",
                password=password,
                profile={"first_name": username.title(), "last_name": "Tester"},
            )
        )
        return user


def make_settings(tmp_path: Path, **overrides) -> Settings:
    settings = Settings(
        database_path=tmp_path / "securebank.sqlite3",
        admin_password=ADMIN_PASSWORD,
        secret="tests-secret-key",
    )
    return settings.with_overrides(**overrides)


def build_bank(settings: Settings) -> Bank:
    database = Database(settings.database_path)
    database.initialize()
    clock = FakeClock()
    sessions = SessionManager(database, ttl=settings.session_ttl, clock=clock)
    relay = NotificationRelay(database)
    lifecycle = AccountLifecycle(database, relay, settings)
    accounts = AccountService(database, sessions, lifecycle, relay, settings)
    cards = CardService(database, CardTokenizer(settings.secret), relay)
    admin, _ = accounts.bootstrap_admin()
    return Bank(
        settings=settings,
        database=database,
        clock=clock,
        sessions=sessions,
        relay=relay,
        lifecycle=lifecycle,
        accounts=accounts,
        cards=cards,
        admin=admin,
    )


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture()
def database(settings: Settings) -> Database:
    db = Database(settings.database_path)
    db.initialize()
    return db


@pytest.fixture()
def bank(settings: Settings) -> Bank:
    return build_bank(settings)

"""Command-line interface for the SecureBank service."""

from __future__ import annotations
import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from securebank.accounts import AccountService
from securebank.config import Settings, load_settings
from securebank.database import Database
from securebank.errors import BankError
from securebank.lifecycle import AccountLifecycle, TRANSITION_TARGETS
from securebank.notifications import NotificationRelay
from securebank.sessions import SessionManager

logger = logging.getLogger("securebank.main")

KNOWN_COMMANDS = {"serve", "init-db", "purge-sessions", "admin"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="SecureBank service utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML settings file (defaults to BANK_CONFIG when set)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve", host="127.0.0.1", port=5000)

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=5000,
        help="Port for the HTTP API (default: 5000)",
    )

    subparsers.add_parser("init-db", help="Create tables and the bootstrap administrator")
    subparsers.add_parser("purge-sessions", help="Delete expired sessions")
    subparsers.add_parser("admin", help="Launch the interactive administration console")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help") or first == "--config":
            return parser.parse_args(args_list)
        if first not in KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _build_services(settings: Settings) -> tuple[Database, SessionManager, AccountLifecycle, AccountService]:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)

    sessions = SessionManager(database, ttl=settings.session_ttl)
    relay = NotificationRelay(database)
    lifecycle = AccountLifecycle(database, relay, settings)
    accounts = AccountService(database, sessions, lifecycle, relay, settings)
    return database, sessions, lifecycle, accounts


def _init_db(accounts: AccountService) -> None:
    admin, generated = accounts.bootstrap_admin()
    print(f"Administrator account: {admin.username} <{admin.email}>")
    if generated is not None:
        print(f"Generated administrator password (shown once): {generated}")
    print("Database initialisation complete.")


def _serve(settings: Settings, *, host: str, port: int) -> None:
    from securebank.api import create_app
    import uvicorn

    logger.info("Starting SecureBank API on http://%s:%s", host, port)
    app = create_app(settings=settings)
    uvicorn.run(app, host=host, port=port, log_level="info", proxy_headers=True)


def _run_admin_cli(
    database: Database,
    lifecycle: AccountLifecycle,
    accounts: AccountService,
) -> None:
    """Provide an interactive management console for administrators."""

    admin, generated = accounts.bootstrap_admin()
    if generated is not None:
        print(f"Generated administrator password (shown once): {generated}")

    print("SecureBank Administration Console")
    print("Press Ctrl+C at any time to exit.\n")

    try:
        while True:
            print("Select an option:")
            print("  1) List all users")
            print("  2) Change a user's status")
            print("  3) Force a password reset")
            print("  4) Exit")

            choice = input("Enter choice [1-4]: ").strip()

            if choice == "1":
                _list_users(database)
            elif choice == "2":
                _change_status(lifecycle, admin)
            elif choice == "3":
                _reset_password(accounts, admin)
            elif choice == "4":
                print("Goodbye!")
                return
            else:
                print("Invalid selection. Please choose a number from the menu.\n")

            print()
    except KeyboardInterrupt:
        print("\nExiting administration console.")


def _list_users(database: Database) -> None:
    users = database.list_users()
    if not users:
        print("No users are currently registered.")
        return

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':>4}  {'Username':<20}  {'Email':<32}  {'Status':<10}  Created")
    print("-" * 90)
    for user in users:
        created = user.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        label = f"{user.status.value}*" if user.is_admin else user.status.value
        print(f"{user.id:>4}  {user.username:<20}  {user.email:<32}  {label:<10}  {created}")


def _prompt_user_id() -> int | None:
    raw = input("User ID: ").strip()
    if not raw.isdigit():
        print("User ID must be a number.")
        return None
    return int(raw)


def _change_status(lifecycle: AccountLifecycle, admin) -> None:
    user_id = _prompt_user_id()
    if user_id is None:
        return
    choices = "/".join(sorted(status.value for status in TRANSITION_TARGETS))
    status = input(f"New status ({choices}): ").strip()
    try:
        user = lifecycle.transition(admin, user_id, status)
    except BankError as exc:
        print(f"Failed to change status: {exc}")
        return
    print(f"User #{user.id} ({user.username}) is now {user.status.value}.")


def _reset_password(accounts: AccountService, admin) -> None:
    user_id = _prompt_user_id()
    if user_id is None:
        return
    try:
        temporary = accounts.reset_password(admin, user_id)
    except BankError as exc:
        print(f"Failed to reset password: {exc}")
        return
    print(f"Temporary password for user #{user_id}: {temporary}")


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = load_settings(Path(args.config) if args.config else None)

    if args.command == "serve":
        _serve(settings, host=args.host, port=args.port)
        return

    database, sessions, lifecycle, accounts = _build_services(settings)

    if args.command == "init-db":
        _init_db(accounts)
    elif args.command == "purge-sessions":
        removed = sessions.purge_expired()
        print(f"Removed {removed} expired session(s).")
    elif args.command == "admin":
        _run_admin_cli(database, lifecycle, accounts)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
tokenward -- Authentication, token lifecycle and bitmask permissions.

Usage:
  python main.py create-admin --username admin --email admin@example.com
  python main.py create-admin --username admin --email admin@example.com --password '...'
  python main.py cleanup
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000 --reload

Environment variables:
  SECRET_KEY      Signing key for access tokens (>= 32 chars). Required unless DEBUG=true.
  DATABASE_URL    SQLAlchemy URL. Defaults to a SQLite file beside the package.
  ADMIN_PASSWORD  Password for create-admin when --password is not given.
"""

import argparse
import getpass
import os
import sys
from datetime import timedelta

from auth import permissions
from auth.blacklist import BlacklistStore
from auth.cleanup import CleanupScheduler
from auth.credentials import hash_password
from auth.database import create_auth_engine
from auth.models import AuthType, User
from auth.refresh_tokens import RefreshTokenStore
from auth.sessions import SessionTracker
from auth.store import UserStore
from core.config import get_settings

_MIN_ADMIN_PASSWORD = 12


def _read_password(explicit: str | None) -> str | None:
    """Password from --password, then ADMIN_PASSWORD, then an interactive prompt."""
    if explicit:
        return explicit
    from_env = os.environ.get("ADMIN_PASSWORD")
    if from_env:
        return from_env
    if not sys.stdin.isatty():
        return None
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm:  ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def create_admin(username: str, email: str, password: str, database_url: str) -> int:
    """Create an active password account holding every permission.

    Returns a process exit code. Refuses to touch an existing account with
    the same username or email.
    """
    if len(password) < _MIN_ADMIN_PASSWORD:
        print(f"  [!] Admin password must be at least {_MIN_ADMIN_PASSWORD} characters.")
        return 1

    engine = create_auth_engine(database_url)
    try:
        store = UserStore(engine)
        if store.username_exists(username) or store.email_exists(email):
            print(f"  [!] A user with username '{username}' or email '{email}' already exists.")
            return 1
        user_id = store.create_user(
            User(
                username=username,
                email=email,
                hashed_password=hash_password(password),
                permissions=permissions.ADMINISTRATOR,
                auth_type=AuthType.PASSWORD,
            )
        )
    finally:
        engine.dispose()
    print(f"  Created administrator '{username}' (id: {user_id}).")
    return 0


def run_cleanup(database_url: str, inactivity_days: int) -> int:
    """Run one cleanup pass and print what was removed."""
    engine = create_auth_engine(database_url)
    try:
        scheduler = CleanupScheduler(
            BlacklistStore(engine),
            RefreshTokenStore(engine),
            SessionTracker(engine),
            inactivity_threshold=timedelta(days=inactivity_days),
        )
        report = scheduler.run_once()
    finally:
        engine.dispose()
    print(f"  Blacklist entries removed: {report.blacklist_removed}")
    print(f"  Refresh tokens removed:    {report.refresh_tokens_removed}")
    print(f"  Sessions removed:          {report.sessions_removed}")
    if not report.ok:
        print(f"  [!] Failed sweeps: {', '.join(report.failures)}")
        return 1
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="tokenward",
        description="Authentication and token-lifecycle service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --username admin --email admin@example.com
  ADMIN_PASSWORD=... python main.py create-admin --username admin --email admin@example.com
  python main.py cleanup
  python main.py serve --port 8080
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_admin = sub.add_parser("create-admin", help="Create an administrator account")
    p_admin.add_argument("--username", required=True, help="Login name (case-sensitive)")
    p_admin.add_argument("--email", required=True, help="Email address")
    p_admin.add_argument(
        "--password",
        default=None,
        help="Password (falls back to ADMIN_PASSWORD, then an interactive prompt)",
    )

    sub.add_parser("cleanup", help="Run one sweep of expired tokens and stale sessions")

    p_serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    p_serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    p_serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    try:
        settings = get_settings()
    except ValueError as exc:
        print(f"  [!] Configuration error: {exc}")
        sys.exit(2)

    if args.command == "create-admin":
        password = _read_password(args.password)
        if not password:
            print("  [!] No password given. Use --password, ADMIN_PASSWORD or run interactively.")
            sys.exit(1)
        sys.exit(create_admin(args.username, args.email, password, settings.database_url))

    elif args.command == "cleanup":
        sys.exit(run_cleanup(settings.database_url, settings.session_inactivity_days))

    elif args.command == "serve":
        import uvicorn

        uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()

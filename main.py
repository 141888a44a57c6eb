#!/usr/bin/env python3
"""
authgate -- administrative command line.

Usage:
  python main.py create-user alice@example.com --name "Alice"
  python main.py create-user bob@example.com --inactive
  python main.py set-active alice@example.com --disable
  python main.py revoke-tokens alice@example.com
  python main.py purge-expired

Reads the same environment (.env, DATABASE_URL, SECRET_KEY, ...) as the API.
Passwords are prompted for, never taken from argv.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.credentials import principal_from_user
from auth.models import User
from auth.service import AuthSessionService, build_service
from auth.store import create_store_engine
from auth.tokens import MAX_PASSWORD_BYTES, hash_password
from core.config import get_settings


def _prompt_password(min_length: int) -> str:
    password = getpass.getpass("Password: ")
    if len(password) < min_length:
        print(f"  [!] Password must be at least {min_length} characters.")
        sys.exit(1)
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        print(f"  [!] Password must not exceed {MAX_PASSWORD_BYTES} bytes.")
        sys.exit(1)
    if getpass.getpass("Repeat password: ") != password:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return password


def _require_user(service: AuthSessionService, email: str) -> User:
    user = service.directory.get_by_email(email)
    if user is None:
        print(f"  [!] No user with login '{email}'.")
        sys.exit(1)
    return user


def cmd_create_user(service: AuthSessionService, args: argparse.Namespace) -> None:
    password = _prompt_password(get_settings().password_min_length)
    try:
        user_id = service.directory.create_user(
            User(
                email=args.email,
                full_name=args.name,
                hashed_password=hash_password(password),
                is_active=not args.inactive,
            )
        )
    except IntegrityError:
        print(f"  [!] A user with login '{args.email}' already exists.")
        sys.exit(1)
    print(f"  Created user {user_id} ({args.email})")


def cmd_set_active(service: AuthSessionService, args: argparse.Namespace) -> None:
    user = _require_user(service, args.email)
    service.directory.set_active(user.id, args.enable)
    if not args.enable:
        # A disabled account keeps no live sessions.
        revoked = service.tokens.revoke_all_except(principal_from_user(user), None)
        print(f"  Disabled {args.email} ({revoked} tokens revoked)")
    else:
        print(f"  Enabled {args.email}")


def cmd_revoke_tokens(service: AuthSessionService, args: argparse.Namespace) -> None:
    user = _require_user(service, args.email)
    revoked = service.tokens.revoke_all_except(principal_from_user(user), None)
    print(f"  Revoked {revoked} tokens for {args.email}")


def cmd_purge_expired(service: AuthSessionService, args: argparse.Namespace) -> None:
    tokens = service.tokens.purge_expired()
    tickets = service.broker.purge_expired()
    print(f"  Purged {tokens} expired tokens and {tickets} expired reset tickets")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="authgate administration -- bootstrap users and manage sessions.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create a user with a local password")
    create.add_argument("email", help="Login identity (email)")
    create.add_argument("--name", default="", help="Display name")
    create.add_argument("--inactive", action="store_true", help="Create the account disabled")
    create.set_defaults(func=cmd_create_user)

    active = sub.add_parser("set-active", help="Enable or disable a user")
    active.add_argument("email")
    toggle = active.add_mutually_exclusive_group(required=True)
    toggle.add_argument("--enable", dest="enable", action="store_true")
    toggle.add_argument("--disable", dest="enable", action="store_false")
    active.set_defaults(func=cmd_set_active)

    revoke = sub.add_parser("revoke-tokens", help="End every session of a user")
    revoke.add_argument("email")
    revoke.set_defaults(func=cmd_revoke_tokens)

    purge = sub.add_parser("purge-expired", help="Delete expired tokens and reset tickets")
    purge.set_defaults(func=cmd_purge_expired)

    args = parser.parse_args(argv)

    settings = get_settings()
    engine = create_store_engine(settings.database_url)
    try:
        args.func(build_service(settings, engine), args)
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
authgate -- operator CLI for the auth database.

Usage:
  python main.py create-admin --email admin@example.com --name "Site Admin"
  python main.py purge-tokens
  python main.py revoke-sessions --email someone@example.com

Environment variables:
  DATABASE_URL     SQLAlchemy URL of the auth database (default: authgate.db next to the code)
  ADMIN_PASSWORD   Password for create-admin. Prompted for when unset.
  JWT_SECRET       Required unless DEBUG=true (token settings are validated on start).
"""

import argparse
import getpass
import os
import sys

from pydantic import ValidationError

from api.models import RoleEnum, UserCreate
from auth.errors import Conflict
from auth.sessions import SessionManager
from auth.store import RefreshTokenStore, UserStore
from core.config import get_settings


def _read_password() -> str:
    """ADMIN_PASSWORD if set, else prompt twice without echo."""
    env_password = os.environ.get("ADMIN_PASSWORD")
    if env_password:
        return env_password
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def _create_admin(sessions: SessionManager, args: argparse.Namespace) -> int:
    try:
        body = UserCreate(email=args.email, name=args.name, password=_read_password(), role=RoleEnum.admin)
    except ValidationError as exc:
        for err in exc.errors():
            field = ".".join(str(part) for part in err["loc"])
            print(f"  [!] {field}: {err['msg']}")
        return 1
    try:
        user = sessions.create_account(body.email, body.name, body.password, role=body.role.value)
    except Conflict:
        print(f"  [!] A user with email {body.email} already exists.")
        return 1
    print(f"  Admin created: id={user.id} email={user.email}")
    return 0


def _purge_tokens(tokens: RefreshTokenStore) -> int:
    removed = tokens.purge_expired()
    print(f"  Purged {removed} revoked and expired refresh token(s).")
    return 0


def _revoke_sessions(users: UserStore, sessions: SessionManager, args: argparse.Namespace) -> int:
    user = users.get_by_email(args.email)
    if user is None:
        print(f"  [!] No user with email {args.email}.")
        return 1
    count = sessions.revoke_all_sessions(user.id)
    print(f"  Revoked {count} session(s) for {user.email}.")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="Operator commands for the authgate user and session database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@example.com --name "Site Admin"
  ADMIN_PASSWORD='S3cure-pass' python main.py create-admin --email a@b.io --name Ops
  python main.py purge-tokens
  python main.py revoke-sessions --email someone@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-admin", help="Create a user with the admin role")
    create.add_argument("--email", required=True, help="Login email of the new admin")
    create.add_argument("--name", required=True, help="Display name of the new admin")

    sub.add_parser("purge-tokens", help="Delete refresh tokens that are both revoked and expired")

    revoke = sub.add_parser("revoke-sessions", help="Force-logout a user by revoking all refresh tokens")
    revoke.add_argument("--email", required=True, help="Email of the user to log out everywhere")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    users = UserStore(get_settings().database_url)
    tokens = RefreshTokenStore(users.engine)
    sessions = SessionManager(users, tokens)
    try:
        if args.command == "create-admin":
            return _create_admin(sessions, args)
        if args.command == "purge-tokens":
            return _purge_tokens(tokens)
        return _revoke_sessions(users, sessions, args)
    finally:
        users.close()


if __name__ == "__main__":
    sys.exit(main())

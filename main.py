#!/usr/bin/env python3
"""
SessionGate -- operator command line.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 8000] [--reload]
  python main.py grant-role jane@example.com ADMIN
  python main.py revoke-role jane@example.com MODERATOR
  python main.py list-sessions jane@example.com
  python main.py revoke-sessions jane@example.com
  python main.py purge-sessions --days 90

Every command reads the same environment (.env, DATABASE_URL, ...) as the API.
Users are only ever created by OAuth login; the CLI manages roles and
sessions of users that already exist.
"""

import argparse
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from auth.errors import StorageFailure
from auth.models import Role, User
from auth.sessions import SessionService, is_valid, token_hint
from auth.store import AuthStore
from core.config import Settings, get_settings

_ROLE_NAMES = [r.value for r in Role]


def _find_user(store: AuthStore, email: str) -> Optional[User]:
    user = store.get_by_email(email)
    if user is None:
        print(f"  [!] No user with email '{email}'. Users are created on first OAuth login.")
    return user


def _cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _cmd_grant_role(args: argparse.Namespace, settings: Settings) -> int:
    store = AuthStore(settings.database_url)
    try:
        user = _find_user(store, args.email)
        if user is None:
            return 1
        role = Role(args.role)
        if store.grant_role(user.id, role):
            print(f"  Granted {role.value} to {user.email}.")
        else:
            print(f"  {user.email} already holds {role.value}.")
        return 0
    finally:
        store.close()


def _cmd_revoke_role(args: argparse.Namespace, settings: Settings) -> int:
    store = AuthStore(settings.database_url)
    try:
        user = _find_user(store, args.email)
        if user is None:
            return 1
        role = Role(args.role)
        if store.revoke_role(user.id, role):
            print(f"  Removed {role.value} from {user.email}.")
        else:
            print(f"  {user.email} does not hold {role.value}.")
        return 0
    finally:
        store.close()


def _cmd_list_sessions(args: argparse.Namespace, settings: Settings) -> int:
    store = AuthStore(settings.database_url)
    try:
        user = _find_user(store, args.email)
        if user is None:
            return 1
        sessions = store.list_sessions(user.id)
        if not sessions:
            print(f"  No sessions for {user.email}.")
            return 0
        now = datetime.now(timezone.utc)
        print(f"  {'TOKEN':<12} {'STATE':<8} {'CREATED':<26} {'EXPIRES':<26} IP")
        for s in sessions:
            if s.revoked_at is not None:
                state = "revoked"
            elif is_valid(s, now):
                state = "live"
            else:
                state = "expired"
            created = s.created_at.isoformat(timespec="seconds") if s.created_at else "-"
            print(
                f"  {token_hint(s.token):<12} {state:<8} {created:<26} "
                f"{s.expires_at.isoformat(timespec='seconds'):<26} {s.ip or '-'}"
            )
        return 0
    finally:
        store.close()


def _cmd_revoke_sessions(args: argparse.Namespace, settings: Settings) -> int:
    store = AuthStore(settings.database_url)
    try:
        user = _find_user(store, args.email)
        if user is None:
            return 1
        count = SessionService(store, settings).revoke_user_sessions(user.id)
        print(f"  Revoked {count} session(s) for {user.email}.")
        return 0
    finally:
        store.close()


def _cmd_purge_sessions(args: argparse.Namespace, settings: Settings) -> int:
    if args.days < 0:
        print("  [!] --days must be zero or positive.")
        return 1
    store = AuthStore(settings.database_url)
    try:
        removed = SessionService(store, settings).purge_expired(args.days)
        print(f"  Purged {removed} session(s) expired more than {args.days} day(s) ago.")
        return 0
    finally:
        store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sessiongate",
        description="Operate the SessionGate auth service: run it, manage roles, manage sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  python main.py grant-role jane@example.com ADMIN
  python main.py revoke-sessions jane@example.com
  DATABASE_URL=sqlite:///prod.db python main.py purge-sessions --days 90
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development)")
    serve.set_defaults(func=_cmd_serve)

    for name, func, verb in (
        ("grant-role", _cmd_grant_role, "Give"),
        ("revoke-role", _cmd_revoke_role, "Take away"),
    ):
        p = sub.add_parser(name, help=f"{verb} a role for an existing user")
        p.add_argument("email")
        p.add_argument("role", choices=_ROLE_NAMES, metavar="ROLE", help=f"One of: {', '.join(_ROLE_NAMES)}")
        p.set_defaults(func=func)

    ls = sub.add_parser("list-sessions", help="Show every session of a user")
    ls.add_argument("email")
    ls.set_defaults(func=_cmd_list_sessions)

    rs = sub.add_parser("revoke-sessions", help="Revoke all live sessions of a user")
    rs.add_argument("email")
    rs.set_defaults(func=_cmd_revoke_sessions)

    purge = sub.add_parser("purge-sessions", help="Delete sessions that expired long ago")
    purge.add_argument(
        "--days",
        type=int,
        required=True,
        metavar="N",
        help="Only delete sessions whose expiry is more than N days in the past",
    )
    purge.set_defaults(func=_cmd_purge_sessions)

    return parser


def main(argv: Optional[list[str]] = None, settings: Optional[Settings] = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    try:
        return args.func(args, settings or get_settings())
    except StorageFailure as exc:
        print(f"  [!] Database error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

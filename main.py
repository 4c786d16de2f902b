#!/usr/bin/env python3
"""
Church auth -- administrative command line for the auth database.

Usage:
  python main.py create-user alice alice@example.org --role Admin
  python main.py create-user bob bob@example.org --member-id 42 --password-stdin < pw.txt
  python main.py deactivate-user bob
  python main.py cleanup-sessions
  python main.py session-stats
  python main.py check-password

Every command works against DATABASE_URL from the environment / .env unless
--db is given. The API server does not need to be running.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError
from auth.models import Role, User
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import hash_password, validate_password_strength
from core.config import get_settings


def _read_password(from_stdin: bool, confirm: bool = True) -> Optional[str]:
    """Read a password from stdin (one line) or interactively with confirmation."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    password = getpass.getpass("  Password: ")
    if confirm and getpass.getpass("  Confirm:  ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def _open_stores(db_url: Optional[str]) -> tuple[UserStore, SessionStore]:
    users = UserStore(db_url or get_settings().database_url)
    return users, SessionStore(users, default_ttl=get_settings().session_ttl_seconds)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_create_user(args: argparse.Namespace) -> int:
    password = _read_password(args.password_stdin)
    if password is None:
        return 1
    ok, reason = validate_password_strength(password)
    if not ok:
        print(f"  [!] {reason}.")
        return 1

    users, _ = _open_stores(args.db)
    try:
        uid = users.create_user(
            User(
                username=args.username,
                email=args.email,
                role=Role.from_label(args.role),
                hashed_password=hash_password(password),
                member_id=args.member_id,
                password_reset_required=args.reset_required,
            )
        )
    except IntegrityError:
        print(f"  [!] A user named '{args.username}' or with that email already exists.")
        return 1
    finally:
        users.close()
    print(f"  Created {args.role} '{args.username}' (id={uid}).")
    return 0


def cmd_deactivate_user(args: argparse.Namespace) -> int:
    users, sessions = _open_stores(args.db)
    try:
        user = users.get_by_username(args.username)
        if user is None:
            print(f"  [!] No user named '{args.username}'.")
            return 1
        users.deactivate(user.id)
        dropped = sessions.invalidate_all_for_user(user.id)
    finally:
        users.close()
    print(f"  Deactivated '{args.username}', {dropped} session(s) invalidated.")
    return 0


def cmd_cleanup_sessions(args: argparse.Namespace) -> int:
    users, sessions = _open_stores(args.db)
    try:
        removed = sessions.cleanup_expired()
    finally:
        users.close()
    print(f"  Removed {removed} expired session(s).")
    return 0


def cmd_session_stats(args: argparse.Namespace) -> int:
    users, sessions = _open_stores(args.db)
    try:
        stats = sessions.statistics()
    finally:
        users.close()
    print(f"  total={stats.total} active={stats.active} expired={stats.expired}")
    return 0


def cmd_check_password(args: argparse.Namespace) -> int:
    """Run a candidate password through the configured policy without storing it."""
    password = _read_password(args.password_stdin, confirm=False)
    ok, reason = validate_password_strength(password)
    if ok:
        print("  Password meets the policy.")
        return 0
    print(f"  [!] {reason}.")
    return 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="church-auth",
        description="Administer accounts and sessions of the church auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user pastor_john john@example.org --role Pastor
  python main.py deactivate-user pastor_john
  DATABASE_URL=sqlite:///prod.db python main.py session-stats
        """,
    )
    parser.add_argument("--db", metavar="URL", help="SQLAlchemy database URL (default: DATABASE_URL)")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create an account")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument(
        "--role",
        choices=[r.label for r in Role],
        default=Role.MEMBER.label,
        help="Account role (default: Member)",
    )
    create.add_argument("--member-id", type=int, default=None, help="Link to a member profile")
    create.add_argument("--reset-required", action="store_true", help="Force a password change at first login")
    create.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    create.set_defaults(func=cmd_create_user)

    deactivate = sub.add_parser("deactivate-user", help="Deactivate an account and drop its sessions")
    deactivate.add_argument("username")
    deactivate.set_defaults(func=cmd_deactivate_user)

    cleanup = sub.add_parser("cleanup-sessions", help="Delete expired sessions now")
    cleanup.set_defaults(func=cmd_cleanup_sessions)

    stats = sub.add_parser("session-stats", help="Show total / active / expired session counts")
    stats.set_defaults(func=cmd_session_stats)

    check = sub.add_parser("check-password", help="Test a password against the strength policy")
    check.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    check.set_defaults(func=cmd_check_password)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2
    try:
        return args.func(args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

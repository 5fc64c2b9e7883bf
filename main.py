#!/usr/bin/env python3
"""
Mandarin Auth -- account and session administration.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080
  python main.py purge-sessions
  python main.py sessions alice@example.com
  python main.py deactivate-user alice@example.com

Environment variables:
  ENVIRONMENT            development | production (default: production)
  ACCESS_TOKEN_SECRET    Required in production, at least 32 characters.
  REFRESH_TOKEN_SECRET   Required in production, at least 32 characters, distinct.
  DATABASE_URL           SQLAlchemy URL (default: sqlite file under auth/).
"""

import argparse
import logging
import sys
from typing import Optional

from auth.errors import AuthError
from auth.service import AuthService, create_auth_service
from core.config import get_settings

logger = logging.getLogger("mandarin.cli")


def _service() -> AuthService:
    return create_auth_service(get_settings())


def cmd_purge_sessions(args: argparse.Namespace) -> int:
    service = _service()
    try:
        removed = service.purge_expired_sessions()
    finally:
        service.credentials.engine.dispose()
    print(f"Purged {removed} expired session(s).")
    return 0


def cmd_sessions(args: argparse.Namespace) -> int:
    service = _service()
    try:
        count = service.active_session_count(args.email)
    finally:
        service.credentials.engine.dispose()
    if count is None:
        print(f"  [!] No account for '{args.email}'.")
        return 1
    print(f"{args.email}: {count} active session(s).")
    return 0


def cmd_deactivate_user(args: argparse.Namespace) -> int:
    service = _service()
    try:
        deactivated = service.deactivate_user(args.email)
    finally:
        service.credentials.engine.dispose()
    if not deactivated:
        print(f"  [!] No active account for '{args.email}'.")
        return 1
    print(f"Deactivated {args.email}; all sessions revoked.")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mandarin-auth",
        description="Account and session administration for the Mandarin auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ENVIRONMENT=development python main.py serve --reload
  python main.py purge-sessions
  python main.py sessions alice@example.com
  python main.py deactivate-user alice@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on source changes (development only)")
    serve.set_defaults(func=cmd_serve)

    purge = sub.add_parser("purge-sessions", help="Delete every expired session row")
    purge.set_defaults(func=cmd_purge_sessions)

    sessions = sub.add_parser("sessions", help="Show the number of live sessions for an account")
    sessions.add_argument("email", metavar="EMAIL")
    sessions.set_defaults(func=cmd_sessions)

    deactivate = sub.add_parser("deactivate-user", help="Soft-delete an account and revoke all its sessions")
    deactivate.add_argument("email", metavar="EMAIL")
    deactivate.set_defaults(func=cmd_deactivate_user)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    try:
        return args.func(args)
    except AuthError as exc:
        logger.error("%s failed: %s", args.command, exc.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())

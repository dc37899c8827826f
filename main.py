#!/usr/bin/env python3
"""
SessionGate -- management commands for the authentication service.

Usage:
  python main.py purge
  python main.py classify /dashboard /auth/login /api/v1/auth/me
  python main.py serve --host 0.0.0.0 --port 8000

Configuration comes from the environment / .env file (see core/config.py):
  DATABASE_URL      Store to purge. Empty = auth/sessiongate.db.
  PUBLIC_PREFIXES   JSON list of public path prefixes.
  PRIVATE_PREFIXES  JSON list of private path prefixes.
"""

import argparse
import sys
from datetime import datetime, timezone

from auth.routing import RouteClassifier
from auth.store import UserStore
from core.config import get_settings


def _purge() -> int:
    """Delete revoked / fully expired sessions and expired verification codes."""
    settings = get_settings()
    if settings.database_url:
        store = UserStore(db_url=settings.database_url, storage_timeout=settings.storage_timeout_seconds)
    else:
        store = UserStore(storage_timeout=settings.storage_timeout_seconds)
    try:
        sessions, verifications = store.purge_expired(datetime.now(timezone.utc))
    finally:
        store.close()
    print(f"  Removed {sessions} session(s) and {verifications} verification code(s).")
    return 0


def _classify(paths: list[str]) -> int:
    """Print how the request gate would treat each path."""
    settings = get_settings()
    classifier = RouteClassifier.from_lists(settings.public_prefixes, settings.private_prefixes)
    width = max(len(p) for p in paths)
    for path in paths:
        if not path.startswith("/"):
            print(f"  [!] '{path}' is not an absolute path. Expected something like /dashboard")
            continue
        print(f"  {path:<{width}}  {classifier.classify(path).value}")
    return 0


def _serve(host: str, port: int, reload: bool) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=host, port=port, reload=reload)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="sessiongate",
        description="Management commands for the SessionGate authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py purge
  python main.py classify /dashboard /dashboards /auth/login
  PRIVATE_PREFIXES='["/admin"]' python main.py classify /admin/users
  python main.py serve --reload
        """,
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("purge", help="Delete revoked or expired sessions and expired verification codes")

    classify = sub.add_parser("classify", help="Show whether paths are public, private or unlisted")
    classify.add_argument("paths", nargs="+", metavar="PATH", help="Request paths to classify")

    serve = sub.add_parser("serve", help="Run the API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    args = parser.parse_args()

    if args.command == "purge":
        sys.exit(_purge())
    elif args.command == "classify":
        sys.exit(_classify(args.paths))
    elif args.command == "serve":
        sys.exit(_serve(args.host, args.port, args.reload))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

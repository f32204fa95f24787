#!/usr/bin/env python3
"""
SessionKeeper -- account and session lifecycle service.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000
  python main.py cleanup

Environment variables (or .env):
  DATABASE_URL            SQLAlchemy URL (default: sqlite file next to this script)
  ACCESS_TOKEN_SECRET     Required unless DEBUG=true
  REFRESH_TOKEN_SECRET    Required unless DEBUG=true
  SMTP_HOST               Unset: emails are logged instead of sent
"""

import argparse
import logging
import sys

logger = logging.getLogger("sessionkeeper.cli")


def _cleanup() -> int:
    """Run the maintenance sweep once and print what it removed.

    Meant for an external scheduler (cron, k8s CronJob) when the in-process
    maintenance task is not wanted.
    """
    from auth.mailer import SmtpEmailSender
    from auth.service import AuthService
    from auth.store import AuthStore
    from auth.tokens import TokenIssuer
    from core.config import get_settings

    settings = get_settings()
    store = AuthStore(settings.database_url)
    try:
        service = AuthService(store, SmtpEmailSender.from_settings(settings), TokenIssuer(settings), settings)
        report = service.run_maintenance()
    finally:
        store.close()

    print(f"  Unverified accounts deleted : {report.unverified_accounts_deleted}")
    print(f"  Expired tokens purged       : {report.transient_tokens_purged}")
    print(f"  Login counters purged       : {report.login_attempts_purged}")
    print(f"  Expired sessions purged     : {report.sessions_purged}")
    return 0


def _serve(host: str, port: int, reload: bool) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=host, port=port, reload=reload)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="sessionkeeper",
        description="Account signup, verification, login sessions and password recovery.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  python main.py cleanup
  DATABASE_URL=postgresql://u:p@db/auth python main.py cleanup
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    sub.add_parser("cleanup", help="Delete abandoned unverified accounts and purge expired records, then exit")

    args = parser.parse_args()

    if args.command == "serve":
        sys.exit(_serve(args.host, args.port, args.reload))

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)-5s %(name)s %(message)s")
    try:
        sys.exit(_cleanup())
    except ValueError as exc:
        # Settings validation (missing secrets outside DEBUG, bad durations)
        logger.error("Configuration error: %s", exc)
        sys.exit(2)


if __name__ == "__main__":
    main()

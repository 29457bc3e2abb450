#!/usr/bin/env python3
"""
Formwork -- HTMX CRUD starter with double-submit CSRF protection.

Usage:
  python main.py
  python main.py --host 0.0.0.0 --port 9000
  python main.py --reload

Every other setting (SECRET_KEY, DATABASE_URL, ENVIRONMENT, ...) is read from
the environment or .env by core.config. Command-line flags only override the
listen address and the development reloader.
"""

import argparse

import uvicorn

from core.config import get_settings


def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="formwork",
        description="Run the Formwork web server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py
  DEBUG=true python main.py --reload
  ENVIRONMENT=production SECRET_KEY=... python main.py --host 0.0.0.0
        """,
    )
    parser.add_argument(
        "--host",
        default=settings.host,
        help=f"Interface to bind (default: {settings.host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=settings.port,
        help=f"Port to listen on (default: {settings.port})",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Restart on code changes (development only)",
    )
    args = parser.parse_args()

    if args.reload and settings.is_production:
        parser.error("--reload is not allowed when ENVIRONMENT=production")

    uvicorn.run(
        "asgi:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
        # core.logging owns the handlers and already writes one line per request.
        log_config=None,
        access_log=False,
        proxy_headers=settings.is_production,
    )


if __name__ == "__main__":
    main()

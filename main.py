#!/usr/bin/env python3
"""
LyriaSong auth service - server and maintenance entry point.
"""

import argparse
import logging
import os
import sys

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "info").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

#
# NOTE: Keep lyria imports lazy (inside functions) so `--migrate` does not need the
# web stack and `--serve` does not need a configured session secret until startup.
#


def purge_expired() -> None:
    """Delete expired sessions and stale one-time-code challenges."""
    from lyria.auth.service import build_auth_service

    service = build_auth_service()
    sessions, challenges = service.purge_expired()
    print(f"Purged {sessions} expired session(s) and {challenges} stale challenge(s).")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="LyriaSong authentication service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the auth API
  python main.py --serve --port 8080

  # Apply pending database migrations
  python main.py --migrate

  # Remove expired sessions and codes (cron)
  python main.py --purge-expired
        """,
    )

    parser.add_argument("--serve", action="store_true", help="Run the auth HTTP server")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--migrate", action="store_true", help="Apply pending PostgreSQL migrations and exit")
    parser.add_argument(
        "--purge-expired", action="store_true", help="Delete expired sessions and stale one-time codes and exit"
    )

    args = parser.parse_args()

    try:
        if args.migrate:
            from lyria.store.migrate import main as migrate_main

            sys.exit(migrate_main([]))

        if args.purge_expired:
            purge_expired()
            return

        if args.serve:
            from lyria.api.server import run

            run(host=args.host, port=args.port)
            return

        # No arguments provided
        parser.print_help()

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()

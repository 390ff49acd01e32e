#!/usr/bin/env python3
"""
userapi -- account registration, email verification, and token issuance service.

Usage:
  python main.py
  python main.py --host 0.0.0.0 --port 8001
  python main.py --reload

Configuration comes from environment variables or a .env file (see
core/config.py). At minimum a production deployment sets SECRET_KEY,
MAIL_API_KEY, and DATABASE_URL; set DEBUG=true for local development.
"""

import argparse

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run the userapi HTTP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8001, help="Port to listen on (default: 8001)")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    args = parser.parse_args()

    # uvicorn installs SIGINT/SIGTERM handlers and drives the app lifespan, so
    # shutdown closes the account store without any process-wide flag.
    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()

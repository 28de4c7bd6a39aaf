#!/usr/bin/env python3
"""Mint an HS256 bearer token for local testing of the chat proxy.

Usage:
    JWT_SECRET=... python scripts/mint_dev_token.py --user-id student-42

    # With a role claim and a one hour lifetime:
    python scripts/mint_dev_token.py --user-id t-1 --role teacher --ttl 3600 --secret ...

Environment Variables:
    JWT_SECRET: Secret shared with the LMS auth service (or pass --secret)
"""
from __future__ import annotations

import argparse
import sys
import time

from edulearn_chat.config import get_settings
from edulearn_chat.service.auth import encode_token


def mint_token(user_id: str, secret: str, *, role: str | None = None, ttl_seconds: int = 3600) -> str:
    now = int(time.time())
    payload = {"userId": user_id, "iat": now, "exp": now + ttl_seconds}
    if role:
        payload["role"] = role
    return encode_token(payload, secret)


def main():
    parser = argparse.ArgumentParser(
        description="Mint a development bearer token for the EduLearn chat proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--user-id", required=True, help="Value for the userId claim")
    parser.add_argument("--role", default=None, help="Optional role claim (student, teacher, ...)")
    parser.add_argument(
        "--ttl", type=int, default=3600, help="Token lifetime in seconds (default: 3600)"
    )
    parser.add_argument("--secret", default=None, help="Signing secret (defaults to JWT_SECRET)")

    args = parser.parse_args()

    secret = args.secret or get_settings().jwt_secret
    if not secret:
        print("Error: --secret or JWT_SECRET environment variable required", file=sys.stderr)
        sys.exit(1)
    if args.ttl <= 0:
        print("Error: --ttl must be positive", file=sys.stderr)
        sys.exit(1)

    print(mint_token(args.user_id, secret, role=args.role, ttl_seconds=args.ttl))


if __name__ == "__main__":
    main()

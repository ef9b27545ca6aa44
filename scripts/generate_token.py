#!/usr/bin/env python3
"""
Generate a gateway secret for GATEWAY_TOKEN.

The auth gateway sends it as ``Authorization: Bearer <token>`` together
with the X-Actor-Id / X-Actor-Role headers.

Usage:
    python scripts/generate_token.py              # 32-byte token
    python scripts/generate_token.py 48           # 48-byte token
    python scripts/generate_token.py --env        # .env line, checked for strength
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.transport.security import generate_secure_token, validate_token_strength  # noqa: E402


def main():
    length = 32
    env_format = False

    for arg in sys.argv[1:]:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    # token_urlsafe output can still miss a character class
    for _ in range(10):
        token = generate_secure_token(length)
        warnings = validate_token_strength(token, "GATEWAY_TOKEN")
        if not warnings:
            break

    for warning in warnings:
        print(f"[WARN] {warning}", file=sys.stderr)

    if env_format:
        print(f"GATEWAY_TOKEN={token}")
    else:
        print(token)


if __name__ == "__main__":
    main()

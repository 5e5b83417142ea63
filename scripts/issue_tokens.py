#!/usr/bin/env python3
"""Mint a session and token pair for a user, for local development.

The user is assumed to exist and to have already passed the credential check;
this script only opens a session and signs tokens for it.

Usage:
    python scripts/issue_tokens.py --user-id u1 --username alice --name "Alice"

    # Bind the tokens to a specific browser:
    python scripts/issue_tokens.py --user-id u1 \\
        --user-agent "Mozilla/5.0 ..." --accept-language "en-US,en;q=0.9"

    # Also mint an SSO ticket for another origin:
    python scripts/issue_tokens.py --user-id u1 --sso-audience chat.example.com

Environment Variables:
    JWT_SECRET: Signing secret (generated for this run if unset)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def issue_tokens(
    user_id: str,
    username: str,
    name: str,
    headers: dict,
    *,
    sso_audience: str | None = None,
) -> dict:
    # Import here to avoid loading config before env vars are set
    from chatgate.service.runtime import get_runtime

    runtime = get_runtime()
    grant = await runtime.auth.establish_session(user_id, username, name, headers)
    result = {
        "user_id": user_id,
        "sid": grant.session.id,
        "session_expires_at": grant.session.expires_at.isoformat(),
        "session_token": grant.access_token,
        "refresh_token": grant.refresh_token,
    }
    if sso_audience:
        ticket = runtime.auth.issue_sso_ticket(
            grant.access_token, sso_audience, headers, host=sso_audience
        )
        result["sso_ticket"] = ticket.ticket if ticket else None
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Issue a session and token pair for chatgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--user-id", required=True, help="Subject user id")
    parser.add_argument("--username", default="", help="Display username")
    parser.add_argument("--name", default="", help="Display name")
    parser.add_argument("--user-agent", default="", help="User-Agent to bind to")
    parser.add_argument(
        "--accept-language", default="", help="Accept-Language to bind to"
    )
    parser.add_argument(
        "--sso-audience", default=None, help="Also mint an SSO ticket for this host"
    )
    args = parser.parse_args()

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
        print("Note: JWT_SECRET not set; tokens are signed with a throwaway secret", file=sys.stderr)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)", file=sys.stderr)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    headers = {"user-agent": args.user_agent, "accept-language": args.accept_language}
    try:
        result = asyncio.run(
            issue_tokens(
                args.user_id,
                args.username,
                args.name,
                headers,
                sso_audience=args.sso_audience,
            )
        )
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()

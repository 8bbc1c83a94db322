"""Print an admin session token, or provision an API key.

Usage::

    python create_token.py admin@example.com
    python create_token.py admin@example.com --api-key "MCP server" --scopes products:read analytics:read

The administrator must already exist (it is seeded at startup from
``ADMIN_EMAIL``/``ADMIN_PASSWORD``).  API keys are printed once and
cannot be recovered afterwards.
"""

import argparse
import asyncio
import sys

from gateflow_api.app.core.db import get_connection, init_db
from gateflow_api.app.core.security import create_access_token
from gateflow_api.app.schemas.api_key import ApiKeyCreate
from gateflow_api.app.services.api_key_service import ApiKeyService


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("email", help="administrator email")
    parser.add_argument("--days", type=int, default=365, help="token lifetime in days")
    parser.add_argument("--api-key", metavar="NAME", help="create an API key with this name instead")
    parser.add_argument("--scopes", nargs="*", default=None, help="scopes for the API key (default: *)")
    args = parser.parse_args()

    init_db()
    conn = get_connection()
    try:
        admin = conn.execute("SELECT id, email FROM admin_users WHERE email = ?", (args.email.lower(),)).fetchone()
    finally:
        conn.close()
    if not admin:
        print(f"No administrator with email {args.email}", file=sys.stderr)
        return 1

    if args.api_key:
        created = asyncio.run(ApiKeyService.create_key(admin["id"], ApiKeyCreate(name=args.api_key, scopes=args.scopes)))
        print(created["key"])
        print(created["warning"], file=sys.stderr)
        return 0

    print(create_access_token({"sub": admin["email"]}, expires_delta=args.days * 24 * 60 * 60))
    return 0


if __name__ == "__main__":
    sys.exit(main())

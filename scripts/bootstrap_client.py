#!/usr/bin/env python3
"""Register an OAuth client application and, optionally, a user.

Usage:
    DATABASE_URL=postgresql://... python scripts/bootstrap_client.py \\
        --client-id reports --redirect-uri https://reports.example.com/callback

    # Also create a login user with roles:
    python scripts/bootstrap_client.py --client-id reports \\
        --redirect-uri https://reports.example.com/callback \\
        --username alice --email alice@example.com --password 'S3cure-Passw0rd!' --role admin

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required; tables from scripts/schema.sql)
    CLIENT_SECRET: Client secret to register (generated when unset)
    BOOTSTRAP_PASSWORD: Password for --username (instead of --password)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from ssocenter.storage.models import ClientApplication  # noqa: E402


def bootstrap_client(
    store,
    client_id: str,
    redirect_uri: str,
    *,
    name: str = "",
    client_secret: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Register a client unless one with this id already exists."""
    existing = store.get_client(client_id)
    if existing:
        print(f"Client {client_id} already registered (redirect_uri: {existing.redirect_uri})")
        return {"client_id": client_id, "status": "exists"}
    if dry_run:
        print(f"[DRY RUN] Would register client {client_id} -> {redirect_uri}")
        return {"client_id": client_id, "status": "dry_run"}
    secret = client_secret or secrets.token_urlsafe(32)
    store.register_client(
        ClientApplication(
            client_id=client_id,
            client_secret=secret,
            redirect_uri=redirect_uri,
            name=name or client_id,
        )
    )
    return {"client_id": client_id, "client_secret": secret, "status": "created"}


def bootstrap_user(
    users,
    username: str,
    email: str,
    password: str,
    *,
    roles: Optional[List[str]] = None,
    dry_run: bool = False,
) -> dict:
    existing = users.store.get_user_by_username(username)
    if existing:
        print(f"User {username} already exists (id: {existing.id})")
        return {"user_id": existing.id, "status": "exists"}
    if dry_run:
        print(f"[DRY RUN] Would create user {username} with roles {roles or []}")
        return {"user_id": None, "status": "dry_run"}
    user = users.create_user(username, email, password, roles=roles)
    return {"user_id": user.id, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Register an OAuth client for SSO Center",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--client-id", required=True)
    parser.add_argument("--redirect-uri", required=True)
    parser.add_argument("--name", default="")
    parser.add_argument(
        "--client-secret",
        default=os.environ.get("CLIENT_SECRET"),
        help="Client secret (or set CLIENT_SECRET; generated when omitted)",
    )
    parser.add_argument("--username")
    parser.add_argument("--email")
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument("--role", action="append", dest="roles", default=[])
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required; an in-memory registration would be lost")
        sys.exit(1)
    if args.username and not (args.email and args.password):
        print("Error: --username requires --email and --password (or BOOTSTRAP_PASSWORD)")
        sys.exit(1)

    os.environ["USE_MEMORY_STORE"] = "false"
    os.environ.setdefault("REDIS_URL", "")

    # Import here so config is read after the env adjustments above
    from ssocenter.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        result = bootstrap_client(
            runtime.store,
            args.client_id,
            args.redirect_uri,
            name=args.name,
            client_secret=args.client_secret,
            dry_run=args.dry_run,
        )
        if result["status"] == "created":
            print("\nClient registered:")
            print(f"  client_id:     {result['client_id']}")
            print(f"  client_secret: {result['client_secret']}")
        if args.username:
            user_result = bootstrap_user(
                runtime.users,
                args.username,
                args.email,
                args.password,
                roles=args.roles,
                dry_run=args.dry_run,
            )
            if user_result["status"] == "created":
                print(f"  user_id:       {user_result['user_id']}")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

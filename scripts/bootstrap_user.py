#!/usr/bin/env python3
"""Create a login credential for testing and initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_NAME=alice BOOTSTRAP_PASSWORD=correct-horse python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --name alice --password correct-horse

Environment Variables:
    BOOTSTRAP_NAME: Login name for the new credential
    BOOTSTRAP_PASSWORD: Password for the new credential
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_user(name: str, password: str, dry_run: bool = False) -> dict:
    """Create a credential unless the name is already taken.

    Returns:
        dict with user_id, name, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from userservice.service.errors import BadCredentialsError
    from userservice.service.runtime import get_runtime

    runtime = get_runtime()

    try:
        existing = await runtime.auth.get_profile(name)
    except BadCredentialsError:
        existing = None

    if existing:
        print(f"User {name} already exists (id: {existing.user_id})")
        return {"user_id": existing.user_id, "name": name, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {name}")
        return {"user_id": None, "name": name, "status": "dry_run"}

    profile = await runtime.auth.create_account(name, password)
    print(f"Created user: {name} (id: {profile.user_id})")
    return {"user_id": profile.user_id, "name": name, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a login credential for userservice",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("BOOTSTRAP_NAME"),
        help="Login name (or set BOOTSTRAP_NAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.name:
        print("Error: --name or BOOTSTRAP_NAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_user(args.name, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Name: {result['name']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - user already exists.")


if __name__ == "__main__":
    main()

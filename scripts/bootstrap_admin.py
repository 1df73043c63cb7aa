#!/usr/bin/env python3
"""Create an admin user, or promote an existing one.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_PASSWORD='SecurePassword123!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --password 'SecurePassword123!'

Environment Variables:
    ADMIN_USERNAME: Username for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (file-backed store if not set)
    SHARED_FS_ROOT: Directory of the file-backed store; must match the server's
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(username: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote ``username``.

    Returns a dict with user_id, username and a status of ``created``,
    ``promoted``, ``already_admin`` or ``dry_run``.
    """
    # Import late so the env set up in main() is what the settings read
    from termingate.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_username(username)

    if existing_user:
        if existing_user.role == "admin":
            print(f"User {username} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "username": username, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {username} to admin")
            return {"user_id": existing_user.id, "username": username, "status": "dry_run"}

        runtime.store.update_user_role(existing_user.id, "admin")
        runtime.auth.save_password(existing_user.id, password)
        print(f"Promoted existing user {username} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "username": username, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = await runtime.auth.create_user(username, password, role="admin")
    print(f"Created admin user: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Termingate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed store (set DATABASE_URL for Postgres)")

    # Attempt counters are irrelevant here; run without Redis if it is down
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.username, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()

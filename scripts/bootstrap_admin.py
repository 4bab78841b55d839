#!/usr/bin/env python3
"""Create an admin user, or promote an existing one, in the persisted store.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (same length policy as signup)
    SHARED_FS_ROOT: Directory holding the persisted credential store
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


async def bootstrap_admin(
    email: str, password: str, name: str = "Admin", dry_run: bool = False
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gatekeep.service.runtime import get_runtime
    from gatekeep.storage.models import Role

    runtime = get_runtime()

    existing_user = runtime.store.find_by_email(email)

    if existing_user:
        if existing_user.role == Role.ADMIN:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": existing_user.email,
                "status": "already_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        existing_user.role = Role.ADMIN
        runtime.store.save(existing_user)
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "email": existing_user.email,
            "status": "promoted",
        }

    # Policy check first so a dry run reports a bad password too
    runtime.hasher.check_policy(password)

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user, _ = await runtime.auth.signup(name, email, password, password)
    user.role = Role.ADMIN
    user = runtime.store.save(user)

    print(f"Created admin user: {email} (id: {user.id})")
    return {
        "user_id": user.id,
        "email": user.email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Gatekeep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Admin", help="Display name for a new admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    # The store must be on disk for the admin to outlive this process
    os.environ.setdefault("PERSIST_STORE", "true")

    from gatekeep.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.name, args.dry_run)
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()

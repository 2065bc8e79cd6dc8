#!/usr/bin/env python3
"""Bootstrap a superadmin account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='SecurePass1!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'SecurePass1!'

Environment Variables:
    ADMIN_EMAIL: Email for the superadmin
    ADMIN_PASSWORD: Password (8+ chars with upper, lower, digit and special character)
    REDIS_URL: Redis connection string (uses the in-process store if not set)
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
    from klearkarma.api.schemas import _validate_password_strength

    try:
        _validate_password_strength(password)
    except ValueError:
        return False
    return True


async def bootstrap_admin(
    email: str, password: str, full_name: str, dry_run: bool = False
) -> dict:
    """Create or promote a superadmin.

    Returns:
        dict with user_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from klearkarma.service.runtime import get_runtime
    from klearkarma.storage.models import Role

    runtime = get_runtime()
    try:
        existing_user = await runtime.auth.get_user_by_email(email)

        if existing_user:
            if existing_user.role == Role.SUPERADMIN:
                print(f"User {email} already exists as superadmin (id: {existing_user.id})")
                return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email} to superadmin")
                return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

            await runtime.auth.set_role(existing_user.id, Role.SUPERADMIN)
            print(f"Promoted existing user {email} to superadmin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create superadmin: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user = await runtime.auth.create_staff_user(
            email=email, password=password, full_name=full_name, role=Role.SUPERADMIN
        )
        print(f"Created superadmin: {email} (id: {user.id})")
        return {"user_id": user.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a superadmin for Klear Karma",
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
    parser.add_argument("--full-name", default="Platform Admin", help="Display name")
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

    if not validate_password(args.password):
        print("Error: Password must be at least 8 characters with an uppercase letter,")
        print("       a lowercase letter, a digit and a special character")
        sys.exit(1)

    if not os.environ.get("REDIS_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-process store (set REDIS_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email.strip().lower(), args.password, args.full_name, args.dry_run)
        )

        if result["status"] == "created":
            print("\nSuperadmin created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "promoted":
            print("\nExisting user promoted to superadmin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already a superadmin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

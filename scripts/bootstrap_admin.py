#!/usr/bin/env python3
"""Bootstrap an admin account and print a token pair for it.

Usage:
    ADMIN_USERNAME=root ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username root --email admin@example.com \
        --password SecurePassword123!

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: the admin account
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Register or promote an ADMIN user, verify it, and log it in.

    Returns:
        dict with user_id, email, status and, unless dry_run, the token pair
    """
    # Import here so the env defaults set in main() apply to the settings
    from creatorauth.service.runtime import get_runtime
    from creatorauth.storage.models import UserRole

    runtime = get_runtime()
    store = runtime.store
    auth = runtime.auth

    existing = store.get_user_by_email(email)
    if existing is not None and existing.role == UserRole.ADMIN:
        status = "already_admin"
    elif existing is not None:
        status = "promoted"
    else:
        status = "created"

    if dry_run:
        print(f"[DRY RUN] Would mark {email} as {status}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    if existing is None:
        user = auth.register(username, email, password, role=UserRole.ADMIN)
    else:
        with store.transaction():
            user = store.get_user_for_update(existing.id)
            user.role = UserRole.ADMIN
            store.save_user(user)
    auth.verify_email(user.id)

    result = await auth.login(user.username, password, user_agent="bootstrap_admin")
    return {
        "user_id": user.id,
        "email": email,
        "status": status,
        "access_token": result.access_token,
        "refresh_token": result.refresh_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for creatorauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/creatorauth-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Without JWT_SECRET an ephemeral key is generated; tokens die with the process
    os.environ.setdefault("TEST_MODE", "true")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nUser is already an admin.")
    if result.get("access_token"):
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Access Token: {result['access_token']}")
        print(f"  Refresh Token: {result['refresh_token']}")


if __name__ == "__main__":
    main()

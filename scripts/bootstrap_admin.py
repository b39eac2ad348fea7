#!/usr/bin/env python3
"""Create the first back-office administrator.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=ops ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='S3cure-enough' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username ops --email ops@example.com --password 'S3cure-enough' --role super_admin

The new admin has no authenticator yet; the first login walks them through
two-factor enrollment.

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_ROLE
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    SHARED_FS_ROOT: where the memory store snapshot and generated secrets live
"""
from __future__ import annotations

import argparse
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
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    username: str, email: str, password: str, role: str = "super_admin", dry_run: bool = False
) -> dict:
    """Create the admin unless the email is already registered.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from rimadmin.service.runtime import get_runtime

    runtime = get_runtime()
    normalized = email.strip().lower()

    existing = runtime.store.get_admin_user_by_email(normalized)
    if existing:
        print(f"Admin {normalized} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": normalized, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} admin: {username} <{normalized}>")
        return {"user_id": None, "email": normalized, "status": "dry_run"}

    user = runtime.auth.create_admin(
        username, normalized, password, role=role, created_by="bootstrap"
    )
    print(f"Created admin: {user.username} <{user.email}> (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for the RIM admin portal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
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
        "--role",
        default=os.environ.get("ADMIN_ROLE", "super_admin"),
        help="Role key, e.g. super_admin or loan_officer (default: super_admin)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for flag, value in (("username", args.username), ("email", args.email), ("password", args.password)):
        if not value:
            print(f"Error: --{flag} or ADMIN_{flag.upper()} environment variable required")
            sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # The script never rate limits, so Redis is optional here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.username, args.email, args.password, role=args.role, dry_run=args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin created. Sign in to finish two-factor enrollment.")
    elif result["status"] == "exists":
        print("\nNo changes made.")


if __name__ == "__main__":
    main()

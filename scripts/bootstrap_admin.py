#!/usr/bin/env python3
"""Bootstrap an admin user for initial setup.

Promotes an existing account to admin, or creates a verified admin account
when the email is unknown.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD=... python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --username admin --password ...

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_USERNAME: Username used when the account has to be created
    ADMIN_PASSWORD: Password used when the account has to be created
    DATABASE_URL: PostgreSQL connection string
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    username: Optional[str],
    password: Optional[str],
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from hikariauth.config import get_settings
    from hikariauth.service.forms import SignupForm, parse_form
    from hikariauth.service.runtime import Runtime
    from hikariauth.storage.models import User, utcnow

    runtime = Runtime.from_settings(get_settings())
    await runtime.startup()
    try:
        normalized = email.strip().lower()
        existing_user = await runtime.store.get_user_by_email(normalized)

        if existing_user:
            if existing_user.is_admin:
                print(f"User {normalized} already exists as admin (id: {existing_user.id})")
                return {"user_id": existing_user.id, "email": normalized, "status": "already_admin"}
            if dry_run:
                print(f"[DRY RUN] Would promote existing user {normalized} to admin")
                return {"user_id": existing_user.id, "email": normalized, "status": "dry_run"}
            await runtime.store.set_admin(existing_user.id, True)
            print(f"Promoted existing user {normalized} to admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": normalized, "status": "promoted"}

        if not username or not password:
            raise ValueError("--username and --password are required to create a new admin")

        form = parse_form(
            SignupForm,
            {
                "username": username,
                "email": normalized,
                "password": password,
                "confirmPassword": password,
                "agreeTerms": True,
            },
        )
        if dry_run:
            print(f"[DRY RUN] Would create admin user: {form.email}")
            return {"user_id": None, "email": form.email, "status": "dry_run"}

        now = utcnow()
        user = await runtime.store.create_user(
            User(
                id=User.new_id(),
                email=form.email,
                username=form.username,
                password_hash=await runtime.auth.hash_password(form.password),
                is_verified=True,
                is_admin=True,
                created_at=now,
                updated_at=now,
            )
        )
        print(f"Created admin user: {user.email} (id: {user.id})")
        return {"user_id": user.id, "email": user.email, "status": "created"}
    finally:
        await runtime.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Hikari Chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
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

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    # The bootstrap never touches sessions, so Redis is optional here.
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.username, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
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

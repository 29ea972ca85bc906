#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secret123 python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password Secret123 --name "Site Admin"

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (same strength rules as registration)
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys


def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email and status
        (``created``, ``promoted``, ``already_admin`` or ``dry_run``)
    """
    # Deferred so the environment is settled before settings load
    from gadgetgalaxy.service.runtime import get_runtime
    from gadgetgalaxy.storage.models import AccountCreate, normalize_email

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.role == "admin":
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_account(existing.id, role="admin", is_email_verified=True)
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        AccountCreate(
            email=email,
            name=name,
            password=password,
            role="admin",
            image_url=runtime.settings.default_user_image_url,
            is_email_verified=True,
        )
    )
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a Gadget Galaxy admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Admin email (or ADMIN_EMAIL)")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="Admin password (or ADMIN_PASSWORD)"
    )
    parser.add_argument("--name", default="Administrator", help="Display name for a new account")
    parser.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/ADMIN_EMAIL and --password/ADMIN_PASSWORD are required")
        sys.exit(1)

    from gadgetgalaxy.api.schemas import _validate_email, _validate_password_strength

    try:
        _validate_email(args.email)
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using the file-backed memory store (set DATABASE_URL for PostgreSQL)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": "Admin account created",
        "promoted": "Existing account promoted to admin",
        "already_admin": "No changes needed; account is already an admin",
        "dry_run": "[DRY RUN] No changes written",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['account_id']})")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Create or promote the first platform administrator.

Usage:
    DATABASE_URL=postgresql://... JWT_SECRET=... \
        python scripts/bootstrap_admin.py --email ops@example.edu --password 'Long-Passphrase-1'

    ADMIN_EMAIL / ADMIN_PASSWORD may replace the flags. The account is created
    with a verified email so it can sign in immediately.
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3 of 4 character classes."""
    if len(password) < 12:
        return False
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ]
    return sum(classes) >= 3


def bootstrap_admin(email: str, password: str, *, dry_run: bool = False) -> dict:
    # deferred so the environment defaults below apply first
    from coursegate.config import UserRole
    from coursegate.service.runtime import get_runtime

    runtime = get_runtime()
    admin_role = UserRole.PLATFORM_ADMIN.value
    email = email.strip().lower()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == admin_role and existing.is_active:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(existing.id, role=admin_role, is_active=True)
        runtime.store.mark_email_verified(existing.id)
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(email, None, role=admin_role, email_verified=True)
    runtime.auth.save_password(user.id, password)
    return {"user_id": user.id, "email": email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap a coursegate platform administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run", action="store_true", help="Report what would change without writing"
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/--password (or ADMIN_EMAIL/ADMIN_PASSWORD) are required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: password needs 12+ characters from at least 3 character classes")
        sys.exit(1)
    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL must point at the coursegate database")
        sys.exit(1)

    # Only the store and password hasher are used; Redis and signing are irrelevant here.
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, dry_run=args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": "Created platform admin",
        "promoted": "Promoted existing user to platform admin",
        "already_admin": "No changes needed; user is already a platform admin",
        "dry_run": "[DRY RUN] Would create or promote",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()

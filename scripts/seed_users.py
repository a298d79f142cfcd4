#!/usr/bin/env python3
"""Seed a verified admin account and, optionally, a verified editor account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=ChangeMe123 ADMIN_PHONE=+254700000000 \
        python scripts/seed_users.py

    # editor as well
    EDITOR_EMAIL=editor@example.com EDITOR_PASSWORD=ChangeMe123 EDITOR_PHONE=+254700000001 \
        python scripts/seed_users.py --skip-admin

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_PHONE: admin account
    EDITOR_EMAIL, EDITOR_PASSWORD, EDITOR_PHONE: editor account (optional)
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from typing import Optional

MIN_PASSWORD_LENGTH = 6
DEFAULT_PHONE = "+10000000000"


def _account_from_env(prefix: str) -> Optional[tuple[str, str, str]]:
    email = os.environ.get(f"{prefix}_EMAIL")
    password = os.environ.get(f"{prefix}_PASSWORD")
    if not email and not password:
        return None
    if not email or not password:
        raise SystemExit(f"Error: {prefix}_EMAIL and {prefix}_PASSWORD must both be set")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise SystemExit(
            f"Error: {prefix}_PASSWORD must be at least {MIN_PASSWORD_LENGTH} characters"
        )
    return email, os.environ.get(f"{prefix}_PHONE", DEFAULT_PHONE), password


def seed(accounts: dict) -> dict:
    """Provision each ``role -> (email, phone, password)`` entry; returns statuses."""
    # Import here to avoid loading config before env vars are set
    from peaceverse.service.runtime import get_runtime
    from peaceverse.storage.models import Role

    runtime = get_runtime()
    results = {}
    for role_name, (email, phone, password) in accounts.items():
        user, status = runtime.auth.provision_account(
            email, phone, password, Role(role_name)
        )
        results[role_name] = {"user_id": user.id, "email": user.email, "status": status}
    return results


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Seed admin and editor accounts for Peace-Verse",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--skip-admin", action="store_true", help="Only seed the editor")
    args = parser.parse_args()

    accounts = {}
    if not args.skip_admin:
        admin = _account_from_env("ADMIN")
        if admin is None:
            print("Error: ADMIN_EMAIL and ADMIN_PASSWORD environment variables required")
            sys.exit(1)
        accounts["admin"] = admin
    editor = _account_from_env("EDITOR")
    if editor is not None:
        accounts["editor"] = editor
    if not accounts:
        print("Nothing to seed")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    os.environ.setdefault("UNVERIFIED_SWEEP_ENABLED", "false")

    for role_name, result in seed(accounts).items():
        print(f"{role_name}: {result['email']} ({result['status']}, id: {result['user_id']})")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Create or promote a staff account for the admin portal.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123 python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email ops@example.com --password SecurePassword123 --role employee

Environment Variables:
    ADMIN_EMAIL: Email for the staff account
    ADMIN_PASSWORD: Password (must satisfy the configured password policy)
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys


def bootstrap_admin(email: str, password: str, role: str, dry_run: bool = False) -> dict:
    # Imported late so the environment below is in place before settings load
    from quoteauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)

    if existing and existing.role == role and existing.status == "active":
        print(f"Account {email} already exists as {role} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "unchanged"}
    if dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} {role} account: {email}")
        return {"account_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    account = runtime.auth.provision_staff(email, password, role=role)
    status = "promoted" if existing else "created"
    print(f"{status.capitalize()} {role} account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a staff account for the quotation admin portal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Staff email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Staff password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--role",
        choices=["admin", "employee"],
        default="admin",
        help="Staff role to assign",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/quoteauth-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from quoteauth.service.errors import ServiceError

    try:
        bootstrap_admin(args.email, args.password, args.role, args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for problem in exc.detail.get("violations", []):
            print(f"  - password {problem}")
        sys.exit(1)


if __name__ == "__main__":
    main()

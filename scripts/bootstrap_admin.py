#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Registration never grants a privileged role, so this is the only way to get
the first admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure@Pass123' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure@Pass123'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (same complexity rules as registration)
    STORE_BACKEND / DATA_DIR / REDIS_URL: which store to write to
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
    email: str, password: str, name: str = "Administrator", dry_run: bool = False
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so settings are read after the environment is prepared
    from sessionguard.service.runtime import get_runtime
    from sessionguard.storage.models import Role

    runtime = get_runtime()
    existing = runtime.store.find_by_identity(email)

    if existing:
        if existing.role == Role.ADMIN:
            print(f"Account {existing.email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote {existing.email} to admin")
            return {"account_id": existing.id, "email": existing.email, "status": "dry_run"}
        await runtime.auth.set_role(existing.id, Role.ADMIN)
        print(f"Promoted {existing.email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password, name)
    await runtime.auth.set_role(result.account.id, Role.ADMIN)
    # The registration session is not needed by an operator script
    await runtime.auth.logout_all(result.account.id)
    print(f"Created admin account: {result.account.email} (id: {result.account.id})")
    return {"account_id": result.account.id, "email": result.account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for SessionGuard",
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
    parser.add_argument("--name", default="Administrator", help="Display name")
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

    from sessionguard.api.schemas import RegisterRequest

    try:
        checked = RegisterRequest(name=args.name, email=args.email, password=args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    try:
        result = asyncio.run(
            bootstrap_admin(checked.email, checked.password, checked.name, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()

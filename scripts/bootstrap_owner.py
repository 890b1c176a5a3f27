#!/usr/bin/env python3
"""Create the first owner account.

Usage:
    OWNER_EMAIL=me@example.com OWNER_PASSWORD=Secret123 python scripts/bootstrap_owner.py --name "Studio Owner"

    python scripts/bootstrap_owner.py --email me@example.com --password Secret123 --name "Studio Owner"

Environment Variables:
    OWNER_EMAIL: Email for the owner account
    OWNER_PASSWORD: Password (8-100 chars, one uppercase letter, one digit)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from pydantic import ValidationError


async def bootstrap_owner(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create the owner, or promote an existing account to owner.

    Returns:
        dict with user_id, email and status (created, promoted, already_owner, dry_run)
    """
    from cronostudio.config import get_settings
    from cronostudio.service.runtime import Runtime
    from cronostudio.storage.models import UserRole

    runtime = Runtime(get_settings())
    try:
        existing = runtime.store.get_user_by_email(email)
        if existing:
            if existing.role == UserRole.OWNER.value:
                return {"user_id": existing.id, "email": existing.email, "status": "already_owner"}
            if dry_run:
                return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
            runtime.store.update_user_role(existing.id, UserRole.OWNER.value)
            return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

        if dry_run:
            return {"user_id": None, "email": email, "status": "dry_run"}

        result = await runtime.auth.register(email, password, name, role=UserRole.OWNER.value)
        return {"user_id": result.user.id, "email": result.user.email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the CronoStudio owner account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("OWNER_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("OWNER_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("OWNER_NAME", "Owner"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/--password or OWNER_EMAIL/OWNER_PASSWORD are required")
        sys.exit(1)

    from cronostudio.api.schemas import RegisterRequest

    try:
        request = RegisterRequest(email=args.email, password=args.password, name=args.name)
    except ValidationError as exc:
        for err in exc.errors():
            print(f"Error: {err['msg']}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    result = asyncio.run(
        bootstrap_owner(request.email, request.password, request.name, args.dry_run)
    )
    status = result["status"]
    if status == "created":
        print(f"Created owner {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Promoted {result['email']} to owner (id: {result['user_id']})")
    elif status == "already_owner":
        print(f"{result['email']} is already an owner; nothing to do")
    else:
        print(f"[DRY RUN] Would set up owner {result['email']}")


if __name__ == "__main__":
    main()

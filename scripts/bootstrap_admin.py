#!/usr/bin/env python3
"""Create an admin account or promote an existing account to admin.

Signup always creates ``user`` accounts; this script is the only path to
the ``admin`` role.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Adm1n!Secure#77' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Adm1n!Secure#77'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for a new admin account (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (optional)
    MEMORY_STORE_PATH: Credential snapshot directory used when DATABASE_URL is unset
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    firstname: str = "Admin",
    lastname: str = "User",
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    from tokenward.service.errors import WeakPasswordError
    from tokenward.service.passwords import PasswordHasher, ensure_strong_password
    from tokenward.service.runtime import get_runtime
    from tokenward.storage.models import Role

    runtime = get_runtime()
    normalized = email.strip().lower()
    existing = await asyncio.to_thread(runtime.store.get_credential_by_email, normalized)

    if existing:
        if existing.is_admin:
            print(f"Account {normalized} is already an admin (id: {existing.id})")
            return {"user_id": existing.id, "email": normalized, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {normalized} to admin")
            return {"user_id": existing.id, "email": normalized, "status": "dry_run"}
        await asyncio.to_thread(runtime.store.set_role, existing.id, Role.ADMIN.value)
        print(f"Promoted existing account {normalized} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": normalized, "status": "promoted"}

    try:
        ensure_strong_password(password)
    except WeakPasswordError as exc:
        raise ValueError(f"Password rejected: {exc.message}") from exc

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {normalized}")
        return {"user_id": None, "email": normalized, "status": "dry_run"}

    password_hash = await asyncio.to_thread(PasswordHasher().hash, password)
    credential = await asyncio.to_thread(
        runtime.store.create_credential,
        normalized,
        password_hash,
        firstname=firstname,
        lastname=lastname,
        role=Role.ADMIN.value,
    )
    print(f"Created admin account: {normalized} (id: {credential.id})")
    return {"user_id": credential.id, "email": normalized, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for tokenward",
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
    parser.add_argument("--firstname", default="Admin")
    parser.add_argument("--lastname", default="User")
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

    # Tokens are never issued here, so an ephemeral secret is enough
    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        if not os.environ.get("MEMORY_STORE_PATH"):
            print("Note: Using a process-local memory store (set DATABASE_URL or MEMORY_STORE_PATH for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                firstname=args.firstname,
                lastname=args.lastname,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()

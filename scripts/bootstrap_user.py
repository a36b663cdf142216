#!/usr/bin/env python3
"""Seed an identity for local testing.

Usage:
    # Using environment variables:
    SEED_EMAIL=ada@example.com SEED_PASSWORD=hunter22 python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email ada@example.com --password hunter22 --name Ada

    # An identity created before two-factor was mandatory; it is enrolled
    # on its first login:
    python scripts/bootstrap_user.py --email old@example.com --password hunter22 --legacy

Environment Variables:
    SEED_EMAIL: Email for the identity
    SEED_PASSWORD: Password for the identity (at least 6 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 6


def bootstrap_user(
    email: str, password: str, *, name: str, legacy: bool = False, dry_run: bool = False
) -> dict:
    """Create the identity unless one already exists for the email.

    Returns:
        dict with identity_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from reflective_auth.config import get_settings
    from reflective_auth.service.credentials import CredentialVerifier
    from reflective_auth.storage.memory import MemoryStore
    from reflective_auth.storage.models import Identity
    from reflective_auth.storage.postgres import PostgresStore

    settings = get_settings()
    store = (
        MemoryStore(fs_root=settings.shared_fs_root)
        if settings.use_memory_store
        else PostgresStore(settings.database_url)
    )
    store.connect()
    try:
        existing = store.get_identity_by_email(email)
        if existing:
            print(f"Identity {email} already exists (id: {existing.id})")
            return {"identity_id": existing.id, "email": existing.email, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create identity: {email} (legacy={legacy})")
            return {"identity_id": None, "email": email, "status": "dry_run"}

        password_hash = CredentialVerifier(store).hash_password(password)
        identity = store.create_identity(
            Identity.new(
                email,
                password_hash,
                name=name,
                two_factor_enabled=not legacy,
                two_factor_prompted=not legacy,
            )
        )
        print(f"Created identity: {identity.email} (id: {identity.id})")
        return {"identity_id": identity.id, "email": identity.email, "status": "created"}
    finally:
        store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Seed an identity for Reflective Pomodoro auth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SEED_EMAIL"),
        help="Identity email (or set SEED_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="Identity password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Test User", help="Display name")
    parser.add_argument(
        "--legacy",
        action="store_true",
        help="Create the identity without two-factor enabled",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SEED_EMAIL environment variable required")
        sys.exit(1)

    if not args.password or len(args.password) < MIN_PASSWORD_LENGTH:
        print(f"Error: password of at least {MIN_PASSWORD_LENGTH} characters required")
        sys.exit(1)

    # Settings refuse to load without a signing secret
    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/reflective-auth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store under SHARED_FS_ROOT (set DATABASE_URL for Postgres)")

    try:
        result = bootstrap_user(
            args.email,
            args.password,
            name=args.name,
            legacy=args.legacy,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nIdentity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - identity already exists.")


if __name__ == "__main__":
    main()

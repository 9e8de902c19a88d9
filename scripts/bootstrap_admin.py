#!/usr/bin/env python3
"""Create a tenant and its first admin principal.

Usage:
    # Using environment variables:
    TENANT_ID=acme ADMIN_EMAIL=admin@acme.test ADMIN_PASSWORD='S3cure!Passw0rd' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --tenant acme --email admin@acme.test --password 'S3cure!Passw0rd'

Environment Variables:
    TENANT_ID: Tenant id (also used as the identifier unless --identifier is given)
    ADMIN_EMAIL: Identifier/e-mail of the admin principal
    ADMIN_PASSWORD: Password for the admin (12+ chars, 3+ character classes)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    store,
    tenant_id: str,
    email: str,
    password: str,
    *,
    identifier: str | None = None,
    name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Ensure ``tenant_id`` exists and holds an active principal for ``email``.

    Returns:
        dict with tenant_id, user_id, email and status
        ('created', 'already_exists' or 'dry_run')
    """
    from sessiongate.service.passwords import hash_password

    tenant = store.get_tenant(tenant_id)
    existing = store.get_user_by_identifier(tenant_id, email) if tenant else None
    if existing is not None:
        return {
            "tenant_id": tenant_id,
            "user_id": existing.id,
            "email": email,
            "status": "already_exists",
        }
    if dry_run:
        return {"tenant_id": tenant_id, "user_id": None, "email": email, "status": "dry_run"}

    if tenant is None:
        tenant = store.create_tenant(identifier or tenant_id, name, tenant_id=tenant_id)
    user = store.create_user(
        tenant.id,
        email,
        email=email,
        name="admin",
        password_hash=hash_password(password),
        active=True,
    )
    return {"tenant_id": tenant.id, "user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant and admin principal for SessionGate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant", default=os.environ.get("TENANT_ID"), help="Tenant id")
    parser.add_argument("--identifier", default=None, help="Tenant identifier (defaults to id)")
    parser.add_argument("--name", default=None, help="Tenant display name")
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin e-mail (or set ADMIN_EMAIL env var)",
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

    if not args.tenant:
        print("Error: --tenant or TENANT_ID environment variable required")
        sys.exit(1)
    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password or not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/sessiongate-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Imported late so the env defaults above are seen by Settings
    from sessiongate.config import get_settings
    from sessiongate.service.runtime import Runtime

    runtime = Runtime(get_settings())
    try:
        result = bootstrap_admin(
            runtime.store,
            args.tenant,
            args.email,
            args.password,
            identifier=args.identifier,
            name=args.name,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin principal created successfully!")
        print(f"  Tenant: {result['tenant_id']}")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "already_exists":
        print(f"\nNo changes needed - {result['email']} already exists (id: {result['user_id']}).")
    else:
        print(f"[DRY RUN] Would create tenant {result['tenant_id']} admin {result['email']}")


if __name__ == "__main__":
    main()

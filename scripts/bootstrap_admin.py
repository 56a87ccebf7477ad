#!/usr/bin/env python3
"""Bootstrap a tenant and its super admin.

Usage:
    ADMIN_USERNAME=root ADMIN_EMAIL=root@example.com ADMIN_PASSWORD='S3cure-Passw0rd!' \
        python scripts/bootstrap_admin.py --tenant-name "Platform Ops"

    python scripts/bootstrap_admin.py --username root --email root@example.com \
        --password 'S3cure-Passw0rd!' --tenant-name "Platform Ops" --tenant-id platform

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: credentials of the super admin
    DATABASE_URL: PostgreSQL connection string (memory store if unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_super_admin(
    runtime,
    username: str,
    email: str,
    password: str,
    tenant_name: str,
    tenant_id: Optional[str] = None,
    *,
    dry_run: bool = False,
) -> dict:
    """Ensure the tenant exists and ``email`` holds SUPER_ADMIN and ADMIN in it.

    Returns a dict with ``user_id``, ``tenant_id`` and ``status`` (one of
    ``created``, ``promoted``, ``already_super_admin``, ``dry_run``).
    """
    from idprovider.service.tenants import generate_tenant_id
    from idprovider.storage.models import RoleName

    slug = tenant_id or generate_tenant_id(tenant_name)
    tenant = runtime.tenants.get_tenant(slug)
    existing = runtime.tenants.get_user_by_email(email)
    wanted = {RoleName.SUPER_ADMIN, RoleName.ADMIN}

    if existing:
        target_tenant = tenant.tenant_id if tenant else existing.tenant_id
        held = runtime.roles.get_user_roles(existing.id, target_tenant)
        if wanted <= held:
            return {
                "user_id": existing.id,
                "tenant_id": target_tenant,
                "status": "already_super_admin",
            }
        if dry_run:
            return {"user_id": existing.id, "tenant_id": target_tenant, "status": "dry_run"}
        runtime.roles.assign_roles_to_user(existing.id, target_tenant, held | wanted)
        return {"user_id": existing.id, "tenant_id": target_tenant, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "tenant_id": slug, "status": "dry_run"}

    if not tenant:
        tenant = runtime.tenants.create_tenant(tenant_name, tenant_id=slug)
    user = runtime.tenants.register_user(username, email, password, tenant.tenant_id)
    runtime.roles.assign_roles_to_user(user.id, tenant.tenant_id, wanted)
    return {"user_id": user.id, "tenant_id": tenant.tenant_id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for the identity provider",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--tenant-name", default=os.environ.get("ADMIN_TENANT_NAME"))
    parser.add_argument("--tenant-id", default=os.environ.get("ADMIN_TENANT_ID"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for flag in ("username", "email", "password", "tenant_name"):
        if not getattr(args, flag):
            print(f"Error: --{flag.replace('_', '-')} is required")
            sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from idprovider.service.runtime import get_runtime

    try:
        result = bootstrap_super_admin(
            get_runtime(),
            args.username,
            args.email.strip().lower(),
            args.password,
            args.tenant_name,
            args.tenant_id,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"{result['status']}: user={result['user_id']} tenant={result['tenant_id']}")


if __name__ == "__main__":
    main()

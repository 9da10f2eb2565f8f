#!/usr/bin/env python3
"""Grant the ADMIN role to a user out-of-band.

ADMIN can never be obtained through signup or onboarding; operators run this
script instead. A user that has not signed in yet is created with only an
email; the provider subject is bound on their first login.

Usage:
    python scripts/provision_admin.py --email admin@example.com
    ADMIN_EMAIL=admin@example.com python scripts/provision_admin.py --dry-run

Environment Variables:
    ADMIN_EMAIL: Email of the user to grant ADMIN
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    OIDC_ADMIN_API_URL: when set, the provider's role attribute is updated too
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


async def provision_admin(runtime, email: str, dry_run: bool = False) -> dict:
    """Grant ADMIN to ``email``, creating the user when missing.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    from portalauth.service.audit import AuditEvent
    from portalauth.service.roles import Role

    email = email.strip().lower()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user and existing_user.has_role(Role.ADMIN):
        print(f"User {email} already has ADMIN (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

    if dry_run:
        action = "grant ADMIN to existing user" if existing_user else "create ADMIN user"
        print(f"[DRY RUN] Would {action}: {email}")
        return {
            "user_id": existing_user.id if existing_user else None,
            "email": email,
            "status": "dry_run",
        }

    if existing_user:
        user = runtime.store.add_user_role(existing_user.id, Role.ADMIN)
        status = "promoted"
    else:
        user = runtime.store.create_user(email, roles=[Role.ADMIN])
        status = "created"

    runtime.audit.record(
        AuditEvent.ROLE_ADDED,
        user_id=user.id,
        metadata={"role": Role.ADMIN.value, "source": "provision_admin"},
    )
    if user.provider_subject:
        await runtime.gateway.update_role_attribute(user.provider_subject, user.roles)

    print(f"{status.capitalize()} ADMIN user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Grant the ADMIN role to a portal user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email or "@" not in args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Consumed login states are irrelevant to a one-shot script
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from portalauth.service.runtime import get_runtime

    async def _run() -> dict:
        runtime = get_runtime()
        try:
            return await provision_admin(runtime, args.email, args.dry_run)
        finally:
            await runtime.aclose()

    try:
        result = asyncio.run(_run())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()

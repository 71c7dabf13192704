#!/usr/bin/env python3
"""Create the first ADMIN account, or promote an existing account to ADMIN.

Usage:
    ADMIN_EMAIL=ops@example.com ADMIN_USERNAME=ops ADMIN_PASSWORD=Str0ngPassw0rd \\
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email ops@example.com --username ops \\
        --password Str0ngPassw0rd --first-name Ops --last-name Team

Environment Variables:
    ADMIN_EMAIL, ADMIN_USERNAME, ADMIN_PASSWORD: account to create or promote
    DATABASE_URL: PostgreSQL DSN; without it the in-memory store is used and
        nothing persists beyond this process
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    username: str,
    password: str,
    *,
    first_name: str = "Admin",
    last_name: str = "User",
    dry_run: bool = False,
) -> dict:
    """Create or promote ``email`` to the ADMIN role.

    Returns:
        dict with user_id, email and status (created, promoted, already_admin, dry_run)
    """
    # imported late so the environment below is in place before settings load
    from eventauth.service.runtime import get_runtime
    from eventauth.storage.models import Role

    runtime = get_runtime()
    email = email.strip().lower()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == Role.ADMIN.value:
            print(f"User {email} is already an admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote {email} from {existing.role} to ADMIN")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(existing.id, role=Role.ADMIN.value, is_active=True)
        revoked = await runtime.sessions.revoke_all(existing.id, reason="role_change")
        print(f"Promoted {email} to ADMIN (id: {existing.id}, sessions revoked: {revoked})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(
        email,
        username,
        password,
        first_name=first_name,
        last_name=last_name,
        role=Role.ADMIN.value,
    )
    print(f"Created admin user {email} (id: {result.user.id})")
    return {"user_id": result.user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an ADMIN account for the event manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
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

    from eventauth.service.passwords import validate_password_format

    problems = validate_password_format(args.password)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.username,
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""CLI script to provision a new organization.

Usage:
    python scripts/provision_organization.py --slug acme-pharma --name "Acme Pharma"
    python scripts/provision_organization.py --slug acme-pharma --name "Acme Pharma" \
        --admin-email admin@acme.example --admin-password changeme

Connects directly to the database using DATABASE_URL from environment or .env file.
Provisions the schema with RLS, seeds default roles, registers the organization
in shared.organizations, and optionally creates an initial super_admin user.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import uuid

# Ensure project root is on sys.path so we can import src.fulqrun
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def _create_admin(result: dict, name: str, email: str, password: str) -> None:
    from sqlalchemy import text

    from src.fulqrun.core.database import get_engine, get_organization_session
    from src.fulqrun.core.organization import (
        OrganizationContext,
        reset_organization_context,
        set_organization_context,
    )
    from src.fulqrun.core.security import hash_password
    from src.fulqrun.rbac.repository import RBACRepository

    organization_id = result["organization_id"]
    user_id = uuid.uuid4()

    async with get_engine().begin() as conn:
        # RLS requires the organization variable for the insert
        await conn.execute(
            text("SELECT set_config('app.current_organization_id', :org_id, true)"),
            {"org_id": organization_id},
        )
        await conn.execute(
            text(f"""
                INSERT INTO "{result['schema_name']}".users
                    (id, organization_id, email, full_name, role, is_active, hashed_password, created_at)
                VALUES (:id, :organization_id, :email, :full_name, 'super_admin', true, :hashed_password, now())
            """),
            {
                "id": user_id,
                "organization_id": organization_id,
                "email": email,
                "full_name": f"Admin ({name})",
                "hashed_password": hash_password(password),
            },
        )

    token = set_organization_context(
        OrganizationContext(
            organization_id=organization_id,
            organization_slug=result["slug"],
            schema_name=result["schema_name"],
        )
    )
    try:
        repo = RBACRepository(get_organization_session)
        role = await repo.get_role_by_key(organization_id, "super_admin")
        if role is not None:
            await repo.assign_role(organization_id, str(user_id), role.id)
    finally:
        reset_organization_context(token)


async def provision(slug: str, name: str, admin_email: str | None, admin_password: str | None) -> None:
    """Provision an organization by calling the provisioning service directly."""
    from src.fulqrun.core.database import close_db, init_db
    from src.fulqrun.core.redis import close_redis
    from src.fulqrun.services.organization_provisioning import provision_organization

    await init_db()

    print(f"Provisioning organization: slug={slug}, name={name}")
    result = await provision_organization(slug=slug, name=name)
    print("Organization provisioned successfully:")
    print(f"  ID:     {result['organization_id']}")
    print(f"  Slug:   {result['slug']}")
    print(f"  Name:   {result['name']}")
    print(f"  Schema: {result['schema_name']}")

    if admin_email and admin_password:
        await _create_admin(result, name, admin_email, admin_password)
        print(f"  Admin user created: {admin_email} (super_admin)")

    await close_redis()
    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision a new organization")
    parser.add_argument("--slug", required=True, help="Organization slug (e.g., acme-pharma)")
    parser.add_argument("--name", required=True, help="Organization display name (e.g., 'Acme Pharma')")
    parser.add_argument("--admin-email", default=None, help="Initial admin user email")
    parser.add_argument("--admin-password", default=None, help="Initial admin user password")
    args = parser.parse_args()

    if bool(args.admin_email) != bool(args.admin_password):
        parser.error("--admin-email and --admin-password must be provided together")

    asyncio.run(provision(args.slug, args.name, args.admin_email, args.admin_password))


if __name__ == "__main__":
    main()

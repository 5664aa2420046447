"""Per-organization migration helpers.

Runs Alembic migrations for one organization schema or for every active
organization registered in shared.organizations.
"""

from __future__ import annotations

from argparse import Namespace

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, text

from src.fulqrun.config import get_settings

ORGANIZATION_BRANCH = "organization"


def _get_alembic_config() -> Config:
    return Config("alembic.ini")


def migrate_shared(direction: str = "upgrade", revision: str = "shared@head") -> None:
    _run(_get_alembic_config(), direction, revision, "shared")


def migrate_organization(
    schema_name: str, direction: str = "upgrade", revision: str = f"{ORGANIZATION_BRANCH}@head"
) -> None:
    """Run migration for a single organization schema.

    Args:
        schema_name: The organization schema name (e.g., "org_acme_pharma")
        direction: "upgrade" or "downgrade"
        revision: Target revision (default: head of the organization branch)
    """
    _run(_get_alembic_config(), direction, revision, schema_name)


def _run(config: Config, direction: str, revision: str, schema_name: str) -> None:
    # env.py reads the schema from -x arguments
    config.cmd_opts = Namespace(x=[f"schema={schema_name}"])
    if direction == "upgrade":
        command.upgrade(config, revision)
    elif direction == "downgrade":
        command.downgrade(config, revision)
    else:
        raise ValueError(f"Invalid direction: {direction}")


def migrate_all_organizations(direction: str = "upgrade", revision: str = f"{ORGANIZATION_BRANCH}@head") -> list[str]:
    """Run migrations for all active organization schemas.

    Returns:
        List of schema names that were migrated.
    """
    engine = create_engine(get_settings().DATABASE_URL.replace("+asyncpg", ""))
    with engine.connect() as conn:
        result = conn.execute(
            text("SELECT schema_name FROM shared.organizations WHERE is_active = true ORDER BY created_at")
        )
        schemas = [row[0] for row in result]
    engine.dispose()

    migrated = []
    for schema_name in schemas:
        migrate_organization(schema_name, direction, revision)
        migrated.append(schema_name)
    return migrated

"""Initial organization schema: every per-organization table with RLS.

Revision ID: 002_initial_organization
Revises:
Create Date: 2026-10-01

Tables come from OrganizationBase.metadata (placeholder schema "org",
remapped to the organization schema by env.py). RLS DDL uses the actual
schema name from -x args.
"""

from typing import Sequence, Union

from alembic import context, op

from src.fulqrun.core.database import OrganizationBase, import_organization_models

# revision identifiers, used by Alembic.
revision: str = "002_initial_organization"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = ("organization",)
depends_on: Union[str, Sequence[str], None] = None


def _schema() -> str:
    return context.get_x_argument(as_dictionary=True).get("schema", "org")


def upgrade() -> None:
    schema = _schema()
    import_organization_models()
    OrganizationBase.metadata.create_all(op.get_bind())

    for table in OrganizationBase.metadata.sorted_tables:
        qualified = f'"{schema}".{table.name}'
        op.execute(f"ALTER TABLE {qualified} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {qualified} FORCE ROW LEVEL SECURITY")
        op.execute(f"""
            CREATE POLICY organization_isolation ON {qualified}
            FOR ALL
            USING (organization_id::text = current_setting('app.current_organization_id', true))
            WITH CHECK (organization_id::text = current_setting('app.current_organization_id', true))
        """)
        op.execute(f'CREATE INDEX IF NOT EXISTS idx_{table.name}_organization ON {qualified}(organization_id)')


def downgrade() -> None:
    schema = _schema()
    import_organization_models()
    for table in reversed(OrganizationBase.metadata.sorted_tables):
        op.execute(f'DROP POLICY IF EXISTS organization_isolation ON "{schema}".{table.name}')
    OrganizationBase.metadata.drop_all(op.get_bind())

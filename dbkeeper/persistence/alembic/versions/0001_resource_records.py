"""resource records

Revision ID: 0001_resource_records
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_resource_records"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "resource_records",
        sa.Column("kind", sa.String(length=64), primary_key=True),
        sa.Column("namespace", sa.String(length=253), primary_key=True, server_default=""),
        sa.Column("name", sa.String(length=253), primary_key=True),
        sa.Column("labels_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("annotations_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("finalizers_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column(
            "owner_references_json",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("spec_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deletion_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resource_version", sa.Integer(), nullable=False),
    )
    op.create_index(
        "ix_resource_records_kind_namespace",
        "resource_records",
        ["kind", "namespace"],
    )
    # Label selectors (schedule ownership, unit correlation) filter on labels_json.
    op.create_index(
        "ix_resource_records_labels",
        "resource_records",
        ["labels_json"],
        postgresql_using="gin",
    )


def downgrade() -> None:
    op.drop_index("ix_resource_records_labels", table_name="resource_records")
    op.drop_index("ix_resource_records_kind_namespace", table_name="resource_records")
    op.drop_table("resource_records")

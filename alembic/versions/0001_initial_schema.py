"""Initial schema: index pool, bindings, notes, sync ledger.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON

    op.create_table(
        "index_slots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_index_id", sa.String(length=100), nullable=False),
        sa.Column("category_id", sa.String(length=100)),
        sa.Column("display_name", sa.String(length=255)),
        sa.Column("state", sa.String(length=20), nullable=False, server_default="AVAILABLE"),
        sa.Column("assigned_owner_id", sa.String(length=100)),
        sa.Column("assigned_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("external_index_id", name="uq_index_slots_external_index_id"),
        sa.UniqueConstraint("assigned_owner_id", name="uq_index_slots_assigned_owner_id"),
    )
    op.create_index("ix_index_slots_state", "index_slots", ["state"])

    op.create_table(
        "knowledge_base_bindings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("external_index_id", sa.String(length=100), nullable=False),
        sa.Column("workspace_id", sa.String(length=100)),
        sa.Column("display_name", sa.String(length=255)),
        sa.Column("state", sa.String(length=20), nullable=False, server_default="ACTIVE"),
        sa.Column("last_sync_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("owner_id", name="uq_knowledge_base_bindings_owner_id"),
    )

    op.create_table(
        "notes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("source", sa.String(length=255)),
        sa.Column("title", sa.String(length=500)),
        sa.Column("content", sa.Text()),
        sa.Column("comment", sa.Text()),
        sa.Column("tags", json_type),
        sa.Column("state", sa.String(length=20), nullable=False, server_default="ACTIVE"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("ingested_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_notes_owner_state", "notes", ["owner_id", "state"])

    op.create_table(
        "sync_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("note_id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("external_index_id", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("remote_document_id", sa.String(length=255)),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("error_message", sa.Text()),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_sync_records_note_synced_at", "sync_records", ["note_id", "synced_at"])
    op.create_index("ix_sync_records_owner_id", "sync_records", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_sync_records_owner_id", table_name="sync_records")
    op.drop_index("ix_sync_records_note_synced_at", table_name="sync_records")
    op.drop_table("sync_records")
    op.drop_index("ix_notes_owner_state", table_name="notes")
    op.drop_table("notes")
    op.drop_table("knowledge_base_bindings")
    op.drop_index("ix_index_slots_state", table_name="index_slots")
    op.drop_table("index_slots")

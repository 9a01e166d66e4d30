"""create update audit tables

Revision ID: 5f2c9a1d7e34
Revises:
Create Date: 2026-10-18 09:12:41.337204

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5f2c9a1d7e34"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    Create the audit store.

    Implements:
    - update_logs: Append-only log, one row per logical update operation
    - update_version_snapshots: Durable version-before values across processes
    - update_audit_options: Policy values (logging, retention, auto-updates)
    """

    op.create_table(
        "update_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("kind", sa.String(20), nullable=False, server_default="plugin"),
        sa.Column("action", sa.String(20), nullable=False, server_default="update"),
        sa.Column("item_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("item_slug", sa.String(255), nullable=False, server_default=""),
        sa.Column("version_before", sa.String(64), nullable=False, server_default=""),
        sa.Column("version_after", sa.String(64), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="success"),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("trace", sa.JSON(), nullable=False),
        sa.Column("actor_kind", sa.String(20), nullable=False, server_default="system"),
        sa.Column(
            "initiation_mode", sa.String(20), nullable=False, server_default="manual"
        ),
        sa.Column("batch_context", sa.String(20), nullable=False, server_default=""),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("tenant_id >= 1", name="ck_update_logs_tenant_id"),
    )

    op.create_index("idx_update_logs_tenant_id", "update_logs", ["tenant_id"])
    op.create_index("idx_update_logs_kind", "update_logs", ["kind"])
    op.create_index("idx_update_logs_status", "update_logs", ["status"])
    op.create_index("idx_update_logs_created_at", "update_logs", ["created_at"])

    op.create_table(
        "update_version_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("identity", sa.String(255), nullable=False),
        sa.Column("version", sa.String(64), nullable=False),
        sa.Column(
            "captured_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "kind", "identity", name="uq_update_version_snapshots_item"
        ),
    )

    op.create_index(
        "idx_update_version_snapshots_expires_at",
        "update_version_snapshots",
        ["expires_at"],
    )

    op.create_table(
        "update_audit_options",
        sa.Column("name", sa.String(191), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    """Drop the audit store."""
    op.drop_table("update_audit_options")
    op.drop_index(
        "idx_update_version_snapshots_expires_at",
        table_name="update_version_snapshots",
    )
    op.drop_table("update_version_snapshots")
    op.drop_index("idx_update_logs_created_at", table_name="update_logs")
    op.drop_index("idx_update_logs_status", table_name="update_logs")
    op.drop_index("idx_update_logs_kind", table_name="update_logs")
    op.drop_index("idx_update_logs_tenant_id", table_name="update_logs")
    op.drop_table("update_logs")

"""queue files and inbox skips

Revision ID: b81f4c0d2e63
Revises: 5d2c9a1e7b40
Create Date: 2026-10-18 15:40:07.218411

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "b81f4c0d2e63"
down_revision: Union[str, Sequence[str], None] = "5d2c9a1e7b40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    """Add attachment metadata for queue items and skip tracking for the inbox."""
    op.create_table(
        "sync_queue_file",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("queue_item_id", ID_TYPE, nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("filesize", sa.BigInteger(), nullable=False),
        sa.Column("mimetype", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.ForeignKeyConstraint(["queue_item_id"], ["sync_queue_item.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_queue_file_queue_item_id", "sync_queue_file", ["queue_item_id"])
    op.create_index("ix_sync_queue_file_hash", "sync_queue_file", ["content_hash", "status"])

    with op.batch_alter_table("sync_inbound_update") as batch_op:
        batch_op.add_column(
            sa.Column("skips", sa.SmallInteger(), nullable=False, server_default="0")
        )
        batch_op.add_column(sa.Column("time_last_skipped", sa.BigInteger(), nullable=True))


def downgrade() -> None:
    """Remove attachment metadata and inbox skip tracking."""
    with op.batch_alter_table("sync_inbound_update") as batch_op:
        batch_op.drop_column("time_last_skipped")
        batch_op.drop_column("skips")

    op.drop_index("ix_sync_queue_file_hash", table_name="sync_queue_file")
    op.drop_index("ix_sync_queue_file_queue_item_id", table_name="sync_queue_file")
    op.drop_table("sync_queue_file")

"""initial sync schema

Revision ID: 5d2c9a1e7b40
Revises:
Create Date: 2026-10-18 09:12:44.512930

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5d2c9a1e7b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    """Create queue, mapping, registry, distribution and platform tables."""
    op.create_table(
        "sync_queue_item",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("event_name", sa.String(length=100), nullable=False),
        sa.Column("object_table", sa.String(length=64), nullable=True),
        sa.Column("object_id", sa.BigInteger(), nullable=True),
        sa.Column("related_user_id", sa.BigInteger(), nullable=True),
        sa.Column("course_id", sa.BigInteger(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("payload_hash", sa.CHAR(length=64), nullable=False),
        sa.Column("priority", sa.SmallInteger(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.SmallInteger(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.Column("time_modified", sa.BigInteger(), nullable=False),
        sa.Column("time_synced", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_sync_queue_item_dispatch",
        "sync_queue_item",
        ["status", "priority", "time_created"],
    )
    op.create_index("ix_sync_queue_item_hash", "sync_queue_item", ["payload_hash", "time_created"])

    op.create_table(
        "sync_identity_mapping",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("node_id", sa.String(length=64), nullable=False),
        sa.Column("table_name", sa.String(length=64), nullable=False),
        sa.Column("local_id", sa.BigInteger(), nullable=False),
        sa.Column("hub_id", sa.BigInteger(), nullable=False),
        sa.Column("hub_content_hash", sa.CHAR(length=64), nullable=True),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.Column("time_modified", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("node_id", "table_name", "local_id", name="uq_idmap_local"),
        sa.UniqueConstraint("node_id", "table_name", "hub_id", name="uq_idmap_hub"),
    )

    op.create_table(
        "sync_registered_node",
        sa.Column("node_id", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("api_key_hash", sa.CHAR(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("last_synced_at", sa.BigInteger(), nullable=True),
        sa.Column("last_sync_item_count", sa.Integer(), nullable=False),
        sa.Column("total_synced_count", sa.BigInteger(), nullable=False),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.Column("time_modified", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("node_id"),
    )

    op.create_table(
        "sync_distribution_update",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("target_node", sa.String(length=64), nullable=True),
        sa.Column("update_type", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("object_table", sa.String(length=64), nullable=True),
        sa.Column("object_id", sa.BigInteger(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("priority", sa.SmallInteger(), nullable=False),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_sync_distribution_update_order",
        "sync_distribution_update",
        ["priority", "time_created"],
    )
    op.create_index(
        "ix_sync_distribution_update_target_node", "sync_distribution_update", ["target_node"]
    )
    op.create_index(
        "ix_sync_distribution_update_time_created", "sync_distribution_update", ["time_created"]
    )

    op.create_table(
        "sync_delivery_record",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("node_id", sa.String(length=64), nullable=False),
        sa.Column("update_id", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("time_delivered", sa.BigInteger(), nullable=False),
        sa.ForeignKeyConstraint(
            ["update_id"], ["sync_distribution_update.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("node_id", "update_id", name="uq_delivery_node_update"),
    )

    op.create_table(
        "sync_log",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("node_id", sa.String(length=64), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("item_count", sa.Integer(), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False),
        sa.Column("fail_count", sa.Integer(), nullable=False),
        sa.Column("conflict_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_log_time_created", "sync_log", ["time_created"])

    op.create_table(
        "sync_state",
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("time_modified", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "sync_inbound_update",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("hub_update_id", sa.BigInteger(), nullable=False),
        sa.Column("update_type", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("priority", sa.SmallInteger(), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.SmallInteger(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("time_received", sa.BigInteger(), nullable=False),
        sa.Column("time_applied", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("hub_update_id"),
    )

    op.create_table(
        "lms_user",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("idnumber", sa.String(length=255), nullable=True),
        sa.Column("firstname", sa.String(length=100), nullable=False),
        sa.Column("lastname", sa.String(length=100), nullable=False),
        sa.Column("auth", sa.String(length=20), nullable=False),
        sa.Column("suspended", sa.Boolean(), nullable=False),
        sa.Column("deleted", sa.Boolean(), nullable=False),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.Column("time_modified", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )
    op.create_index("ix_lms_user_email", "lms_user", ["email"])
    op.create_index("ix_lms_user_idnumber", "lms_user", ["idnumber"])

    op.create_table(
        "lms_course",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("fullname", sa.Text(), nullable=False),
        sa.Column("shortname", sa.String(length=255), nullable=False),
        sa.Column("idnumber", sa.String(length=100), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("category", sa.BigInteger(), nullable=False),
        sa.Column("format", sa.String(length=21), nullable=False),
        sa.Column("visible", sa.Boolean(), nullable=False),
        sa.Column("start_date", sa.BigInteger(), nullable=False),
        sa.Column("end_date", sa.BigInteger(), nullable=False),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.Column("time_modified", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("shortname"),
    )
    op.create_index("ix_lms_course_idnumber", "lms_course", ["idnumber"])

    op.create_table(
        "lms_grade_item",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("course_id", sa.BigInteger(), nullable=False),
        sa.Column("itemname", sa.Text(), nullable=True),
        sa.Column("idnumber", sa.String(length=100), nullable=True),
        sa.Column("itemtype", sa.String(length=30), nullable=False),
        sa.Column("itemmodule", sa.String(length=30), nullable=True),
        sa.Column("grademax", sa.Float(), nullable=False),
        sa.Column("grademin", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_lms_grade_item_course_id", "lms_grade_item", ["course_id"])

    op.create_table(
        "lms_grade",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("item_id", sa.BigInteger(), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("rawgrade", sa.Float(), nullable=True),
        sa.Column("finalgrade", sa.Float(), nullable=True),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.Column("time_modified", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("item_id", "user_id", name="uq_lms_grade_item_user"),
    )

    op.create_table(
        "lms_enrolment",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("course_id", sa.BigInteger(), nullable=False),
        sa.Column("method", sa.String(length=20), nullable=False),
        sa.Column("status", sa.SmallInteger(), nullable=False),
        sa.Column("time_start", sa.BigInteger(), nullable=False),
        sa.Column("time_end", sa.BigInteger(), nullable=False),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.Column("time_modified", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "course_id", name="uq_lms_enrolment_user_course"),
    )

    op.create_table(
        "lms_activity_record",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("node_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("object_table", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=True),
        sa.Column("course_id", sa.BigInteger(), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("time_created", sa.BigInteger(), nullable=False),
        sa.Column("time_modified", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    """Drop every table created by this revision."""
    op.drop_table("lms_activity_record")
    op.drop_table("lms_enrolment")
    op.drop_table("lms_grade")
    op.drop_index("ix_lms_grade_item_course_id", table_name="lms_grade_item")
    op.drop_table("lms_grade_item")
    op.drop_index("ix_lms_course_idnumber", table_name="lms_course")
    op.drop_table("lms_course")
    op.drop_index("ix_lms_user_idnumber", table_name="lms_user")
    op.drop_index("ix_lms_user_email", table_name="lms_user")
    op.drop_table("lms_user")
    op.drop_table("sync_inbound_update")
    op.drop_table("sync_state")
    op.drop_index("ix_sync_log_time_created", table_name="sync_log")
    op.drop_table("sync_log")
    op.drop_table("sync_delivery_record")
    op.drop_index("ix_sync_distribution_update_time_created", table_name="sync_distribution_update")
    op.drop_index("ix_sync_distribution_update_target_node", table_name="sync_distribution_update")
    op.drop_index("ix_sync_distribution_update_order", table_name="sync_distribution_update")
    op.drop_table("sync_distribution_update")
    op.drop_table("sync_registered_node")
    op.drop_table("sync_identity_mapping")
    op.drop_index("ix_sync_queue_item_hash", table_name="sync_queue_item")
    op.drop_index("ix_sync_queue_item_dispatch", table_name="sync_queue_item")
    op.drop_table("sync_queue_item")

"""SQLAlchemy model for the leaf-side outbound event queue."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, BigInteger, CHAR, ForeignKey, Index, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from syncqueue.db.session import Base
from syncqueue.db.types import IdType


class QueueStatus(StrEnum):
    """Lifecycle states of a queued event."""

    PENDING = "pending"
    PROCESSING = "processing"
    SYNCED = "synced"
    FAILED = "failed"
    CONFLICT = "conflict"


class QueueItem(Base):
    """A captured domain event waiting to be uploaded to the hub."""

    __tablename__ = "sync_queue_item"
    __table_args__ = (
        Index("ix_sync_queue_item_dispatch", "status", "priority", "time_created"),
        Index("ix_sync_queue_item_hash", "payload_hash", "time_created"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. 'grade'
    event_name: Mapped[str] = mapped_column(String(100), nullable=False)  # e.g. 'user_graded'
    object_table: Mapped[str | None] = mapped_column(String(64), nullable=True)
    object_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    related_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    course_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    # SHA-256 of the canonical JSON payload, used for duplicate suppression.
    payload_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    # 1 = highest, 10 = lowest.
    priority: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=5)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=QueueStatus.PENDING)
    attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time_modified: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time_synced: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class QueueFile(Base):
    """Metadata of a file attached to a queued submission."""

    __tablename__ = "sync_queue_file"
    __table_args__ = (Index("ix_sync_queue_file_hash", "content_hash", "status"),)

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    queue_item_id: Mapped[int] = mapped_column(
        IdType, ForeignKey("sync_queue_item.id", ondelete="CASCADE"), nullable=False, index=True
    )
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    filesize: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mimetype: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Follows the owning item: pending until the item is synced.
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=QueueStatus.PENDING)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False)

"""Models tracking hub-originated updates and their per-node delivery."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, BigInteger, ForeignKey, Index, SmallInteger, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from syncqueue.db.session import Base
from syncqueue.db.types import IdType

DELIVERY_STATUS_DOWNLOADED = "downloaded"


class UpdateAction(StrEnum):
    """What a distribution update asks the leaf to do."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DistributionUpdate(Base):
    """A change published by the hub for one node, or for all nodes."""

    __tablename__ = "sync_distribution_update"
    __table_args__ = (
        Index("ix_sync_distribution_update_order", "priority", "time_created"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    # NULL means broadcast to every node.
    target_node: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    update_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False, default=UpdateAction.UPDATE)
    object_table: Mapped[str | None] = mapped_column(String(64), nullable=True)
    object_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    priority: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=5)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)


class DeliveryRecord(Base):
    """Marks that an update has been handed to a node."""

    __tablename__ = "sync_delivery_record"
    __table_args__ = (
        UniqueConstraint("node_id", "update_id", name="uq_delivery_node_update"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    node_id: Mapped[str] = mapped_column(String(64), nullable=False)
    update_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("sync_distribution_update.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DELIVERY_STATUS_DOWNLOADED
    )
    time_delivered: Mapped[int] = mapped_column(BigInteger, nullable=False)

"""SQLAlchemy model for leaf nodes registered with the hub."""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import CHAR, BigInteger, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from syncqueue.db.session import Base


class NodeStatus(StrEnum):
    """Administrative state of a registered node."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    PENDING = "pending"


class RegisteredNode(Base):
    """Hub-side record of one leaf node and its credentials."""

    __tablename__ = "sync_registered_node"

    node_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # SHA-256 of the API key; the key itself is only shown once.
    api_key_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=NodeStatus.ACTIVE)
    last_synced_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_sync_item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_synced_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time_modified: Mapped[int] = mapped_column(BigInteger, nullable=False)

"""Leaf-side bookkeeping: the download watermark and the update inbox."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, BigInteger, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from syncqueue.db.session import Base
from syncqueue.db.types import IdType

INBOX_PENDING = "pending"
INBOX_APPLIED = "applied"
INBOX_FAILED = "failed"


class SyncState(Base):
    """Small key/value store for cursors such as the download watermark."""

    __tablename__ = "sync_state"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    time_modified: Mapped[int] = mapped_column(BigInteger, nullable=False)


class InboundUpdate(Base):
    """A downloaded hub update persisted before it is applied locally."""

    __tablename__ = "sync_inbound_update"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    hub_update_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    update_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    priority: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=5)
    # Hub-side creation time of the update.
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=INBOX_PENDING)
    attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Passes that deferred this update because its dependencies were missing.
    skips: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    time_last_skipped: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    time_received: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time_applied: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

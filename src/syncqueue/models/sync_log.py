"""Append-only audit log of sync passes."""

from sqlalchemy import BigInteger, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from syncqueue.db.session import Base
from syncqueue.db.types import IdType

DIRECTION_UPLOAD = "upload"
DIRECTION_DOWNLOAD = "download"

LOG_STATUS_SUCCESS = "success"
LOG_STATUS_PARTIAL = "partial"
LOG_STATUS_FAILED = "failed"


class SyncLogEntry(Base):
    """Summary of one upload or download exchange. Observability only."""

    __tablename__ = "sync_log"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    node_id: Mapped[str] = mapped_column(String(64), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fail_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conflict_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

"""SQLAlchemy model for leaf-local to hub identifier mappings."""

from __future__ import annotations

from sqlalchemy import CHAR, BigInteger, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from syncqueue.db.session import Base
from syncqueue.db.types import IdType


class IdentityMapping(Base):
    """Join key between a leaf object and the hub object it corresponds to."""

    __tablename__ = "sync_identity_mapping"
    __table_args__ = (
        UniqueConstraint("node_id", "table_name", "local_id", name="uq_idmap_local"),
        UniqueConstraint("node_id", "table_name", "hub_id", name="uq_idmap_hub"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    node_id: Mapped[str] = mapped_column(String(64), nullable=False)
    table_name: Mapped[str] = mapped_column(String(64), nullable=False)
    local_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    hub_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Digest of the hub-side content at the time of the last sync, if known.
    hub_content_hash: Mapped[str | None] = mapped_column(CHAR(64), nullable=True)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time_modified: Mapped[int] = mapped_column(BigInteger, nullable=False)

"""Audit log of upload and download exchanges."""

from __future__ import annotations

from sqlalchemy.orm import Session

from syncqueue.core.settings import SyncConfig
from syncqueue.db.time import DAY_SECONDS, Clock, epoch_now
from syncqueue.models import SyncLogEntry
from syncqueue.models.sync_log import LOG_STATUS_FAILED, LOG_STATUS_PARTIAL, LOG_STATUS_SUCCESS


def summarize_status(item_count: int, fail_count: int, conflict_count: int = 0) -> str:
    """Classify a pass: failed when nothing went through, partial when some did."""
    problems = fail_count + conflict_count
    if problems == 0:
        return LOG_STATUS_SUCCESS
    if item_count and problems >= item_count:
        return LOG_STATUS_FAILED
    return LOG_STATUS_PARTIAL


class SyncLog:
    """Writes and prunes :class:`SyncLogEntry` rows."""

    def __init__(self, db: Session, config: SyncConfig, *, clock: Clock = epoch_now) -> None:
        self.db = db
        self.config = config
        self.clock = clock

    def record(
        self,
        node_id: str,
        direction: str,
        *,
        item_count: int = 0,
        success_count: int = 0,
        fail_count: int = 0,
        conflict_count: int = 0,
        status: str | None = None,
        details: str | None = None,
    ) -> SyncLogEntry:
        entry = SyncLogEntry(
            node_id=node_id,
            direction=direction,
            item_count=item_count,
            success_count=success_count,
            fail_count=fail_count,
            conflict_count=conflict_count,
            status=status or summarize_status(item_count, fail_count, conflict_count),
            details=details,
            time_created=self.clock(),
        )
        self.db.add(entry)
        self.db.commit()
        return entry

    def recent(self, limit: int = 20, node_id: str | None = None) -> list[SyncLogEntry]:
        query = self.db.query(SyncLogEntry)
        if node_id is not None:
            query = query.filter(SyncLogEntry.node_id == node_id)
        return (
            query.order_by(SyncLogEntry.time_created.desc(), SyncLogEntry.id.desc())
            .limit(limit)
            .all()
        )

    def cleanup(self, retention_days: int | None = None) -> int:
        days = self.config.log_retention_days if retention_days is None else retention_days
        cutoff = self.clock() - days * DAY_SECONDS
        deleted = (
            self.db.query(SyncLogEntry)
            .filter(SyncLogEntry.time_created < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

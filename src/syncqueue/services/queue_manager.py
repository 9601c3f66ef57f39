"""Durable outbound queue of leaf events awaiting upload.

Each state transition is committed immediately so that a crash between
claiming a batch and recording its outcome leaves the attempt counted.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from syncqueue.core.settings import SyncConfig
from syncqueue.db.time import DAY_SECONDS, Clock, epoch_now
from syncqueue.models import QueueFile, QueueItem, QueueStatus
from syncqueue.services.events import EVENT_OBJECT_TABLES, SyncEvent, route_for
from syncqueue.services.snapshot import course_context, object_snapshot, user_context

logger = logging.getLogger(__name__)

STALE_PROCESSING_ERROR = "Processing timed out before a result was recorded"


def canonical_json(payload: Mapping[str, Any]) -> str:
    """Serialize a payload deterministically for hashing."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def payload_digest(payload: Mapping[str, Any]) -> str:
    """Return the SHA-256 hex digest of the canonical payload."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


@dataclass
class QueueStats:
    """Counts per status plus the most recent successful sync."""

    counts: dict[str, int] = field(default_factory=dict)
    last_synced_at: int | None = None

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def count(self, status: QueueStatus) -> int:
        return self.counts.get(status.value, 0)


class QueueManager:
    """Outbound queue operations for one leaf node."""

    def __init__(self, db: Session, config: SyncConfig, *, clock: Clock = epoch_now) -> None:
        self.db = db
        self.config = config
        self.clock = clock

    def build_payload(self, event: SyncEvent, object_table: str | None) -> dict[str, Any]:
        """Assemble the uploaded payload from an event and local context.

        The payload carries the event's origin time but not the queueing time,
        so a redelivered event hashes identically to the original.
        """
        snapshot = (
            dict(event.snapshot)
            if event.snapshot is not None
            else object_snapshot(self.db, object_table, event.object_id)
        )
        return {
            "event": {
                "event_name": event.event_name,
                "component": event.component,
                "action": event.action,
                "target": event.target,
                "object_table": object_table,
                "object_id": event.object_id,
                "related_user_id": event.related_user_id,
                "user_id": event.user_id,
                "course_id": event.course_id,
                "time_created": event.time_created,
                "other": dict(event.other),
            },
            "context": {
                "user": user_context(self.db, event.related_user_id or event.user_id),
                "course": course_context(self.db, event.course_id),
                "object": snapshot,
            },
            "node": {"id": self.config.node_id},
        }

    def enqueue(self, event: SyncEvent) -> int | None:
        """Persist a captured event.

        Returns:
            The new queue item id, or None when the event is not routed for
            sync or an identical payload is already queued within the
            duplicate window.
        """
        route = route_for(event.event_name)
        if route is None:
            logger.debug("Ignoring unrouted event %s", event.event_name)
            return None

        if not event.time_created:
            event = replace(event, time_created=self.clock())
        object_table = event.object_table or EVENT_OBJECT_TABLES[route.event_type]
        payload = self.build_payload(event, object_table)
        payload_hash = payload_digest(payload)

        if self.is_duplicate(payload_hash):
            logger.debug("Suppressed duplicate %s event (hash %s)", event.event_name, payload_hash)
            return None

        now = self.clock()
        item = QueueItem(
            event_type=route.event_type.value,
            event_name=event.event_name,
            object_table=object_table,
            object_id=event.object_id,
            related_user_id=event.related_user_id,
            course_id=event.course_id,
            payload=payload,
            payload_hash=payload_hash,
            priority=route.priority,
            status=QueueStatus.PENDING.value,
            attempts=0,
            time_created=now,
            time_modified=now,
        )
        self.db.add(item)
        self.db.flush()
        if event.files:
            self._add_files(item.id, event.files)
        self.db.commit()
        logger.debug("Queued %s event as item %d", event.event_name, item.id)
        return item.id

    def queue_files(self, item_id: int, files: Iterable[Mapping[str, Any]]) -> int:
        """Record attachment metadata for an existing queue item."""
        self._require(item_id)
        added = self._add_files(item_id, files)
        self.db.commit()
        return added

    def _add_files(self, item_id: int, files: Iterable[Mapping[str, Any]]) -> int:
        # A content hash already waiting for upload is recorded once.
        added = 0
        now = self.clock()
        for meta in files:
            content_hash = meta.get("content_hash")
            filename = meta.get("filename")
            if not content_hash or not filename:
                continue
            pending = (
                self.db.query(QueueFile.id)
                .filter(
                    QueueFile.content_hash == content_hash,
                    QueueFile.status == QueueStatus.PENDING.value,
                )
                .first()
            )
            if pending is not None:
                continue
            self.db.add(
                QueueFile(
                    queue_item_id=item_id,
                    content_hash=content_hash,
                    filename=filename,
                    filesize=int(meta.get("filesize") or 0),
                    mimetype=meta.get("mimetype"),
                    status=QueueStatus.PENDING.value,
                    time_created=now,
                )
            )
            self.db.flush()
            added += 1
        return added

    def files_for(self, item_id: int) -> list[QueueFile]:
        return (
            self.db.query(QueueFile)
            .filter(QueueFile.queue_item_id == item_id)
            .order_by(QueueFile.id.asc())
            .all()
        )

    def is_duplicate(self, payload_hash: str) -> bool:
        """Check for a non-failed item with the same hash inside the window."""
        window = self.config.duplicate_window_seconds
        if window <= 0:
            return False
        cutoff = self.clock() - window
        existing = (
            self.db.query(QueueItem.id)
            .filter(
                QueueItem.payload_hash == payload_hash,
                QueueItem.time_created > cutoff,
                QueueItem.status != QueueStatus.FAILED.value,
            )
            .first()
        )
        return existing is not None

    def dequeue(self, limit: int | None = None) -> list[QueueItem]:
        """Return retry-eligible pending items by priority, then age."""
        limit = limit or self.config.batch_size
        return (
            self.db.query(QueueItem)
            .filter(
                QueueItem.status == QueueStatus.PENDING.value,
                QueueItem.attempts < self.config.max_retries,
            )
            .order_by(QueueItem.priority.asc(), QueueItem.time_created.asc(), QueueItem.id.asc())
            .limit(limit)
            .all()
        )

    def mark_processing(self, item_ids: Iterable[int]) -> int:
        """Claim items for an upload attempt and count the attempt."""
        ids = list(item_ids)
        if not ids:
            return 0
        updated = (
            self.db.query(QueueItem)
            .filter(QueueItem.id.in_(ids))
            .update(
                {
                    QueueItem.status: QueueStatus.PROCESSING.value,
                    QueueItem.attempts: QueueItem.attempts + 1,
                    QueueItem.time_modified: self.clock(),
                },
                synchronize_session="fetch",
            )
        )
        self.db.commit()
        return updated

    def mark_synced(self, item_id: int) -> None:
        item = self._require(item_id)
        now = self.clock()
        item.status = QueueStatus.SYNCED.value
        item.last_error = None
        item.time_synced = now
        item.time_modified = now
        self.db.query(QueueFile).filter(QueueFile.queue_item_id == item_id).update(
            {QueueFile.status: QueueStatus.SYNCED.value}, synchronize_session="fetch"
        )
        self.db.commit()

    def mark_failed(self, item_id: int, error: str) -> QueueStatus:
        """Record a failed attempt.

        Returns:
            PENDING when the item will be retried, FAILED once the retry
            budget is spent.
        """
        item = self._require(item_id)
        status = self._fail(item, error)
        self.db.commit()
        return status

    def mark_failed_many(self, item_ids: Iterable[int], error: str) -> int:
        """Apply one transport failure to every item of an attempted batch."""
        count = 0
        for item in self.db.query(QueueItem).filter(QueueItem.id.in_(list(item_ids))).all():
            self._fail(item, error)
            count += 1
        self.db.commit()
        return count

    def mark_conflict(self, item_id: int, detail: str) -> None:
        item = self._require(item_id)
        item.status = QueueStatus.CONFLICT.value
        item.last_error = detail
        item.time_modified = self.clock()
        self.db.commit()

    def release_stale(self, timeout_seconds: int | None = None) -> int:
        """Return items stuck in processing past the timeout to the retry path."""
        timeout = (
            self.config.processing_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        cutoff = self.clock() - timeout
        stale = (
            self.db.query(QueueItem)
            .filter(
                QueueItem.status == QueueStatus.PROCESSING.value,
                QueueItem.time_modified <= cutoff,
            )
            .all()
        )
        for item in stale:
            self._fail(item, STALE_PROCESSING_ERROR)
        if stale:
            self.db.commit()
            logger.warning("Released %d stale processing item(s)", len(stale))
        return len(stale)

    def retry(self, item_ids: Iterable[int] | None = None) -> int:
        """Reset failed and conflict items to pending with a fresh retry budget."""
        query = self.db.query(QueueItem).filter(
            QueueItem.status.in_([QueueStatus.FAILED.value, QueueStatus.CONFLICT.value])
        )
        if item_ids is not None:
            query = query.filter(QueueItem.id.in_(list(item_ids)))
        items = query.all()
        now = self.clock()
        for item in items:
            item.status = QueueStatus.PENDING.value
            item.attempts = 0
            item.last_error = None
            item.time_modified = now
        self.db.commit()
        return len(items)

    def delete(self, item_ids: Iterable[int]) -> int:
        """Discard failed or conflict items an operator has given up on."""
        deleted = self._delete_where(
            QueueItem.id.in_(list(item_ids)),
            QueueItem.status.in_([QueueStatus.FAILED.value, QueueStatus.CONFLICT.value]),
        )
        self.db.commit()
        return deleted

    def cleanup(self, retention_days: int | None = None) -> int:
        """Delete synced items older than the retention window.

        Items in any other state are kept regardless of age.
        """
        days = self.config.queue_retention_days if retention_days is None else retention_days
        cutoff = self.clock() - days * DAY_SECONDS
        deleted = self._delete_where(
            QueueItem.status == QueueStatus.SYNCED.value,
            QueueItem.time_synced < cutoff,
        )
        self.db.commit()
        if deleted:
            logger.info("Removed %d synced queue item(s)", deleted)
        return deleted

    def _delete_where(self, *criteria: Any) -> int:
        ids = [row.id for row in self.db.query(QueueItem.id).filter(*criteria).all()]
        if not ids:
            return 0
        self.db.query(QueueFile).filter(QueueFile.queue_item_id.in_(ids)).delete(
            synchronize_session="fetch"
        )
        return (
            self.db.query(QueueItem)
            .filter(QueueItem.id.in_(ids))
            .delete(synchronize_session="fetch")
        )

    def list_items(self, *statuses: QueueStatus, limit: int = 50) -> list[QueueItem]:
        """Most recent items, optionally restricted to the given statuses."""
        query = self.db.query(QueueItem)
        if statuses:
            query = query.filter(QueueItem.status.in_([status.value for status in statuses]))
        return query.order_by(QueueItem.time_created.desc()).limit(limit).all()

    def get_stats(self) -> QueueStats:
        rows = (
            self.db.query(QueueItem.status, func.count(QueueItem.id))
            .group_by(QueueItem.status)
            .all()
        )
        counts = {status.value: 0 for status in QueueStatus}
        counts.update({status: count for status, count in rows})
        last_synced = self.db.query(func.max(QueueItem.time_synced)).scalar()
        return QueueStats(counts=counts, last_synced_at=last_synced)

    def _fail(self, item: QueueItem, error: str) -> QueueStatus:
        status = (
            QueueStatus.FAILED if item.attempts >= self.config.max_retries else QueueStatus.PENDING
        )
        item.status = status.value
        item.last_error = error
        item.time_modified = self.clock()
        return status

    def _require(self, item_id: int) -> QueueItem:
        item = self.db.get(QueueItem, item_id)
        if item is None:
            raise LookupError(f"Queue item {item_id} does not exist")
        return item

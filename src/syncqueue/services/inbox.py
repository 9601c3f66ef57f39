"""Leaf-side persistence of downloaded updates and the download watermark.

Downloaded updates are written to the inbox before the watermark moves, so
an update the hub has already marked delivered can never be lost locally.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.orm import Session

from syncqueue.core.settings import SyncConfig
from syncqueue.db.time import DAY_SECONDS, Clock, epoch_now
from syncqueue.models import InboundUpdate, SyncState
from syncqueue.models.sync_state import INBOX_APPLIED, INBOX_FAILED, INBOX_PENDING
from syncqueue.services.leaf_applier import ApplyOutcome, BatchSummary, IncomingUpdate, LeafApplier

logger = logging.getLogger(__name__)

WATERMARK_KEY = "last_download"


class LeafInbox:
    """Durable staging area between the transport and the leaf applier."""

    def __init__(self, db: Session, config: SyncConfig, *, clock: Clock = epoch_now) -> None:
        self.db = db
        self.config = config
        self.clock = clock

    def get_watermark(self) -> int:
        state = self.db.get(SyncState, WATERMARK_KEY)
        return int(state.value) if state is not None else 0

    def set_watermark(self, value: int) -> None:
        state = self.db.get(SyncState, WATERMARK_KEY)
        if state is None:
            state = SyncState(key=WATERMARK_KEY, value=str(value), time_modified=self.clock())
            self.db.add(state)
        else:
            state.value = str(value)
            state.time_modified = self.clock()
        self.db.commit()

    def advance_watermark(self, updates: list[IncomingUpdate], drained: bool) -> int:
        """Move the watermark after a batch has been stored.

        The watermark only moves once the hub has nothing more to send, and
        then trails the newest timestamp by the configured overlap. Delivery
        records on the hub keep the overlap from producing repeats.
        """
        current = self.get_watermark()
        if not drained or not updates:
            return current
        newest = max(update.timestamp for update in updates)
        candidate = newest - self.config.download_overlap_seconds
        if candidate > current:
            self.set_watermark(candidate)
            return candidate
        return current

    def store(self, updates: Iterable[IncomingUpdate]) -> int:
        """Persist downloaded updates, ignoring ones already in the inbox."""
        stored = 0
        now = self.clock()
        for update in updates:
            exists = (
                self.db.query(InboundUpdate.id)
                .filter(InboundUpdate.hub_update_id == update.id)
                .first()
            )
            if exists is not None:
                continue
            self.db.add(
                InboundUpdate(
                    hub_update_id=update.id,
                    update_type=update.type,
                    action=update.action,
                    data=dict(update.data),
                    priority=update.priority,
                    timestamp=update.timestamp,
                    status=INBOX_PENDING,
                    attempts=0,
                    skips=0,
                    time_received=now,
                )
            )
            stored += 1
        self.db.commit()
        return stored

    def pending(self, limit: int | None = None) -> list[InboundUpdate]:
        query = (
            self.db.query(InboundUpdate)
            .filter(InboundUpdate.status == INBOX_PENDING)
            .order_by(
                InboundUpdate.priority.asc(),
                InboundUpdate.timestamp.asc(),
                InboundUpdate.hub_update_id.asc(),
            )
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    def process_pending(self, applier: LeafApplier, limit: int | None = None) -> BatchSummary:
        """Apply every pending inbox row.

        Applied rows are closed, skipped rows stay pending for a later pass,
        and rows that raise are retried until the retry budget is spent.
        Every skip is counted on the row; once a row has been deferred
        ``max_retries`` times a warning is logged and it shows up in
        :meth:`stalled`.
        """
        summary = BatchSummary()
        for row in self.pending(limit):
            update = IncomingUpdate(
                id=row.hub_update_id,
                type=row.update_type,
                action=row.action,
                timestamp=row.timestamp,
                data=row.data,
                priority=row.priority,
            )
            outcome, error = applier.apply_one(update)
            summary.record(outcome)
            if outcome is ApplyOutcome.APPLIED:
                row.status = INBOX_APPLIED
                row.last_error = None
                row.time_applied = self.clock()
            elif outcome is ApplyOutcome.SKIPPED:
                row.skips += 1
                row.time_last_skipped = self.clock()
                if row.skips == self.config.max_retries:
                    logger.warning(
                        "Hub update %s (%s %s) still waits on dependencies after %d passes",
                        row.hub_update_id,
                        row.update_type,
                        row.action,
                        row.skips,
                    )
            elif outcome is ApplyOutcome.FAILED:
                row.attempts += 1
                row.last_error = error
                if row.attempts >= self.config.max_retries:
                    row.status = INBOX_FAILED
            self.db.commit()
        return summary

    def stalled(self, min_skips: int | None = None) -> list[InboundUpdate]:
        """Pending rows deferred at least ``min_skips`` times (default ``max_retries``)."""
        threshold = self.config.max_retries if min_skips is None else min_skips
        return (
            self.db.query(InboundUpdate)
            .filter(InboundUpdate.status == INBOX_PENDING, InboundUpdate.skips >= threshold)
            .order_by(InboundUpdate.hub_update_id.asc())
            .all()
        )

    def cleanup(self, retention_days: int | None = None) -> int:
        """Drop applied inbox rows older than the queue retention window."""
        days = self.config.queue_retention_days if retention_days is None else retention_days
        cutoff = self.clock() - days * DAY_SECONDS
        deleted = (
            self.db.query(InboundUpdate)
            .filter(InboundUpdate.status == INBOX_APPLIED, InboundUpdate.time_applied < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    def counts(self) -> dict[str, int]:
        result = {}
        for status in (INBOX_PENDING, INBOX_APPLIED, INBOX_FAILED):
            result[status] = (
                self.db.query(InboundUpdate).filter(InboundUpdate.status == status).count()
            )
        return result

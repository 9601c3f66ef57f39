"""Upload, download and cleanup passes for a leaf node.

The engine keeps no clock of its own; an external scheduler (cron, a
systemd timer, the CLI) invokes one pass at a time. Each pass claims its
work in the database before any network call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from syncqueue.core.settings import SyncConfig
from syncqueue.db.time import Clock, epoch_now
from syncqueue.models import QueueItem
from syncqueue.models.sync_log import DIRECTION_DOWNLOAD, DIRECTION_UPLOAD, LOG_STATUS_FAILED
from syncqueue.services.distribution import DistributionManager
from syncqueue.services.errors import (
    AuthenticationError,
    ConfigurationError,
    SyncDisabledError,
    SyncError,
)
from syncqueue.services.hub_applier import ApplyStatus
from syncqueue.services.id_mapper import IdentityMapper
from syncqueue.services.inbox import LeafInbox
from syncqueue.services.leaf_applier import ContentHandler, LeafApplier
from syncqueue.services.queue_manager import QueueManager
from syncqueue.services.sync_client import SyncClient, UploadOutcome
from syncqueue.services.sync_log import SyncLog

logger = logging.getLogger(__name__)

MISSING_RESULT_ERROR = "Hub returned no result for this item"


@dataclass
class PassResult:
    """Counts for one upload or download pass."""

    direction: str
    item_count: int = 0
    success: int = 0
    failed: int = 0
    conflicts: int = 0
    skipped: int = 0
    details: str | None = None

    def as_report(self) -> dict[str, Any]:
        return {
            "direction": self.direction,
            "item_count": self.item_count,
            "success_count": self.success,
            "fail_count": self.failed,
            "conflict_count": self.conflicts,
            "details": self.details,
        }


class SyncRunner:
    """Drives the leaf side of synchronization against one hub."""

    def __init__(
        self,
        db: Session,
        config: SyncConfig,
        *,
        client: SyncClient | None = None,
        content_handler: ContentHandler | None = None,
        clock: Clock = epoch_now,
    ) -> None:
        self.db = db
        self.config = config
        self.clock = clock
        self._owns_client = client is None
        self.client = client or SyncClient(config)
        self.content_handler = content_handler
        self.queue = QueueManager(db, config, clock=clock)
        self.inbox = LeafInbox(db, config, clock=clock)
        self.log = SyncLog(db, config, clock=clock)

    def close(self) -> None:
        """Close the hub connection if this runner opened it."""
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> SyncRunner:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _check_ready(self, force: bool) -> str:
        if not self.config.enabled and not force:
            raise SyncDisabledError("Sync is disabled")
        if not self.config.is_leaf:
            raise ConfigurationError("Upload and download passes run on leaf nodes only")
        if not self.config.node_id:
            raise ConfigurationError("Node id is not configured")
        return self.config.node_id

    def _check_registration(self) -> None:
        status = self.client.check_status()
        if not status.registered:
            raise AuthenticationError("This node is not registered with the hub")
        if not status.active:
            raise AuthenticationError(f"This node is {status.node_status or 'inactive'} on the hub")

    def run_upload(self, *, force: bool = False) -> PassResult:
        """Upload one batch of pending queue items.

        Raises:
            SyncError: When the pass cannot run or the transport call fails.
                A failed transport call returns every claimed item to the
                retry path before the error propagates.
        """
        node_id = self._check_ready(force)
        result = PassResult(direction=DIRECTION_UPLOAD)

        self.queue.release_stale()
        self._check_registration()

        items = self.queue.dequeue(self.config.batch_size)
        if not items:
            logger.info("No queued items to upload")
            return result

        item_ids = [item.id for item in items]
        self.queue.mark_processing(item_ids)
        result.item_count = len(item_ids)

        try:
            outcome = self.client.upload(items)
        except SyncError as exc:
            self.queue.mark_failed_many(item_ids, str(exc))
            self.log.record(
                node_id,
                DIRECTION_UPLOAD,
                item_count=len(item_ids),
                fail_count=len(item_ids),
                status=LOG_STATUS_FAILED,
                details=str(exc),
            )
            logger.warning("Upload of %d item(s) failed: %s", len(item_ids), exc)
            raise

        self._apply_outcome(node_id, items, outcome, result)
        result.details = (
            f"Uploaded {result.item_count}: {result.success} synced, "
            f"{result.conflicts} conflicts, {result.failed} failed"
        )
        self.log.record(
            node_id,
            DIRECTION_UPLOAD,
            item_count=result.item_count,
            success_count=result.success,
            fail_count=result.failed,
            conflict_count=result.conflicts,
            details=result.details,
        )
        logger.info(result.details)
        self.client.report(result.as_report())
        return result

    def _apply_outcome(
        self,
        node_id: str,
        items: list[QueueItem],
        outcome: UploadOutcome,
        result: PassResult,
    ) -> None:
        mapper = IdentityMapper(self.db, node_id, clock=self.clock)
        by_id = {item_result.id: item_result for item_result in outcome.results}
        for item in items:
            item_result = by_id.get(item.id)
            if item_result is None:
                self.queue.mark_failed(item.id, MISSING_RESULT_ERROR)
                result.failed += 1
                continue
            if item_result.status == ApplyStatus.SUCCESS:
                if item.object_table and item.object_id:
                    if item.event_name.endswith("_deleted"):
                        mapper.delete(item.object_table, item.object_id)
                    elif item_result.hub_id:
                        mapper.upsert(item.object_table, item.object_id, int(item_result.hub_id))
                self.queue.mark_synced(item.id)
                result.success += 1
            elif item_result.status == ApplyStatus.CONFLICT:
                self.queue.mark_conflict(item.id, item_result.message or "Conflict on hub")
                result.conflicts += 1
            else:
                self.queue.mark_failed(item.id, item_result.message or "Hub reported an error")
                result.failed += 1

    def run_download(self, *, force: bool = False) -> PassResult:
        """Download pending hub updates, store them, then apply the inbox."""
        node_id = self._check_ready(force)
        result = PassResult(direction=DIRECTION_DOWNLOAD)

        since = self.inbox.get_watermark()
        try:
            batch = self.client.download(since, self.config.download_limit)
        except SyncError as exc:
            self.log.record(
                node_id,
                DIRECTION_DOWNLOAD,
                status=LOG_STATUS_FAILED,
                details=str(exc),
            )
            logger.warning("Download failed: %s", exc)
            raise

        stored = self.inbox.store(batch.updates)
        self.inbox.advance_watermark(batch.updates, batch.drained)

        applier = LeafApplier(
            self.db,
            self.config,
            content_handler=self.content_handler,
            clock=self.clock,
        )
        summary = self.inbox.process_pending(applier)
        result.item_count = summary.total
        result.success = summary.success
        result.failed = summary.failed
        result.skipped = summary.skipped
        result.details = (
            f"Downloaded {len(batch.updates)} ({stored} new): {summary.success} applied, "
            f"{summary.skipped} deferred, {summary.failed} failed"
        )
        self.log.record(
            node_id,
            DIRECTION_DOWNLOAD,
            item_count=result.item_count,
            success_count=result.success,
            fail_count=result.failed,
            details=result.details,
        )
        logger.info(result.details)
        self.client.report(result.as_report())
        return result

    def run_cleanup(self) -> dict[str, int]:
        """Apply the retention windows for this node's role."""
        removed = {"log": self.log.cleanup()}
        if self.config.is_hub:
            distribution = DistributionManager(self.db, self.config, clock=self.clock)
            removed["updates"] = distribution.cleanup()
        else:
            removed["queue"] = self.queue.cleanup()
            removed["inbox"] = self.inbox.cleanup()
        logger.info("Cleanup removed %s", removed)
        return removed

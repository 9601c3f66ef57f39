"""Entry point the host platform calls when a domain event fires on a leaf."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from syncqueue.core.settings import SyncConfig
from syncqueue.db.time import Clock, epoch_now
from syncqueue.services.events import SyncEvent, route_for
from syncqueue.services.queue_manager import QueueManager

logger = logging.getLogger(__name__)


class EventObserver:
    """Captures routed events into the outbound queue.

    Capture never raises into the caller: a failure to queue is logged and
    the host platform's own operation carries on.
    """

    def __init__(self, db: Session, config: SyncConfig, *, clock: Clock = epoch_now) -> None:
        self.db = db
        self.config = config
        self.queue = QueueManager(db, config, clock=clock)

    @property
    def capturing(self) -> bool:
        return self.config.enabled and self.config.is_leaf

    def capture(self, event: SyncEvent) -> int | None:
        """Queue an event if this node captures and the event is routed."""
        if not self.capturing or route_for(event.event_name) is None:
            return None
        try:
            return self.queue.enqueue(event)
        except Exception as exc:  # noqa: BLE001
            self.db.rollback()
            logger.error("Failed to queue %s event: %s", event.event_name, exc, exc_info=True)
            return None

"""Translation between leaf-local identifiers and hub identifiers.

No other component reads or writes :class:`IdentityMapping` rows directly.
The mapper only flushes; the caller owns the surrounding transaction.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from syncqueue.db.time import Clock, epoch_now
from syncqueue.models import IdentityMapping

logger = logging.getLogger(__name__)


class IdentityMapper:
    """Bidirectional id lookups for one node."""

    def __init__(self, db: Session, node_id: str, *, clock: Clock = epoch_now) -> None:
        if not node_id:
            raise ValueError("IdentityMapper requires a node id")
        self.db = db
        self.node_id = node_id
        self.clock = clock

    def get(self, table: str, local_id: int) -> IdentityMapping | None:
        return (
            self.db.query(IdentityMapping)
            .filter(
                IdentityMapping.node_id == self.node_id,
                IdentityMapping.table_name == table,
                IdentityMapping.local_id == local_id,
            )
            .one_or_none()
        )

    def _get_by_hub(self, table: str, hub_id: int) -> IdentityMapping | None:
        return (
            self.db.query(IdentityMapping)
            .filter(
                IdentityMapping.node_id == self.node_id,
                IdentityMapping.table_name == table,
                IdentityMapping.hub_id == hub_id,
            )
            .one_or_none()
        )

    def resolve(self, table: str, local_id: int) -> int | None:
        """Return the hub id mapped to a local object."""
        mapping = self.get(table, local_id)
        return mapping.hub_id if mapping else None

    def resolve_reverse(self, table: str, hub_id: int) -> int | None:
        """Return the local id mapped to a hub object."""
        mapping = self._get_by_hub(table, hub_id)
        return mapping.local_id if mapping else None

    def upsert(
        self,
        table: str,
        local_id: int,
        hub_id: int,
        content_hash: str | None = None,
    ) -> IdentityMapping:
        """Map a local object to a hub object, replacing any prior mapping.

        Remapping a local object to a new hub id overwrites its row. If the
        hub id was previously bound to a different local object, that stale
        row is removed so both directions stay one-to-one.
        """
        now = self.clock()

        other = self._get_by_hub(table, hub_id)
        if other is not None and other.local_id != local_id:
            logger.info(
                "Rebinding %s hub id %d from local %d to local %d",
                table,
                hub_id,
                other.local_id,
                local_id,
            )
            self.db.delete(other)
            self.db.flush()

        mapping = self.get(table, local_id)
        if mapping is None:
            mapping = IdentityMapping(
                node_id=self.node_id,
                table_name=table,
                local_id=local_id,
                hub_id=hub_id,
                hub_content_hash=content_hash,
                time_created=now,
                time_modified=now,
            )
            self.db.add(mapping)
        else:
            if mapping.hub_id != hub_id or content_hash is not None:
                mapping.hub_content_hash = content_hash
            mapping.hub_id = hub_id
            mapping.time_modified = now
        self.db.flush()
        return mapping

    def delete(self, table: str, local_id: int) -> bool:
        """Remove the mapping for a local object. Missing mappings are not an error."""
        mapping = self.get(table, local_id)
        if mapping is None:
            return False
        self.db.delete(mapping)
        self.db.flush()
        return True

    def is_stale(self, table: str, local_id: int, current_hash: str) -> bool:
        """Return True unless the recorded hash matches ``current_hash``.

        With no mapping or no recorded hash the object is treated as changed.
        """
        mapping = self.get(table, local_id)
        if mapping is None or mapping.hub_content_hash is None:
            return True
        return mapping.hub_content_hash != current_hash

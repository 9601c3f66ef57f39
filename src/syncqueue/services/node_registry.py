"""Hub-side registry of leaf nodes and their API keys."""

from __future__ import annotations

import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from syncqueue.core.security import generate_api_key, hash_key, verify_key
from syncqueue.core.settings import SyncConfig
from syncqueue.db.time import Clock, epoch_now
from syncqueue.models import NodeStatus, RegisteredNode

logger = logging.getLogger(__name__)


class NodeRegistry:
    """Registration, credential and bookkeeping operations for leaf nodes."""

    def __init__(self, db: Session, config: SyncConfig, *, clock: Clock = epoch_now) -> None:
        self.db = db
        self.config = config
        self.clock = clock

    def get(self, node_id: str) -> RegisteredNode | None:
        return self.db.get(RegisteredNode, node_id)

    def register(
        self,
        node_id: str,
        display_name: str,
        *,
        contact_email: str | None = None,
        description: str | None = None,
        status: str = NodeStatus.ACTIVE,
    ) -> tuple[RegisteredNode, str]:
        """Create a node and return it with its cleartext API key.

        The key is returned exactly once; only its hash is stored.

        Raises:
            ValueError: If the node id is empty or already registered, or the
                status is not a known node status.
        """
        if not node_id:
            raise ValueError("Node id is required")
        if self.get(node_id) is not None:
            raise ValueError(f"Node {node_id} is already registered")
        status = self._validate_status(status)

        api_key = generate_api_key()
        now = self.clock()
        node = RegisteredNode(
            node_id=node_id,
            display_name=display_name or node_id,
            contact_email=contact_email,
            description=description,
            api_key_hash=hash_key(api_key),
            status=status,
            last_sync_item_count=0,
            total_synced_count=0,
            time_created=now,
            time_modified=now,
        )
        self.db.add(node)
        self.db.commit()
        logger.info("Registered node %s", node_id)
        return node, api_key

    def authenticate(self, node_id: str | None, api_key: str | None) -> RegisteredNode | None:
        """Return the node when the key matches its stored hash, whatever its status."""
        if not node_id or not api_key:
            return None
        node = self.get(node_id)
        if node is None or not verify_key(api_key, node.api_key_hash):
            return None
        return node

    def rotate_key(self, node_id: str) -> str:
        """Issue a new API key, invalidating the previous one."""
        node = self._require(node_id)
        api_key = generate_api_key()
        node.api_key_hash = hash_key(api_key)
        node.time_modified = self.clock()
        self.db.commit()
        logger.info("Rotated API key for node %s", node_id)
        return api_key

    def set_status(self, node_id: str, status: str) -> RegisteredNode:
        node = self._require(node_id)
        node.status = self._validate_status(status)
        node.time_modified = self.clock()
        self.db.commit()
        return node

    def update_sync_stats(self, node_id: str, item_count: int) -> None:
        """Record a completed exchange with a node."""
        node = self._require(node_id)
        now = self.clock()
        node.last_synced_at = now
        node.last_sync_item_count = item_count
        node.total_synced_count = (node.total_synced_count or 0) + item_count
        node.time_modified = now
        self.db.commit()

    def delete(self, node_id: str) -> bool:
        node = self.get(node_id)
        if node is None:
            return False
        self.db.delete(node)
        self.db.commit()
        return True

    def list_nodes(self, status: str | None = None) -> list[RegisteredNode]:
        query = self.db.query(RegisteredNode)
        if status is not None:
            query = query.filter(RegisteredNode.status == self._validate_status(status))
        return query.order_by(RegisteredNode.display_name.asc()).all()

    def overdue(self, threshold_seconds: int | None = None) -> list[RegisteredNode]:
        """Active nodes that have never synced or not within the threshold."""
        threshold = threshold_seconds
        if threshold is None:
            threshold = self.config.overdue_threshold_seconds
        cutoff = self.clock() - threshold
        return (
            self.db.query(RegisteredNode)
            .filter(
                RegisteredNode.status == NodeStatus.ACTIVE.value,
                or_(
                    RegisteredNode.last_synced_at.is_(None),
                    RegisteredNode.last_synced_at < cutoff,
                ),
            )
            .order_by(RegisteredNode.node_id.asc())
            .all()
        )

    def active_node_ids(self) -> list[str]:
        rows = (
            self.db.query(RegisteredNode.node_id)
            .filter(RegisteredNode.status == NodeStatus.ACTIVE.value)
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def _validate_status(status: str) -> str:
        try:
            return NodeStatus(status).value
        except ValueError:
            raise ValueError(f"Invalid node status: {status}") from None

    def _require(self, node_id: str) -> RegisteredNode:
        node = self.get(node_id)
        if node is None:
            raise LookupError(f"Node {node_id} is not registered")
        return node

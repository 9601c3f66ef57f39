# src/syncqueue/services/__init__.py
"""Sync engine services."""

from .distribution import DistributionManager
from .hub_applier import ApplyResult, ApplyStatus, HubApplier
from .id_mapper import IdentityMapper
from .inbox import LeafInbox
from .leaf_applier import BatchSummary, LeafApplier
from .node_registry import NodeRegistry
from .observer import EventObserver
from .queue_manager import QueueManager
from .sync_client import SyncClient
from .sync_log import SyncLog
from .sync_runner import PassResult, SyncRunner

__all__ = [
    "DistributionManager",
    "ApplyResult", "ApplyStatus", "HubApplier",
    "IdentityMapper",
    "LeafInbox",
    "BatchSummary", "LeafApplier",
    "NodeRegistry",
    "EventObserver",
    "QueueManager",
    "SyncClient",
    "SyncLog",
    "PassResult", "SyncRunner",
]

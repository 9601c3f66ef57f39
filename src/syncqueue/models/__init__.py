"""SQLAlchemy models for the syncqueue engine."""

from .distribution import DeliveryRecord, DistributionUpdate, UpdateAction
from .identity import IdentityMapping
from .lms import ActivityRecord, Course, Enrolment, Grade, GradeItem, User
from .node import NodeStatus, RegisteredNode
from .queue import QueueFile, QueueItem, QueueStatus
from .sync_log import SyncLogEntry
from .sync_state import InboundUpdate, SyncState

__all__ = [
    "DeliveryRecord", "DistributionUpdate", "UpdateAction",
    "IdentityMapping",
    "ActivityRecord", "Course", "Enrolment", "Grade", "GradeItem", "User",
    "NodeStatus", "RegisteredNode",
    "QueueFile", "QueueItem", "QueueStatus",
    "SyncLogEntry",
    "InboundUpdate", "SyncState",
]

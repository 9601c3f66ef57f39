"""Hub-originated updates fanned out to leaf nodes.

Updates are either targeted at one node or broadcast (``target_node`` is
NULL). A :class:`DeliveryRecord` is written the moment an update is handed
to a node, so a node never receives the same update twice.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import exists, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from syncqueue.core.settings import MAX_DOWNLOAD_LIMIT, SyncConfig
from syncqueue.db.time import DAY_SECONDS, Clock, epoch_now
from syncqueue.models import (
    Course,
    DeliveryRecord,
    DistributionUpdate,
    Enrolment,
    NodeStatus,
    RegisteredNode,
    UpdateAction,
    User,
)
from syncqueue.models.distribution import DELIVERY_STATUS_DOWNLOADED
from syncqueue.models.lms import TABLE_COURSE, TABLE_ENROLMENT, TABLE_USER
from syncqueue.services.events import DEFAULT_PRIORITY, UpdateType

logger = logging.getLogger(__name__)

COURSE_PRIORITY = 2
USER_PRIORITY = 3
ENROLMENT_PRIORITY = 3


def course_payload(course: Course) -> dict[str, Any]:
    return {
        "id": course.id,
        "fullname": course.fullname,
        "shortname": course.shortname,
        "idnumber": course.idnumber,
        "summary": course.summary,
        "category": course.category,
        "format": course.format,
        "visible": course.visible,
        "start_date": course.start_date,
        "end_date": course.end_date,
    }


def user_payload(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "idnumber": user.idnumber,
        "firstname": user.firstname,
        "lastname": user.lastname,
        "auth": user.auth,
        "suspended": user.suspended,
    }


class DistributionManager:
    """Publishes hub changes and tracks which node has received which."""

    def __init__(self, db: Session, config: SyncConfig, *, clock: Clock = epoch_now) -> None:
        self.db = db
        self.config = config
        self.clock = clock

    def publish(
        self,
        target_node: str | None,
        update_type: UpdateType,
        action: UpdateAction,
        payload: Mapping[str, Any],
        priority: int = DEFAULT_PRIORITY,
        *,
        object_table: str | None = None,
        object_id: int | None = None,
    ) -> DistributionUpdate:
        """Record one update for a node, or for every node when target is None."""
        update = DistributionUpdate(
            target_node=target_node,
            update_type=UpdateType(update_type).value,
            action=UpdateAction(action).value,
            object_table=object_table,
            object_id=object_id,
            payload=dict(payload),
            priority=priority,
            time_created=self.clock(),
        )
        self.db.add(update)
        self.db.commit()
        logger.debug(
            "Published %s %s update %d for %s",
            update.update_type,
            update.action,
            update.id,
            target_node or "all nodes",
        )
        return update

    def publish_course(
        self,
        course: Course,
        target_node: str | None = None,
        action: UpdateAction = UpdateAction.UPDATE,
    ) -> DistributionUpdate:
        return self.publish(
            target_node,
            UpdateType.COURSE,
            action,
            course_payload(course),
            COURSE_PRIORITY,
            object_table=TABLE_COURSE,
            object_id=course.id,
        )

    def publish_user(
        self,
        user: User,
        target_node: str | None = None,
        action: UpdateAction = UpdateAction.UPDATE,
    ) -> DistributionUpdate:
        return self.publish(
            target_node,
            UpdateType.USER,
            action,
            user_payload(user),
            USER_PRIORITY,
            object_table=TABLE_USER,
            object_id=user.id,
        )

    def publish_enrolment(
        self,
        enrolment: Enrolment,
        target_node: str | None = None,
        action: UpdateAction = UpdateAction.CREATE,
    ) -> DistributionUpdate:
        """Publish an enrolment with the natural keys of its user and course."""
        user = self.db.get(User, enrolment.user_id)
        course = self.db.get(Course, enrolment.course_id)
        payload = {
            "id": enrolment.id,
            "user_id": enrolment.user_id,
            "course_id": enrolment.course_id,
            "user": user_payload(user) if user else None,
            "course": course_payload(course) if course else None,
            "status": enrolment.status,
            "time_start": enrolment.time_start,
            "time_end": enrolment.time_end,
        }
        return self.publish(
            target_node,
            UpdateType.ENROLMENT,
            action,
            payload,
            ENROLMENT_PRIORITY,
            object_table=TABLE_ENROLMENT,
            object_id=enrolment.id,
        )

    def pending_for(
        self,
        node_id: str,
        since: int = 0,
        limit: int | None = None,
    ) -> list[DistributionUpdate]:
        """Undelivered updates for a node created after ``since``."""
        limit = min(max(1, limit or self.config.download_limit), MAX_DOWNLOAD_LIMIT)
        delivered = exists().where(
            DeliveryRecord.update_id == DistributionUpdate.id,
            DeliveryRecord.node_id == node_id,
        )
        return (
            self.db.query(DistributionUpdate)
            .filter(
                or_(
                    DistributionUpdate.target_node.is_(None),
                    DistributionUpdate.target_node == node_id,
                ),
                ~delivered,
                DistributionUpdate.time_created > since,
            )
            .order_by(
                DistributionUpdate.priority.asc(),
                DistributionUpdate.time_created.asc(),
                DistributionUpdate.id.asc(),
            )
            .limit(limit)
            .all()
        )

    def acknowledge(self, node_id: str, update_id: int) -> bool:
        """Record delivery of one update. Returns False if it was already recorded."""
        created = self._record_delivery(node_id, update_id)
        self.db.commit()
        return created

    def acknowledge_many(self, node_id: str, update_ids: Iterable[int]) -> int:
        created = sum(1 for update_id in update_ids if self._record_delivery(node_id, update_id))
        self.db.commit()
        return created

    def deliver(
        self,
        node_id: str,
        since: int = 0,
        limit: int | None = None,
    ) -> list[DistributionUpdate]:
        """Return pending updates and mark every returned one as delivered."""
        updates = self.pending_for(node_id, since, limit)
        self.acknowledge_many(node_id, [update.id for update in updates])
        return updates

    def is_delivered(self, node_id: str, update_id: int) -> bool:
        return (
            self.db.query(DeliveryRecord.id)
            .filter(DeliveryRecord.node_id == node_id, DeliveryRecord.update_id == update_id)
            .first()
            is not None
        )

    def cleanup(self, retention_days: int | None = None) -> int:
        """Delete old updates once every active recipient has received them.

        A broadcast update waits for every active node; a targeted update
        waits for its target while that node is active.
        """
        days = self.config.update_retention_days if retention_days is None else retention_days
        cutoff = self.clock() - days * DAY_SECONDS
        old_updates = (
            self.db.query(DistributionUpdate)
            .filter(DistributionUpdate.time_created < cutoff)
            .all()
        )
        if not old_updates:
            return 0

        active = {
            row[0]
            for row in self.db.query(RegisteredNode.node_id)
            .filter(RegisteredNode.status == NodeStatus.ACTIVE.value)
            .all()
        }
        delivered: dict[int, set[str]] = defaultdict(set)
        rows = (
            self.db.query(DeliveryRecord.update_id, DeliveryRecord.node_id)
            .filter(DeliveryRecord.update_id.in_([update.id for update in old_updates]))
            .all()
        )
        for update_id, node_id in rows:
            delivered[update_id].add(node_id)

        removable = []
        for update in old_updates:
            if update.target_node is None:
                recipients = active
            else:
                recipients = {update.target_node} & active
            if recipients <= delivered[update.id]:
                removable.append(update.id)

        if removable:
            self.db.query(DeliveryRecord).filter(
                DeliveryRecord.update_id.in_(removable)
            ).delete(synchronize_session=False)
            self.db.query(DistributionUpdate).filter(
                DistributionUpdate.id.in_(removable)
            ).delete(synchronize_session=False)
        self.db.commit()
        if removable:
            logger.info("Removed %d fully delivered update(s)", len(removable))
        return len(removable)

    def _record_delivery(self, node_id: str, update_id: int) -> bool:
        if self.is_delivered(node_id, update_id):
            return False
        try:
            with self.db.begin_nested():
                self.db.add(
                    DeliveryRecord(
                        node_id=node_id,
                        update_id=update_id,
                        status=DELIVERY_STATUS_DOWNLOADED,
                        time_delivered=self.clock(),
                    )
                )
        except IntegrityError:
            return False
        return True

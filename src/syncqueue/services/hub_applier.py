"""Hub-side application of uploaded leaf events.

Each uploaded item is applied independently and yields an
:class:`ApplyResult`. References to users and courses are resolved from the
natural keys captured with the event; existing targets follow
last-write-wins on the hub row's ``time_modified`` against the event's
origin ``time_created``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from syncqueue.core.settings import SyncConfig
from syncqueue.db.time import Clock, epoch_now
from syncqueue.models import ActivityRecord, Course, Enrolment, Grade, GradeItem, User
from syncqueue.models.lms import ENROLMENT_ACTIVE, TABLE_ENROLMENT, TABLE_GRADE, TABLE_USER
from syncqueue.services.events import (
    EVENT_OBJECT_TABLES,
    EventType,
    UnknownType,
    ensure_exhaustive,
    parse_event_type,
)
from syncqueue.services.id_mapper import IdentityMapper

logger = logging.getLogger(__name__)


class ApplyStatus(str, Enum):
    """Per-item outcome reported back to the uploading leaf."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying one uploaded item."""

    item_id: int
    status: ApplyStatus
    message: str = ""
    hub_id: int | None = None

    @classmethod
    def success(cls, item_id: int, hub_id: int | None, message: str = "Applied") -> ApplyResult:
        return cls(item_id, ApplyStatus.SUCCESS, message, hub_id)

    @classmethod
    def conflict(cls, item_id: int, hub_id: int | None, message: str) -> ApplyResult:
        return cls(item_id, ApplyStatus.CONFLICT, message, hub_id)

    @classmethod
    def error(cls, item_id: int, message: str) -> ApplyResult:
        return cls(item_id, ApplyStatus.ERROR, message, None)


@dataclass(frozen=True)
class IncomingEvent:
    """One queue item as received from a leaf."""

    item_id: int
    event_type: str
    event_name: str
    object_table: str | None
    object_id: int | None
    payload: Mapping[str, Any] = field(default_factory=dict)
    time_created: int = 0

    @property
    def event(self) -> Mapping[str, Any]:
        return self.payload.get("event") or {}

    @property
    def context(self) -> Mapping[str, Any]:
        return self.payload.get("context") or {}

    @property
    def origin_time(self) -> int:
        """When the event happened on the leaf."""
        return int(self.event.get("time_created") or self.time_created or 0)

    @property
    def snapshot(self) -> Mapping[str, Any]:
        return self.context.get("object") or {}


def find_user(db: Session, keys: Mapping[str, Any] | None) -> User | None:
    """Locate a hub user from natural keys.

    Tries idnumber, then email, then username; the first non-empty key that
    matches wins.
    """
    if not keys:
        return None
    for column in (User.idnumber, User.email, User.username):
        value = keys.get(column.key)
        if not value:
            continue
        user = (
            db.query(User)
            .filter(column == value, User.deleted.is_(False))
            .order_by(User.id.asc())
            .first()
        )
        if user is not None:
            return user
    return None


def find_course(db: Session, keys: Mapping[str, Any] | None) -> Course | None:
    """Locate a hub course by idnumber, then shortname."""
    if not keys:
        return None
    for column in (Course.idnumber, Course.shortname):
        value = keys.get(column.key)
        if not value:
            continue
        course = db.query(Course).filter(column == value).order_by(Course.id.asc()).first()
        if course is not None:
            return course
    return None


class HubApplier:
    """Applies uploaded events from one node to hub state.

    Handlers flush but never commit; :meth:`apply_batch` isolates each item
    in a savepoint and the caller commits the batch.
    """

    def __init__(
        self,
        db: Session,
        config: SyncConfig,
        node_id: str,
        *,
        clock: Clock = epoch_now,
    ) -> None:
        self.db = db
        self.config = config
        self.node_id = node_id
        self.clock = clock
        self.mapper = IdentityMapper(db, node_id, clock=clock)

    def apply(self, item: IncomingEvent) -> ApplyResult:
        """Dispatch one item to the handler for its event type."""
        event_type = parse_event_type(item.event_type)
        if isinstance(event_type, UnknownType):
            return ApplyResult.error(item.item_id, f"Unknown event type: {event_type.tag}")
        handler = _HANDLERS[event_type]
        return handler(self, item)

    def apply_batch(self, items: Iterable[IncomingEvent]) -> list[ApplyResult]:
        """Apply items in order; a failing item never aborts the others."""
        results: list[ApplyResult] = []
        for item in items:
            try:
                with self.db.begin_nested():
                    result = self.apply(item)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Failed to apply item %s from node %s: %s",
                    item.item_id,
                    self.node_id,
                    exc,
                    exc_info=True,
                )
                result = ApplyResult.error(item.item_id, f"Processing failed: {exc}")
            results.append(result)
        return results

    def _newer_on_hub(self, hub_time: int | None, item: IncomingEvent) -> bool:
        return (hub_time or 0) > item.origin_time

    def _conflict(self, item: IncomingEvent, hub_id: int, hub_time: int) -> ApplyResult:
        return ApplyResult.conflict(
            item.item_id,
            hub_id,
            f"Hub record modified at {hub_time} is newer than event at {item.origin_time}",
        )

    def _resolve_user(self, item: IncomingEvent) -> User | None:
        return find_user(self.db, item.context.get("user"))

    def _resolve_course(self, item: IncomingEvent) -> Course | None:
        return find_course(self.db, item.context.get("course"))

    def _find_grade_item(self, course: Course, keys: Mapping[str, Any]) -> GradeItem | None:
        idnumber = keys.get("idnumber")
        if idnumber:
            grade_item = (
                self.db.query(GradeItem)
                .filter(GradeItem.course_id == course.id, GradeItem.idnumber == idnumber)
                .first()
            )
            if grade_item is not None:
                return grade_item
        itemname = keys.get("itemname")
        if itemname:
            return (
                self.db.query(GradeItem)
                .filter(GradeItem.course_id == course.id, GradeItem.itemname == itemname)
                .first()
            )
        return None

    def _apply_grade(self, item: IncomingEvent) -> ApplyResult:
        user = self._resolve_user(item)
        if user is None:
            return ApplyResult.error(item.item_id, "User not found on hub")
        course = self._resolve_course(item)
        if course is None:
            return ApplyResult.error(item.item_id, "Course not found on hub")

        snapshot = item.snapshot
        grade_item = self._find_grade_item(course, snapshot.get("item") or {})
        if grade_item is None:
            return ApplyResult.error(item.item_id, "Grade item not found on hub")

        now = self.clock()
        grade = (
            self.db.query(Grade)
            .filter(Grade.item_id == grade_item.id, Grade.user_id == user.id)
            .with_for_update()
            .one_or_none()
        )
        if grade is not None:
            if self._newer_on_hub(grade.time_modified, item):
                return self._conflict(item, grade.id, grade.time_modified)
            grade.rawgrade = snapshot.get("rawgrade")
            grade.finalgrade = snapshot.get("finalgrade")
            grade.feedback = snapshot.get("feedback")
            grade.time_modified = now
            self.db.flush()
            if item.object_id:
                self.mapper.upsert(TABLE_GRADE, item.object_id, grade.id)
            return ApplyResult.success(item.item_id, grade.id, "Grade updated")

        grade = Grade(
            item_id=grade_item.id,
            user_id=user.id,
            rawgrade=snapshot.get("rawgrade"),
            finalgrade=snapshot.get("finalgrade"),
            feedback=snapshot.get("feedback"),
            time_created=now,
            time_modified=now,
        )
        self.db.add(grade)
        self.db.flush()
        if item.object_id:
            self.mapper.upsert(TABLE_GRADE, item.object_id, grade.id)
        return ApplyResult.success(item.item_id, grade.id, "Grade created")

    def _apply_user(self, item: IncomingEvent) -> ApplyResult:
        keys = item.snapshot or item.context.get("user") or {}
        if not keys.get("username"):
            return ApplyResult.error(item.item_id, "User payload has no username")

        now = self.clock()
        user = find_user(self.db, keys)
        if user is not None:
            user = self.db.query(User).filter(User.id == user.id).with_for_update().one()
            if self._newer_on_hub(user.time_modified, item):
                return self._conflict(item, user.id, user.time_modified)
            for attr in ("firstname", "lastname", "email", "idnumber"):
                if keys.get(attr) is not None:
                    setattr(user, attr, keys[attr])
            if "suspended" in keys:
                user.suspended = bool(keys["suspended"])
            user.time_modified = now
            message = "User updated"
        else:
            user = User(
                username=keys["username"],
                email=keys.get("email"),
                idnumber=keys.get("idnumber"),
                firstname=keys.get("firstname") or "",
                lastname=keys.get("lastname") or "",
                suspended=bool(keys.get("suspended", False)),
                time_created=now,
                time_modified=now,
            )
            self.db.add(user)
            message = "User created"
        self.db.flush()
        if item.object_id:
            self.mapper.upsert(TABLE_USER, item.object_id, user.id)
        return ApplyResult.success(item.item_id, user.id, message)

    def _apply_enrolment(self, item: IncomingEvent) -> ApplyResult:
        user = self._resolve_user(item)
        if user is None:
            return ApplyResult.error(item.item_id, "User not found on hub")
        course = self._resolve_course(item)
        if course is None:
            return ApplyResult.error(item.item_id, "Course not found on hub")

        enrolment = (
            self.db.query(Enrolment)
            .filter(Enrolment.user_id == user.id, Enrolment.course_id == course.id)
            .with_for_update()
            .one_or_none()
        )

        if item.event_name.endswith("_deleted"):
            if enrolment is None:
                return ApplyResult.success(item.item_id, None, "Enrolment already absent")
            if self._newer_on_hub(enrolment.time_modified, item):
                return self._conflict(item, enrolment.id, enrolment.time_modified)
            hub_id = enrolment.id
            self.db.delete(enrolment)
            if item.object_id:
                self.mapper.delete(TABLE_ENROLMENT, item.object_id)
            self.db.flush()
            return ApplyResult.success(item.item_id, hub_id, "Enrolment removed")

        snapshot = item.snapshot
        now = self.clock()
        if enrolment is not None:
            if self._newer_on_hub(enrolment.time_modified, item):
                return self._conflict(item, enrolment.id, enrolment.time_modified)
            message = "Enrolment updated"
        else:
            enrolment = Enrolment(user_id=user.id, course_id=course.id, time_created=now)
            self.db.add(enrolment)
            message = "Enrolment created"
        enrolment.method = snapshot.get("method") or enrolment.method or "manual"
        enrolment.status = int(snapshot.get("status", ENROLMENT_ACTIVE))
        enrolment.time_start = int(snapshot.get("time_start") or 0)
        enrolment.time_end = int(snapshot.get("time_end") or 0)
        enrolment.time_modified = now
        self.db.flush()
        if item.object_id:
            self.mapper.upsert(TABLE_ENROLMENT, item.object_id, enrolment.id)
        return ApplyResult.success(item.item_id, enrolment.id, message)

    def _apply_activity(self, item: IncomingEvent) -> ApplyResult:
        """Store submissions, attempts, posts and completions as activity records."""
        user = self._resolve_user(item)
        if user is None:
            return ApplyResult.error(item.item_id, "User not found on hub")
        course = None
        if item.context.get("course"):
            course = self._resolve_course(item)
            if course is None:
                return ApplyResult.error(item.item_id, "Course not found on hub")

        event_type = EventType(item.event_type)
        object_table = item.object_table or EVENT_OBJECT_TABLES[event_type]
        now = self.clock()
        data = {"event_name": item.event_name, "object": dict(item.snapshot)}

        record = None
        if item.object_id:
            hub_id = self.mapper.resolve(object_table, item.object_id)
            if hub_id is not None:
                record = (
                    self.db.query(ActivityRecord)
                    .filter(ActivityRecord.id == hub_id)
                    .with_for_update()
                    .one_or_none()
                )

        if record is not None:
            if self._newer_on_hub(record.time_modified, item):
                return self._conflict(item, record.id, record.time_modified)
            record.data = data
            record.user_id = user.id
            record.course_id = course.id if course else None
            record.time_modified = now
            message = "Activity updated"
        else:
            record = ActivityRecord(
                node_id=self.node_id,
                event_type=event_type.value,
                object_table=object_table,
                user_id=user.id,
                course_id=course.id if course else None,
                data=data,
                time_created=now,
                time_modified=now,
            )
            self.db.add(record)
            message = "Activity recorded"
        self.db.flush()
        if item.object_id:
            self.mapper.upsert(object_table, item.object_id, record.id)
        return ApplyResult.success(item.item_id, record.id, message)


_HANDLERS: dict[EventType, Callable[[HubApplier, IncomingEvent], ApplyResult]] = {
    EventType.GRADE: HubApplier._apply_grade,
    EventType.USER: HubApplier._apply_user,
    EventType.ENROL: HubApplier._apply_enrolment,
    EventType.SUBMISSION: HubApplier._apply_activity,
    EventType.QUIZ: HubApplier._apply_activity,
    EventType.FORUM: HubApplier._apply_activity,
    EventType.COMPLETION: HubApplier._apply_activity,
}

ensure_exhaustive(_HANDLERS, EventType, "HubApplier")

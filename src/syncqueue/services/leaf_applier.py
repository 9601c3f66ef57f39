"""Leaf-side application of updates downloaded from the hub."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from syncqueue.core.settings import SyncConfig
from syncqueue.db.time import Clock, epoch_now
from syncqueue.models import Course, Enrolment, UpdateAction, User
from syncqueue.models.lms import (
    ENROLMENT_ACTIVE,
    TABLE_COURSE,
    TABLE_ENROLMENT,
    TABLE_USER,
)
from syncqueue.services.events import (
    DEFAULT_PRIORITY,
    UnknownType,
    UpdateType,
    ensure_exhaustive,
    parse_update_type,
)
from syncqueue.services.id_mapper import IdentityMapper
from syncqueue.services.queue_manager import payload_digest

logger = logging.getLogger(__name__)

SHORTNAME_MAX_LENGTH = 255


@dataclass(frozen=True)
class IncomingUpdate:
    """One hub update as seen by the leaf."""

    id: int
    type: str
    action: str
    timestamp: int = 0
    data: Mapping[str, Any] = field(default_factory=dict)
    priority: int = DEFAULT_PRIORITY


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class BatchSummary:
    """Aggregate counts for a batch of downloaded updates."""

    success: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: ApplyOutcome) -> None:
        if outcome is ApplyOutcome.APPLIED:
            self.success += 1
        elif outcome is ApplyOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    @property
    def total(self) -> int:
        return self.success + self.failed + self.skipped


# Receives the session and the update; returns True once the content is in place.
ContentHandler = Callable[[Session, IncomingUpdate], bool]


class LeafApplier:
    """Applies hub updates to local state and extends identity mappings.

    ``apply`` returns True when the update is in effect locally and False
    when it had to be skipped (missing prerequisites, unsupported type).
    """

    def __init__(
        self,
        db: Session,
        config: SyncConfig,
        *,
        content_handler: ContentHandler | None = None,
        clock: Clock = epoch_now,
    ) -> None:
        if not config.node_id:
            raise ValueError("LeafApplier requires a configured node id")
        self.db = db
        self.config = config
        self.clock = clock
        self.content_handler = content_handler
        self.mapper = IdentityMapper(db, config.node_id, clock=clock)

    def apply(self, update: IncomingUpdate) -> bool:
        update_type = parse_update_type(update.type)
        if isinstance(update_type, UnknownType):
            logger.warning("Skipping update %s of unknown type %s", update.id, update_type.tag)
            return False
        try:
            UpdateAction(update.action)
        except ValueError:
            logger.warning("Skipping update %s with unknown action %s", update.id, update.action)
            return False
        return _HANDLERS[update_type](self, update)

    def apply_one(self, update: IncomingUpdate) -> tuple[ApplyOutcome, str | None]:
        """Apply inside a savepoint, turning any exception into a FAILED outcome."""
        try:
            with self.db.begin_nested():
                applied = self.apply(update)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to apply hub update %s: %s", update.id, exc, exc_info=True)
            return ApplyOutcome.FAILED, str(exc)
        return (ApplyOutcome.APPLIED if applied else ApplyOutcome.SKIPPED), None

    def process_batch(self, updates: Iterable[IncomingUpdate]) -> BatchSummary:
        summary = BatchSummary()
        for update in updates:
            outcome, _ = self.apply_one(update)
            summary.record(outcome)
        self.db.commit()
        return summary

    def ensure_unique_shortname(self, shortname: str, exclude_id: int | None = None) -> str:
        """Return ``shortname`` or the first free ``shortname_N`` variant."""
        base = (shortname or "course")[:SHORTNAME_MAX_LENGTH]
        candidate = base
        counter = 1
        while True:
            query = self.db.query(Course.id).filter(Course.shortname == candidate)
            if exclude_id is not None:
                query = query.filter(Course.id != exclude_id)
            if query.first() is None:
                return candidate
            suffix = f"_{counter}"
            candidate = f"{base[: SHORTNAME_MAX_LENGTH - len(suffix)]}{suffix}"
            counter += 1

    @staticmethod
    def _hub_id(update: IncomingUpdate) -> int | None:
        value = update.data.get("id")
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    def _apply_course(self, update: IncomingUpdate) -> bool:
        hub_id = self._hub_id(update)
        if hub_id is None:
            logger.warning("Course update %s has no hub id", update.id)
            return False
        data = update.data
        local_id = self.mapper.resolve_reverse(TABLE_COURSE, hub_id)
        course = self.db.get(Course, local_id) if local_id is not None else None

        if update.action == UpdateAction.DELETE:
            if course is not None:
                self.db.delete(course)
            if local_id is not None:
                self.mapper.delete(TABLE_COURSE, local_id)
            self.db.flush()
            return True

        content_hash = payload_digest(data)
        if course is not None and not self.mapper.is_stale(TABLE_COURSE, course.id, content_hash):
            logger.debug("Course %d unchanged since last sync", course.id)
            return True

        now = self.clock()
        if course is None:
            course = Course(
                fullname=data.get("fullname") or data.get("shortname") or f"Course {hub_id}",
                shortname=self.ensure_unique_shortname(data.get("shortname") or f"course_{hub_id}"),
                idnumber=data.get("idnumber") or f"central_{hub_id}",
                time_created=now,
            )
            self.db.add(course)
        else:
            if data.get("fullname"):
                course.fullname = data["fullname"]
            if data.get("shortname"):
                course.shortname = self.ensure_unique_shortname(data["shortname"], course.id)
            if data.get("idnumber"):
                course.idnumber = data["idnumber"]
        course.summary = data.get("summary", course.summary)
        course.format = data.get("format") or course.format or "topics"
        course.visible = bool(data.get("visible", True))
        course.start_date = int(data.get("start_date") or 0)
        course.end_date = int(data.get("end_date") or 0)
        course.time_modified = now
        self.db.flush()
        self.mapper.upsert(TABLE_COURSE, course.id, hub_id, content_hash)
        return True

    def _find_local_user(self, data: Mapping[str, Any]) -> User | None:
        for column in (User.email, User.username):
            value = data.get(column.key)
            if value:
                user = self.db.query(User).filter(column == value).order_by(User.id.asc()).first()
                if user is not None:
                    return user
        return None

    def _apply_user(self, update: IncomingUpdate) -> bool:
        hub_id = self._hub_id(update)
        if hub_id is None:
            logger.warning("User update %s has no hub id", update.id)
            return False
        data = update.data
        local_id = self.mapper.resolve_reverse(TABLE_USER, hub_id)
        user = self.db.get(User, local_id) if local_id is not None else None
        now = self.clock()

        if update.action == UpdateAction.DELETE:
            if user is not None:
                user.suspended = True
                user.deleted = True
                user.time_modified = now
            if local_id is not None:
                self.mapper.delete(TABLE_USER, local_id)
            self.db.flush()
            return True

        if user is None:
            user = self._find_local_user(data)
        if user is None:
            if not data.get("username"):
                logger.warning("User update %s has no username", update.id)
                return False
            user = User(username=data["username"], auth="manual", time_created=now)
            self.db.add(user)
        for attr in ("email", "idnumber", "firstname", "lastname"):
            if data.get(attr) is not None:
                setattr(user, attr, data[attr])
        user.suspended = bool(data.get("suspended", False))
        user.time_modified = now
        self.db.flush()
        self.mapper.upsert(TABLE_USER, user.id, hub_id, payload_digest(data))
        return True

    def _apply_enrolment(self, update: IncomingUpdate) -> bool:
        data = update.data
        hub_user = data.get("user_id")
        hub_course = data.get("course_id")
        user_id = self.mapper.resolve_reverse(TABLE_USER, int(hub_user)) if hub_user else None
        course_id = (
            self.mapper.resolve_reverse(TABLE_COURSE, int(hub_course)) if hub_course else None
        )
        if user_id is None or course_id is None:
            logger.info(
                "Deferring enrolment update %s until user and course are mapped", update.id
            )
            return False

        hub_id = self._hub_id(update)
        enrolment = (
            self.db.query(Enrolment)
            .filter(Enrolment.user_id == user_id, Enrolment.course_id == course_id)
            .one_or_none()
        )
        now = self.clock()

        if update.action == UpdateAction.DELETE:
            if enrolment is not None:
                self.mapper.delete(TABLE_ENROLMENT, enrolment.id)
                self.db.delete(enrolment)
            self.db.flush()
            return True

        if enrolment is None:
            enrolment = Enrolment(user_id=user_id, course_id=course_id, time_created=now)
            self.db.add(enrolment)
        enrolment.status = int(data.get("status", ENROLMENT_ACTIVE))
        enrolment.time_start = int(data.get("time_start") or 0)
        enrolment.time_end = int(data.get("time_end") or 0)
        enrolment.time_modified = now
        self.db.flush()
        if hub_id is not None:
            self.mapper.upsert(TABLE_ENROLMENT, enrolment.id, hub_id)
        return True

    def _apply_course_content(self, update: IncomingUpdate) -> bool:
        if self.content_handler is None:
            logger.info("No content handler configured; skipping update %s", update.id)
            return False
        return bool(self.content_handler(self.db, update))


_HANDLERS: dict[UpdateType, Callable[[LeafApplier, IncomingUpdate], bool]] = {
    UpdateType.COURSE: LeafApplier._apply_course,
    UpdateType.USER: LeafApplier._apply_user,
    UpdateType.ENROLMENT: LeafApplier._apply_enrolment,
    UpdateType.COURSE_CONTENT: LeafApplier._apply_course_content,
}

ensure_exhaustive(_HANDLERS, UpdateType, "LeafApplier")

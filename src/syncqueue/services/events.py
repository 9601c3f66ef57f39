"""Closed vocabularies for captured events and distributed updates.

Every tag that crosses the wire is parsed into either a known enum member or
an :class:`UnknownType` carrying the raw tag, so dispatch code handles the
unrecognized case explicitly instead of falling through a default branch.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from syncqueue.models.lms import TABLE_ENROLMENT, TABLE_GRADE, TABLE_USER

DEFAULT_PRIORITY = 5


class EventType(str, Enum):
    """Kinds of leaf events uploaded to the hub."""

    GRADE = "grade"
    SUBMISSION = "submission"
    QUIZ = "quiz"
    FORUM = "forum"
    ENROL = "enrol"
    COMPLETION = "completion"
    USER = "user"


class UpdateType(str, Enum):
    """Kinds of hub changes distributed to leaves."""

    COURSE = "course"
    USER = "user"
    ENROLMENT = "enrolment"
    COURSE_CONTENT = "course_content"


@dataclass(frozen=True)
class UnknownType:
    """A type tag that matched no known variant."""

    tag: str

    def __str__(self) -> str:
        return self.tag


def parse_event_type(tag: str) -> EventType | UnknownType:
    """Map a wire tag onto :class:`EventType`, or wrap it as unknown."""
    try:
        return EventType(tag)
    except ValueError:
        return UnknownType(tag)


def parse_update_type(tag: str) -> UpdateType | UnknownType:
    """Map a wire tag onto :class:`UpdateType`, or wrap it as unknown."""
    try:
        return UpdateType(tag)
    except ValueError:
        return UnknownType(tag)


def ensure_exhaustive(table: Mapping[Any, Any], variants: type[Enum], name: str) -> None:
    """Fail at import time when a dispatch table misses an enum member."""
    missing = [member.value for member in variants if member not in table]
    if missing:
        raise RuntimeError(f"{name} has no handler for: {', '.join(sorted(missing))}")


@dataclass(frozen=True)
class EventRoute:
    """Where a captured event goes in the outbound queue."""

    event_type: EventType
    priority: int


# Grades and quiz results go first, forum traffic last.
EVENT_ROUTES: dict[str, EventRoute] = {
    "user_graded": EventRoute(EventType.GRADE, 1),
    "submission_created": EventRoute(EventType.SUBMISSION, 2),
    "submission_updated": EventRoute(EventType.SUBMISSION, 2),
    "file_submission_created": EventRoute(EventType.SUBMISSION, 2),
    "file_submission_updated": EventRoute(EventType.SUBMISSION, 2),
    "quiz_attempt_submitted": EventRoute(EventType.QUIZ, 1),
    "forum_post_created": EventRoute(EventType.FORUM, 5),
    "forum_discussion_created": EventRoute(EventType.FORUM, 5),
    "user_enrolment_created": EventRoute(EventType.ENROL, 3),
    "user_enrolment_updated": EventRoute(EventType.ENROL, 3),
    "user_enrolment_deleted": EventRoute(EventType.ENROL, 3),
    "course_module_completion_updated": EventRoute(EventType.COMPLETION, 4),
    "course_completed": EventRoute(EventType.COMPLETION, 2),
    "user_created": EventRoute(EventType.USER, 3),
    "user_updated": EventRoute(EventType.USER, 4),
}

ensure_exhaustive(
    {route.event_type: route for route in EVENT_ROUTES.values()},
    EventType,
    "EVENT_ROUTES",
)

# Default object table for events whose source does not name one.
EVENT_OBJECT_TABLES: dict[EventType, str] = {
    EventType.GRADE: TABLE_GRADE,
    EventType.SUBMISSION: "assign_submission",
    EventType.QUIZ: "quiz_attempts",
    EventType.FORUM: "forum_posts",
    EventType.ENROL: TABLE_ENROLMENT,
    EventType.COMPLETION: "course_modules_completion",
    EventType.USER: TABLE_USER,
}

ensure_exhaustive(EVENT_OBJECT_TABLES, EventType, "EVENT_OBJECT_TABLES")


def route_for(event_name: str) -> EventRoute | None:
    """Return the queue route for an event name, or None if it is not synced."""
    return EVENT_ROUTES.get(event_name)


@dataclass(frozen=True)
class SyncEvent:
    """A domain event raised by the host platform on a leaf.

    ``snapshot`` lets the caller hand over the mutated object's fields for
    tables this engine does not read directly (submissions, attempts, posts).
    ``files`` carries metadata of attached files (``content_hash``,
    ``filename``, ``filesize``, ``mimetype``); it is recorded beside the
    queue item and kept out of the hashed payload.
    """

    event_name: str
    component: str = "core"
    action: str = ""
    target: str = ""
    object_table: str | None = None
    object_id: int | None = None
    related_user_id: int | None = None
    user_id: int | None = None
    course_id: int | None = None
    time_created: int = 0
    other: Mapping[str, Any] = field(default_factory=dict)
    snapshot: Mapping[str, Any] | None = None
    files: tuple[Mapping[str, Any], ...] = ()

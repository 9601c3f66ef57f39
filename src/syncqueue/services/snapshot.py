"""Denormalized context captured alongside queued events.

The hub has no live connection back to a leaf, so every queued payload
carries the natural keys of the user and course it refers to and a copy of
the mutated object's fields.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from syncqueue.models import Course, Enrolment, Grade, GradeItem, User
from syncqueue.models.lms import TABLE_ENROLMENT, TABLE_GRADE, TABLE_USER


def user_context(db: Session, user_id: int | None) -> dict[str, Any] | None:
    """Return the natural keys of a local user."""
    if not user_id:
        return None
    user = db.get(User, user_id)
    if user is None:
        return None
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "idnumber": user.idnumber,
        "firstname": user.firstname,
        "lastname": user.lastname,
    }


def course_context(db: Session, course_id: int | None) -> dict[str, Any] | None:
    """Return the natural keys of a local course."""
    if not course_id:
        return None
    course = db.get(Course, course_id)
    if course is None:
        return None
    return {
        "id": course.id,
        "shortname": course.shortname,
        "idnumber": course.idnumber,
        "fullname": course.fullname,
    }


def _grade_snapshot(db: Session, object_id: int) -> dict[str, Any] | None:
    grade = db.get(Grade, object_id)
    if grade is None:
        return None
    snapshot: dict[str, Any] = {
        "id": grade.id,
        "item_id": grade.item_id,
        "user_id": grade.user_id,
        "rawgrade": grade.rawgrade,
        "finalgrade": grade.finalgrade,
        "feedback": grade.feedback,
        "time_modified": grade.time_modified,
    }
    item = db.get(GradeItem, grade.item_id)
    if item is not None:
        snapshot["item"] = {
            "id": item.id,
            "course_id": item.course_id,
            "itemname": item.itemname,
            "idnumber": item.idnumber,
            "itemtype": item.itemtype,
            "itemmodule": item.itemmodule,
        }
    return snapshot


def _enrolment_snapshot(db: Session, object_id: int) -> dict[str, Any] | None:
    enrolment = db.get(Enrolment, object_id)
    if enrolment is None:
        return None
    return {
        "id": enrolment.id,
        "user_id": enrolment.user_id,
        "course_id": enrolment.course_id,
        "method": enrolment.method,
        "status": enrolment.status,
        "time_start": enrolment.time_start,
        "time_end": enrolment.time_end,
    }


def _user_snapshot(db: Session, object_id: int) -> dict[str, Any] | None:
    snapshot = user_context(db, object_id)
    if snapshot is None:
        return None
    user = db.get(User, object_id)
    snapshot.update(auth=user.auth, suspended=user.suspended, deleted=user.deleted)
    return snapshot


_SNAPSHOTTERS = {
    TABLE_GRADE: _grade_snapshot,
    TABLE_ENROLMENT: _enrolment_snapshot,
    TABLE_USER: _user_snapshot,
}


def object_snapshot(db: Session, table: str | None, object_id: int | None) -> dict[str, Any] | None:
    """Read the current fields of a local object, if this engine knows its table."""
    if not table or not object_id:
        return None
    snapshotter = _SNAPSHOTTERS.get(table)
    if snapshotter is None:
        return None
    return snapshotter(db, object_id)

"""Learning-platform tables that synchronized events read from and write to.

These mirror the subset of the host platform's schema the sync engine needs:
people, courses, gradebook rows and enrolments. The same tables exist on the
hub and on every leaf, each with its own independent primary keys.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Float,
    Index,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from syncqueue.db.session import Base
from syncqueue.db.types import IdType

# Logical table names used in queue items and identity mappings.
TABLE_USER = "user"
TABLE_COURSE = "course"
TABLE_GRADE = "grade_grades"
TABLE_ENROLMENT = "user_enrolments"

ENROLMENT_ACTIVE = 0
ENROLMENT_SUSPENDED = 1


class User(Base):
    """A person account."""

    __tablename__ = "lms_user"
    __table_args__ = (
        Index("ix_lms_user_email", "email"),
        Index("ix_lms_user_idnumber", "idnumber"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # External identifier shared across sites (student number, staff id).
    idnumber: Mapped[str | None] = mapped_column(String(255), nullable=True)
    firstname: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    lastname: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    auth: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    suspended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    time_modified: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class Course(Base):
    """A course shell."""

    __tablename__ = "lms_course"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    fullname: Mapped[str] = mapped_column(Text, nullable=False)
    shortname: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    idnumber: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)
    format: Mapped[str] = mapped_column(String(21), nullable=False, default="topics")
    visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    start_date: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    end_date: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    time_modified: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class GradeItem(Base):
    """A gradebook column inside a course."""

    __tablename__ = "lms_grade_item"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    itemname: Mapped[str | None] = mapped_column(Text, nullable=True)
    idnumber: Mapped[str | None] = mapped_column(String(100), nullable=True)
    itemtype: Mapped[str] = mapped_column(String(30), nullable=False, default="manual")
    itemmodule: Mapped[str | None] = mapped_column(String(30), nullable=True)
    grademax: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    grademin: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class Grade(Base):
    """One user's grade for one grade item."""

    __tablename__ = "lms_grade"
    __table_args__ = (
        UniqueConstraint("item_id", "user_id", name="uq_lms_grade_item_user"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rawgrade: Mapped[float | None] = mapped_column(Float, nullable=True)
    finalgrade: Mapped[float | None] = mapped_column(Float, nullable=True)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    time_modified: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class Enrolment(Base):
    """Membership of a user in a course."""

    __tablename__ = "lms_enrolment"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_lms_enrolment_user_course"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    course_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    status: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=ENROLMENT_ACTIVE)
    time_start: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    time_end: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    time_modified: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class ActivityRecord(Base):
    """Hub copy of leaf learner activity (submissions, attempts, posts, completions)."""

    __tablename__ = "lms_activity_record"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    node_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    object_table: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    course_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    time_created: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time_modified: Mapped[int] = mapped_column(BigInteger, nullable=False)

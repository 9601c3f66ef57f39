from __future__ import annotations

from typing import Any

import pytest

from syncqueue.models import ActivityRecord, Enrolment, Grade, IdentityMapping, User
from syncqueue.models.lms import ENROLMENT_SUSPENDED
from syncqueue.services.hub_applier import (
    ApplyStatus,
    HubApplier,
    IncomingEvent,
    find_course,
    find_user,
)
from syncqueue.services.id_mapper import IdentityMapper

NODE = "leaf-a"


def make_event(
    item_id: int,
    event_type: str,
    event_name: str,
    *,
    user: dict[str, Any] | None = None,
    course: dict[str, Any] | None = None,
    obj: dict[str, Any] | None = None,
    object_table: str | None = None,
    object_id: int | None = None,
    time_created: int = 100,
) -> IncomingEvent:
    payload = {
        "event": {"event_name": event_name, "time_created": time_created},
        "context": {"user": user, "course": course, "object": obj},
        "node": {"id": NODE},
    }
    return IncomingEvent(
        item_id=item_id,
        event_type=event_type,
        event_name=event_name,
        object_table=object_table,
        object_id=object_id,
        payload=payload,
        time_created=time_created,
    )


@pytest.fixture
def applier(db_session, hub_config, clock) -> HubApplier:
    return HubApplier(db_session, hub_config, NODE, clock=clock)


@pytest.fixture
def gradebook(db_session, lms):
    """Hub user, course and grade item matching the leaf's natural keys."""
    user = lms.user(db_session, "alice", idnumber="S-1")
    course = lms.course(db_session, "BIO101", idnumber="bio-101")
    item = lms.grade_item(db_session, course, itemname="Essay", idnumber="essay-1")
    return user, course, item


def grade_event(item_id: int, rawgrade: float, time_created: int) -> IncomingEvent:
    return make_event(
        item_id,
        "grade",
        "user_graded",
        user={"username": "alice", "idnumber": "S-1"},
        course={"shortname": "BIO101", "idnumber": "bio-101"},
        obj={"rawgrade": rawgrade, "finalgrade": rawgrade, "item": {"idnumber": "essay-1"}},
        object_table="grade_grades",
        object_id=77,
        time_created=time_created,
    )


def test_grade_last_write_wins(db_session, applier, gradebook, lms):
    user, _, item = gradebook
    grade = lms.grade(db_session, item, user, rawgrade=80.0, finalgrade=80.0, time_modified=100)

    older = applier.apply(grade_event(1, 70.0, time_created=90))
    db_session.refresh(grade)

    assert older.status is ApplyStatus.CONFLICT
    assert older.hub_id == grade.id
    assert grade.rawgrade == 80.0

    same_second = applier.apply(grade_event(2, 90.0, time_created=100))
    db_session.refresh(grade)

    assert same_second.status is ApplyStatus.SUCCESS
    assert same_second.hub_id == grade.id
    assert grade.rawgrade == 90.0
    assert IdentityMapper(db_session, NODE).resolve("grade_grades", 77) == grade.id


def test_grade_created_when_absent(db_session, applier, gradebook):
    result = applier.apply(grade_event(1, 65.0, time_created=100))

    assert result.status is ApplyStatus.SUCCESS
    grade = db_session.get(Grade, result.hub_id)
    assert grade.rawgrade == 65.0
    assert grade.user_id == gradebook[0].id


def test_grade_with_unknown_references_is_an_error(db_session, applier, lms):
    lms.course(db_session, "BIO101")

    result = applier.apply(grade_event(1, 50.0, time_created=100))

    assert result.status is ApplyStatus.ERROR
    assert "User not found" in result.message
    assert db_session.query(Grade).count() == 0


def test_find_user_prefers_idnumber_then_email_then_username(db_session, lms):
    by_idnumber = lms.user(db_session, "u1", idnumber="X-9", email="one@example.org")
    by_email = lms.user(db_session, "u2", email="shared@example.org")
    by_username = lms.user(db_session, "u3")

    assert find_user(db_session, {"idnumber": "X-9", "email": "shared@example.org"}) is by_idnumber
    assert find_user(db_session, {"idnumber": "nope", "email": "shared@example.org"}) is by_email
    assert find_user(db_session, {"email": "", "username": "u3"}) is by_username
    assert find_user(db_session, {"username": "ghost"}) is None
    assert find_user(db_session, None) is None


def test_find_user_skips_deleted_accounts(db_session, lms):
    lms.user(db_session, "gone", idnumber="S-2", deleted=True)
    live = lms.user(db_session, "live", email="gone@example.org")

    assert find_user(db_session, {"idnumber": "S-2", "email": "gone@example.org"}) is live


def test_find_course_prefers_idnumber(db_session, lms):
    first = lms.course(db_session, "A", idnumber="shared")
    second = lms.course(db_session, "B")

    assert find_course(db_session, {"idnumber": "shared", "shortname": "B"}) is first
    assert find_course(db_session, {"idnumber": "none", "shortname": "B"}) is second


def test_unknown_event_type_is_reported_not_raised(applier):
    result = applier.apply(make_event(9, "badge", "badge_awarded"))

    assert result.status is ApplyStatus.ERROR
    assert "badge" in result.message


def test_user_event_creates_then_updates(db_session, applier, clock):
    snapshot = {"username": "bob", "email": "bob@example.org", "firstname": "Bob"}
    created = applier.apply(
        make_event(1, "user", "user_created", obj=snapshot, object_table="user", object_id=12)
    )
    assert created.status is ApplyStatus.SUCCESS
    assert created.message == "User created"

    clock.advance(5)
    updated = applier.apply(
        make_event(
            2,
            "user",
            "user_updated",
            obj={**snapshot, "lastname": "Builder", "suspended": True},
            object_table="user",
            object_id=12,
            time_created=clock.now,
        )
    )

    user = db_session.get(User, created.hub_id)
    assert updated.status is ApplyStatus.SUCCESS
    assert updated.hub_id == created.hub_id
    assert user.lastname == "Builder"
    assert user.suspended is True


def test_user_event_without_username_is_an_error(applier):
    result = applier.apply(make_event(1, "user", "user_updated", obj={"email": "x@example.org"}))

    assert result.status is ApplyStatus.ERROR


def test_enrolment_upsert_and_delete(db_session, applier, lms, clock):
    lms.user(db_session, "carol")
    lms.course(db_session, "CHEM")
    refs = {"user": {"username": "carol"}, "course": {"shortname": "CHEM"}}

    created = applier.apply(
        make_event(
            1,
            "enrol",
            "user_enrolment_created",
            obj={"method": "manual", "status": ENROLMENT_SUSPENDED, "time_start": 10},
            object_table="user_enrolments",
            object_id=5,
            time_created=clock.now,
            **refs,
        )
    )
    enrolment = db_session.get(Enrolment, created.hub_id)
    assert created.status is ApplyStatus.SUCCESS
    assert enrolment.status == ENROLMENT_SUSPENDED
    assert enrolment.time_start == 10

    removed = applier.apply(
        make_event(
            2,
            "enrol",
            "user_enrolment_deleted",
            object_table="user_enrolments",
            object_id=5,
            time_created=clock.now,
            **refs,
        )
    )

    assert removed.status is ApplyStatus.SUCCESS
    assert db_session.query(Enrolment).count() == 0
    assert IdentityMapper(db_session, NODE).resolve("user_enrolments", 5) is None

    again = applier.apply(
        make_event(3, "enrol", "user_enrolment_deleted", time_created=clock.now, **refs)
    )
    assert again.status is ApplyStatus.SUCCESS
    assert again.hub_id is None


def test_activity_records_are_upserted_through_mapping(db_session, applier, lms, clock):
    lms.user(db_session, "dana")
    lms.course(db_session, "HIST")
    kwargs = {
        "user": {"username": "dana"},
        "course": {"shortname": "HIST"},
        "object_id": 31,
    }

    first = applier.apply(
        make_event(
            1, "submission", "submission_created", obj={"status": "draft"},
            time_created=clock.now, **kwargs,
        )
    )
    clock.advance(1)
    second = applier.apply(
        make_event(
            2, "submission", "submission_updated", obj={"status": "submitted"},
            time_created=clock.now, **kwargs,
        )
    )

    assert first.status is ApplyStatus.SUCCESS
    assert second.hub_id == first.hub_id
    record = db_session.get(ActivityRecord, first.hub_id)
    assert record.object_table == "assign_submission"
    assert record.data == {"event_name": "submission_updated", "object": {"status": "submitted"}}
    assert db_session.query(ActivityRecord).count() == 1


def test_apply_batch_isolates_failures(db_session, applier, lms, clock):
    lms.user(db_session, "erin")
    lms.course(db_session, "GEO")
    refs = {"user": {"username": "erin"}, "course": {"shortname": "GEO"}}
    broken = make_event(
        1,
        "enrol",
        "user_enrolment_created",
        obj={"status": "not-a-number"},
        object_id=1,
        time_created=clock.now,
        **refs,
    )
    good = make_event(
        2,
        "enrol",
        "user_enrolment_created",
        obj={"status": 0},
        object_id=2,
        time_created=clock.now,
        **refs,
    )

    results = applier.apply_batch([broken, good])
    db_session.commit()

    assert [r.status for r in results] == [ApplyStatus.ERROR, ApplyStatus.SUCCESS]
    assert results[0].message.startswith("Processing failed")
    assert db_session.query(Enrolment).count() == 1
    assert db_session.query(IdentityMapping).filter_by(local_id=1).count() == 0


def test_apply_batch_survives_malformed_context(db_session, applier, lms, clock):
    lms.user(db_session, "erin")
    lms.course(db_session, "GEO")
    malformed = IncomingEvent(
        item_id=1,
        event_type="enrol",
        event_name="user_enrolment_created",
        object_table="user_enrolments",
        object_id=1,
        payload={
            "event": {"event_name": "user_enrolment_created", "time_created": clock.now},
            "context": {"user": "erin", "course": ["GEO"], "object": {"status": 0}},
        },
        time_created=clock.now,
    )
    good = make_event(
        2,
        "enrol",
        "user_enrolment_created",
        user={"username": "erin"},
        course={"shortname": "GEO"},
        obj={"status": 0},
        object_id=2,
        time_created=clock.now,
    )

    results = applier.apply_batch([malformed, good])
    db_session.commit()

    assert [r.status for r in results] == [ApplyStatus.ERROR, ApplyStatus.SUCCESS]
    assert results[0].item_id == 1
    assert db_session.query(Enrolment).count() == 1

from __future__ import annotations

import pytest

from syncqueue.models import Course, Enrolment, User
from syncqueue.models.lms import ENROLMENT_SUSPENDED
from syncqueue.services.id_mapper import IdentityMapper
from syncqueue.services.leaf_applier import ApplyOutcome, IncomingUpdate, LeafApplier


@pytest.fixture
def applier(leaf_session, leaf_config, clock) -> LeafApplier:
    return LeafApplier(leaf_session, leaf_config, clock=clock)


@pytest.fixture
def mapper(leaf_session, leaf_config, clock) -> IdentityMapper:
    return IdentityMapper(leaf_session, leaf_config.node_id, clock=clock)


def course_update(update_id: int, hub_id: int, action: str = "create", **data) -> IncomingUpdate:
    data.setdefault("fullname", "Algebra")
    data.setdefault("shortname", "ALG")
    return IncomingUpdate(update_id, "course", action, 1, {"id": hub_id, **data})


def test_course_create_update_delete(leaf_session, applier, mapper):
    assert applier.apply(course_update(1, 900, idnumber="alg-1")) is True
    local_id = mapper.resolve_reverse("course", 900)
    course = leaf_session.get(Course, local_id)
    assert course.shortname == "ALG"
    assert course.idnumber == "alg-1"

    assert applier.apply(course_update(2, 900, "update", fullname="Algebra II")) is True
    assert mapper.resolve_reverse("course", 900) == local_id
    assert course.fullname == "Algebra II"

    assert applier.apply(course_update(3, 900, "delete")) is True
    assert leaf_session.get(Course, local_id) is None
    assert mapper.resolve_reverse("course", 900) is None


def test_course_without_idnumber_gets_central_one(leaf_session, applier, mapper):
    applier.apply(course_update(1, 17))

    course = leaf_session.get(Course, mapper.resolve_reverse("course", 17))
    assert course.idnumber == "central_17"


def test_unchanged_course_is_left_alone(leaf_session, applier, mapper, clock):
    update = course_update(1, 900)
    applier.apply(update)
    course = leaf_session.get(Course, mapper.resolve_reverse("course", 900))
    first_modified = course.time_modified

    clock.advance(60)
    assert applier.apply(update) is True
    assert course.time_modified == first_modified


def test_shortname_collisions_get_suffixes(leaf_session, applier, mapper, lms):
    lms.course(leaf_session, "ALG")
    lms.course(leaf_session, "ALG_1")

    applier.apply(course_update(1, 900))

    course = leaf_session.get(Course, mapper.resolve_reverse("course", 900))
    assert course.shortname == "ALG_2"
    assert applier.ensure_unique_shortname("ALG_2", exclude_id=course.id) == "ALG_2"


def test_user_update_adopts_existing_local_account(leaf_session, applier, mapper, lms):
    local = lms.user(leaf_session, "greg", email="greg@school.org")
    update = IncomingUpdate(
        1,
        "user",
        "update",
        1,
        {"id": 55, "username": "greg.h", "email": "greg@school.org", "lastname": "Hall"},
    )

    assert applier.apply(update) is True
    assert mapper.resolve_reverse("user", 55) == local.id
    assert local.lastname == "Hall"
    assert leaf_session.query(User).count() == 1


def test_user_delete_suspends_and_unmaps(leaf_session, applier, mapper):
    applier.apply(IncomingUpdate(1, "user", "create", 1, {"id": 55, "username": "hana"}))
    local_id = mapper.resolve_reverse("user", 55)

    assert applier.apply(IncomingUpdate(2, "user", "delete", 2, {"id": 55})) is True

    user = leaf_session.get(User, local_id)
    assert user.deleted is True
    assert user.suspended is True
    assert mapper.resolve_reverse("user", 55) is None


def test_enrolment_waits_for_mappings(leaf_session, applier, mapper):
    enrol = IncomingUpdate(
        3,
        "enrolment",
        "create",
        3,
        {"id": 70, "user_id": 55, "course_id": 900, "status": ENROLMENT_SUSPENDED},
    )

    assert applier.apply(enrol) is False

    applier.apply(IncomingUpdate(1, "user", "create", 1, {"id": 55, "username": "ivan"}))
    applier.apply(course_update(2, 900))
    assert applier.apply(enrol) is True

    enrolment = leaf_session.query(Enrolment).one()
    assert enrolment.user_id == mapper.resolve_reverse("user", 55)
    assert enrolment.status == ENROLMENT_SUSPENDED
    assert mapper.resolve_reverse("user_enrolments", 70) == enrolment.id

    removal = IncomingUpdate(
        4, "enrolment", "delete", 4, {"id": 70, "user_id": 55, "course_id": 900}
    )
    assert applier.apply(removal) is True
    assert leaf_session.query(Enrolment).count() == 0


def test_unknown_type_and_action_are_skipped(applier):
    assert applier.apply(IncomingUpdate(1, "badge", "create", 1, {"id": 1})) is False
    assert applier.apply(IncomingUpdate(2, "course", "archive", 1, {"id": 1})) is False
    assert applier.apply(IncomingUpdate(3, "course", "create", 1, {})) is False


def test_course_content_goes_to_handler(leaf_session, leaf_config, clock, mocker):
    handler = mocker.Mock(return_value=True)
    applier = LeafApplier(leaf_session, leaf_config, content_handler=handler, clock=clock)
    update = IncomingUpdate(1, "course_content", "update", 1, {"course_id": 900})

    assert applier.apply(update) is True
    handler.assert_called_once_with(leaf_session, update)


def test_course_content_without_handler_is_skipped(applier):
    update = IncomingUpdate(1, "course_content", "update", 1, {"course_id": 900})

    assert applier.apply_one(update) == (ApplyOutcome.SKIPPED, None)


def test_process_batch_counts_each_outcome(leaf_session, leaf_config, clock, mocker):
    handler = mocker.Mock(side_effect=RuntimeError("restore failed"))
    applier = LeafApplier(leaf_session, leaf_config, content_handler=handler, clock=clock)

    summary = applier.process_batch(
        [
            course_update(1, 900),
            IncomingUpdate(2, "course_content", "update", 2, {"course_id": 900}),
            IncomingUpdate(3, "enrolment", "create", 3, {"id": 1, "user_id": 5, "course_id": 6}),
        ]
    )

    assert (summary.success, summary.failed, summary.skipped) == (1, 1, 1)
    assert summary.total == 3
    assert leaf_session.query(Course).count() == 1


def test_requires_node_id(leaf_session, make_config):
    with pytest.raises(ValueError):
        LeafApplier(leaf_session, make_config(node_id=None))

from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

from syncqueue.core.settings import SyncConfig
from syncqueue.db.time import DAY_SECONDS
from syncqueue.models import QueueFile, QueueItem, QueueStatus
from syncqueue.services.events import SyncEvent
from syncqueue.services.queue_manager import (
    STALE_PROCESSING_ERROR,
    QueueManager,
    payload_digest,
)

EVENT_TIME = 1_699_990_000


@pytest.fixture
def graded(db_session: Session, lms):
    user = lms.user(db_session, "alice", idnumber="S100")
    course = lms.course(db_session, "BIO101", idnumber="bio-101")
    item = lms.grade_item(db_session, course, idnumber="bio-a1")
    grade = lms.grade(db_session, item, user, rawgrade=80.0, finalgrade=80.0, time_modified=10)
    return user, course, grade


def _grade_event(user, course, grade, **overrides) -> SyncEvent:
    fields = dict(
        event_name="user_graded",
        component="core",
        action="graded",
        target="user",
        object_table="grade_grades",
        object_id=grade.id,
        related_user_id=user.id,
        user_id=1,
        course_id=course.id,
        time_created=EVENT_TIME,
    )
    fields.update(overrides)
    return SyncEvent(**fields)


def _forum_event(number: int, time_created: int = EVENT_TIME) -> SyncEvent:
    return SyncEvent(
        event_name="forum_post_created",
        object_id=number,
        time_created=time_created,
        snapshot={"id": number, "message": f"post {number}"},
    )


def test_enqueue_builds_denormalized_payload(db_session, leaf_config, clock, graded):
    user, course, grade = graded
    queue = QueueManager(db_session, leaf_config, clock=clock)

    item_id = queue.enqueue(_grade_event(user, course, grade))

    item = db_session.get(QueueItem, item_id)
    assert item.event_type == "grade"
    assert item.priority == 1
    assert item.status == QueueStatus.PENDING
    assert item.attempts == 0
    assert item.time_created == clock.now
    assert item.payload_hash == payload_digest(item.payload)

    context = item.payload["context"]
    assert context["user"]["idnumber"] == "S100"
    assert context["user"]["email"] == "alice@example.org"
    assert context["course"]["shortname"] == "BIO101"
    assert context["object"]["rawgrade"] == 80.0
    assert context["object"]["item"]["idnumber"] == "bio-a1"
    assert item.payload["event"]["time_created"] == EVENT_TIME
    assert item.payload["node"]["id"] == leaf_config.node_id


def test_enqueue_ignores_unrouted_events(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)

    assert queue.enqueue(SyncEvent(event_name="course_viewed", time_created=EVENT_TIME)) is None
    assert db_session.query(QueueItem).count() == 0


def test_duplicate_window_suppresses_then_expires(db_session, leaf_config, clock, graded):
    user, course, grade = graded
    queue = QueueManager(db_session, leaf_config, clock=clock)
    event = _grade_event(user, course, grade)

    first = queue.enqueue(event)
    clock.advance(60)
    second = queue.enqueue(event)

    assert first is not None
    assert second is None
    assert db_session.query(QueueItem).count() == 1

    clock.advance(leaf_config.duplicate_window_seconds)
    third = queue.enqueue(event)

    assert third is not None
    assert third != first
    assert db_session.query(QueueItem).count() == 2


def test_failed_items_do_not_suppress_duplicates(db_session, make_config, clock, graded):
    user, course, grade = graded
    queue = QueueManager(db_session, make_config(max_retries=1), clock=clock)
    event = _grade_event(user, course, grade)

    first = queue.enqueue(event)
    queue.mark_processing([first])
    assert queue.mark_failed(first, "boom") is QueueStatus.FAILED

    assert queue.enqueue(event) is not None


def test_zero_window_disables_duplicate_suppression(db_session, make_config, clock):
    queue = QueueManager(db_session, make_config(duplicate_window_seconds=0), clock=clock)

    assert queue.enqueue(_forum_event(1)) is not None
    assert queue.enqueue(_forum_event(1)) is not None


def test_dequeue_orders_by_priority_then_age(db_session, leaf_config, clock, graded):
    user, course, grade = graded
    queue = QueueManager(db_session, leaf_config, clock=clock)

    forum_id = queue.enqueue(_forum_event(1))
    clock.advance(1)
    older_grade = queue.enqueue(_grade_event(user, course, grade))
    clock.advance(1)
    newer_grade = queue.enqueue(_grade_event(user, course, grade, time_created=EVENT_TIME + 5))

    assert [item.id for item in queue.dequeue()] == [older_grade, newer_grade, forum_id]
    assert [item.id for item in queue.dequeue(limit=1)] == [older_grade]


def test_mark_processing_claims_exactly_the_given_ids(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    ids = [queue.enqueue(_forum_event(number)) for number in range(3)]

    assert queue.mark_processing(ids[:2]) == 2

    items = {item.id: item for item in db_session.query(QueueItem).all()}
    assert items[ids[0]].status == QueueStatus.PROCESSING
    assert items[ids[0]].attempts == 1
    assert items[ids[1]].status == QueueStatus.PROCESSING
    assert items[ids[2]].status == QueueStatus.PENDING
    assert items[ids[2]].attempts == 0
    assert [item.id for item in queue.dequeue()] == [ids[2]]


def test_retry_exhaustion_after_max_retries(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    item_id = queue.enqueue(_forum_event(1))
    assert leaf_config.max_retries == 5

    statuses = []
    for _ in range(leaf_config.max_retries):
        assert [item.id for item in queue.dequeue()] == [item_id]
        queue.mark_processing([item_id])
        statuses.append(queue.mark_failed(item_id, "hub unreachable"))

    assert statuses == [QueueStatus.PENDING] * 4 + [QueueStatus.FAILED]
    item = db_session.get(QueueItem, item_id)
    assert item.status == QueueStatus.FAILED
    assert item.attempts == 5
    assert item.last_error == "hub unreachable"
    assert queue.dequeue() == []


def test_transport_failure_returns_whole_batch_to_pending(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    ids = [queue.enqueue(_forum_event(number)) for number in range(2)]
    queue.mark_processing(ids)

    assert queue.mark_failed_many(ids, "connection refused") == 2

    for item in db_session.query(QueueItem).all():
        assert item.status == QueueStatus.PENDING
        assert item.attempts == 1
        assert item.last_error == "connection refused"


def test_release_stale_processing_items(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    stale = queue.enqueue(_forum_event(1))
    queue.mark_processing([stale])
    clock.advance(leaf_config.processing_timeout_seconds + 1)
    fresh = queue.enqueue(_forum_event(2))
    queue.mark_processing([fresh])

    assert queue.release_stale() == 1

    assert db_session.get(QueueItem, stale).status == QueueStatus.PENDING
    assert db_session.get(QueueItem, stale).last_error == STALE_PROCESSING_ERROR
    assert db_session.get(QueueItem, fresh).status == QueueStatus.PROCESSING


def test_conflict_and_synced_transitions(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    synced, conflicted = (queue.enqueue(_forum_event(number)) for number in range(2))
    queue.mark_processing([synced, conflicted])

    queue.mark_synced(synced)
    queue.mark_conflict(conflicted, "Hub record is newer")

    assert db_session.get(QueueItem, synced).time_synced == clock.now
    item = db_session.get(QueueItem, conflicted)
    assert item.status == QueueStatus.CONFLICT
    assert item.last_error == "Hub record is newer"
    assert queue.dequeue() == []


def test_cleanup_only_removes_old_synced_items(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    synced, failed, conflict, pending = (queue.enqueue(_forum_event(n)) for n in range(4))
    queue.mark_processing([synced, failed, conflict])
    queue.mark_synced(synced)
    db_session.get(QueueItem, failed).attempts = leaf_config.max_retries
    db_session.commit()
    queue.mark_failed(failed, "gave up")
    queue.mark_conflict(conflict, "newer on hub")

    clock.advance(leaf_config.queue_retention_days * DAY_SECONDS + 1)

    assert queue.cleanup() == 1
    remaining = {item.id for item in db_session.query(QueueItem).all()}
    assert remaining == {failed, conflict, pending}


def test_retry_and_delete_manual_operations(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    failed, conflict, pending = (queue.enqueue(_forum_event(n)) for n in range(3))
    queue.mark_processing([failed, conflict])
    db_session.get(QueueItem, failed).attempts = leaf_config.max_retries
    db_session.commit()
    queue.mark_failed(failed, "gave up")
    queue.mark_conflict(conflict, "newer on hub")

    assert queue.delete([pending]) == 0
    assert queue.retry([failed]) == 1
    item = db_session.get(QueueItem, failed)
    assert item.status == QueueStatus.PENDING
    assert item.attempts == 0
    assert item.last_error is None

    assert queue.delete([conflict]) == 1
    assert db_session.get(QueueItem, conflict) is None


def test_get_stats_counts_every_status(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    first, second = (queue.enqueue(_forum_event(n)) for n in range(2))
    queue.mark_processing([first])
    queue.mark_synced(first)

    stats = queue.get_stats()

    assert stats.count(QueueStatus.SYNCED) == 1
    assert stats.count(QueueStatus.PENDING) == 1
    assert stats.count(QueueStatus.FAILED) == 0
    assert stats.total == 2
    assert stats.last_synced_at == clock.now


def test_config_is_not_shared_between_queues(db_session, make_config, clock):
    strict: SyncConfig = make_config(max_retries=1)
    lenient: SyncConfig = make_config(max_retries=3)
    item_id = QueueManager(db_session, strict, clock=clock).enqueue(_forum_event(1))
    QueueManager(db_session, strict, clock=clock).mark_processing([item_id])

    status = QueueManager(db_session, lenient, clock=clock).mark_failed(item_id, "x")

    assert status is QueueStatus.PENDING


def _submission_event(number: int, *files: dict) -> SyncEvent:
    return SyncEvent(
        event_name="file_submission_created",
        object_id=number,
        time_created=EVENT_TIME,
        snapshot={"id": number, "status": "submitted"},
        files=files,
    )


def test_submission_files_are_recorded_beside_the_item(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    essay = {
        "content_hash": "a" * 40,
        "filename": "essay.pdf",
        "filesize": 2048,
        "mimetype": "application/pdf",
    }
    folder = {"content_hash": None, "filename": "."}

    first = queue.enqueue(_submission_event(1, essay, folder))
    second = queue.enqueue(_submission_event(2, essay))

    files = queue.files_for(first)
    assert [(f.filename, f.filesize, f.mimetype) for f in files] == [
        ("essay.pdf", 2048, "application/pdf")
    ]
    assert queue.files_for(second) == []
    assert "files" not in db_session.get(QueueItem, first).payload["event"]


def test_files_follow_their_item_through_sync_and_cleanup(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    item_id = queue.enqueue(_submission_event(1))
    assert queue.queue_files(item_id, [{"content_hash": "b" * 40, "filename": "a.txt"}]) == 1

    queue.mark_processing([item_id])
    queue.mark_synced(item_id)
    assert queue.files_for(item_id)[0].status == QueueStatus.SYNCED

    clock.advance(leaf_config.queue_retention_days * DAY_SECONDS + 1)
    assert queue.cleanup() == 1
    assert db_session.query(QueueFile).count() == 0


def test_list_items_filters_by_status(db_session, leaf_config, clock):
    queue = QueueManager(db_session, leaf_config, clock=clock)
    failed, conflict, pending = (queue.enqueue(_forum_event(n)) for n in range(3))
    queue.mark_processing([failed, conflict])
    db_session.get(QueueItem, failed).attempts = leaf_config.max_retries
    db_session.commit()
    queue.mark_failed(failed, "gave up")
    queue.mark_conflict(conflict, "newer on hub")

    listed = queue.list_items(QueueStatus.FAILED, QueueStatus.CONFLICT)

    assert {item.id for item in listed} == {failed, conflict}
    assert len(queue.list_items()) == 3

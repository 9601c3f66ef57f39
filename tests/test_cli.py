# tests/test_cli.py
"""Tests for the syncqueue command line entry point."""

from dataclasses import replace

import pytest
from sqlalchemy.orm import sessionmaker

from syncqueue.models import QueueItem, QueueStatus, RegisteredNode
from syncqueue.scripts.sync import build_parser, main
from syncqueue.services.events import SyncEvent
from syncqueue.services.queue_manager import QueueManager
from syncqueue.services.sync_client import SyncClient


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def leaf_session_factory(leaf_session):
    return sessionmaker(bind=leaf_session.get_bind(), autoflush=False)


def test_parser_requires_a_command():
    """Running without a subcommand is a usage error."""
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_register_node_prints_key_once(session_factory, hub_config, db_session, capsys):
    """Hub operators get the API key on stdout and only its hash is stored."""
    code = main(
        ["register-node", "school-9", "School Nine", "--email", "it@nine.example"],
        session_factory=session_factory,
        config=hub_config,
    )

    out = capsys.readouterr().out
    assert code == 0
    assert "shown once" in out
    node = db_session.get(RegisteredNode, "school-9")
    assert node.contact_email == "it@nine.example"
    assert node.api_key_hash not in out


def test_register_existing_node_fails(session_factory, hub_config, registered_node, capsys):
    """Registering a taken node id exits non-zero."""
    code = main(
        ["register-node", registered_node[0], "Again"],
        session_factory=session_factory,
        config=hub_config,
    )

    assert code == 1
    assert "already registered" in capsys.readouterr().err


def test_set_node_status_and_list(session_factory, hub_config, registered_node, capsys):
    """Status changes are visible in the node listing."""
    main(
        ["set-node-status", registered_node[0], "suspended"],
        session_factory=session_factory,
        config=hub_config,
    )
    main(["nodes"], session_factory=session_factory, config=hub_config)

    out = capsys.readouterr().out
    assert "leaf-a is now suspended" in out
    assert "Never" in out


def test_retry_requeues_failed_items(session_factory, leaf_config, db_session, capsys):
    """Failed items go back to pending with a fresh retry budget."""
    queue = QueueManager(db_session, replace(leaf_config, max_retries=1))
    item_id = queue.enqueue(SyncEvent(event_name="forum_post_created", object_id=1))
    queue.mark_processing([item_id])
    queue.mark_failed(item_id, "boom")

    code = main(["retry"], session_factory=session_factory, config=leaf_config)

    assert code == 0
    assert "Re-queued 1 item(s)" in capsys.readouterr().out
    db_session.expire_all()
    item = db_session.get(QueueItem, item_id)
    assert item.status == QueueStatus.PENDING
    assert item.attempts == 0


def test_upload_against_hub(leaf_session_factory, leaf_config, registered_node, client, capsys):
    """An upload pass with nothing queued still succeeds end to end."""
    config = replace(leaf_config, api_key=registered_node[1])

    code = main(
        ["upload"],
        session_factory=leaf_session_factory,
        config=config,
        client=SyncClient(config, http_client=client),
    )

    assert code == 0
    assert "Nothing to upload" in capsys.readouterr().out


def test_sync_errors_exit_non_zero(session_factory, make_config):
    """A disabled node reports the error and exits 1 instead of raising."""
    code = main(["download"], session_factory=session_factory, config=make_config(enabled=False))

    assert code == 1


def test_migrate_upgrades_to_head(session_factory, hub_config, mocker, capsys):
    """The migrate command runs Alembic against the configured database."""
    upgrade = mocker.patch("syncqueue.scripts.migrate.command.upgrade")

    code = main(["migrate"], session_factory=session_factory, config=hub_config)

    assert code == 0
    cfg, revision = upgrade.call_args.args
    assert revision == "head"
    assert cfg.get_main_option("script_location").endswith("migrations")


def test_status_lists_failed_items(session_factory, leaf_config, db_session, capsys):
    """Operators can see which items gave up and why."""
    queue = QueueManager(db_session, replace(leaf_config, max_retries=1))
    item_id = queue.enqueue(SyncEvent(event_name="forum_post_created", object_id=1))
    queue.mark_processing([item_id])
    queue.mark_failed(item_id, "Course not found on hub")

    code = main(["status", "--failed"], session_factory=session_factory, config=leaf_config)

    out = capsys.readouterr().out
    assert code == 0
    assert f"#{item_id} forum_post_created" in out
    assert "Course not found on hub" in out


def test_connection_check_prints_transport_metrics(
    leaf_session_factory, leaf_config, registered_node, client, capsys
):
    """The connectivity check reports registration and request statistics."""
    config = replace(leaf_config, api_key=registered_node[1])

    code = main(
        ["test"],
        session_factory=leaf_session_factory,
        config=config,
        client=SyncClient(config, http_client=client),
    )

    out = capsys.readouterr().out
    assert code == 0
    assert "Registered as" in out
    assert "Transport: 1 request(s), 100% succeeded" in out


def test_main_closes_the_client_it_creates(session_factory, leaf_config, mocker):
    """A client built by the entry point is closed when the command ends."""
    close = mocker.patch.object(SyncClient, "close")

    main(["retry"], session_factory=session_factory, config=leaf_config)

    close.assert_called_once()

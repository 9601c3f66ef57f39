# src/syncqueue/scripts/sync.py
"""
Command line entry point for running sync passes and hub administration.

Intended to be invoked by cron or a systemd timer, for example:

    syncqueue upload
    syncqueue download
    syncqueue cleanup

Hub operators use the node commands to provision and manage leaves.
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from sqlalchemy.orm import Session

from syncqueue.core.settings import SyncConfig, load_sync_config
from syncqueue.db.session import SessionLocal
from syncqueue.db.time import format_epoch
from syncqueue.models import NodeStatus, QueueStatus
from syncqueue.scripts.migrate import run_upgrade_head
from syncqueue.services.errors import SyncError
from syncqueue.services.inbox import LeafInbox
from syncqueue.services.node_registry import NodeRegistry
from syncqueue.services.queue_manager import QueueManager
from syncqueue.services.sync_client import SyncClient
from syncqueue.services.sync_log import SyncLog
from syncqueue.services.sync_runner import SyncRunner

logger = logging.getLogger("syncqueue")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="syncqueue", description=__doc__.strip().splitlines()[0])
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    status_parser = sub.add_parser("status", help="Show queue, inbox and recent sync activity")
    status_parser.add_argument(
        "--failed",
        action="store_true",
        help="List failed and conflict items with their last error",
    )
    sub.add_parser("test", help="Check connectivity and registration with the hub")

    for name, help_text in (
        ("upload", "Upload one batch of queued events"),
        ("download", "Download and apply hub updates"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("--force", action="store_true", help="Run even if sync is disabled")

    sub.add_parser("cleanup", help="Apply retention windows")
    sub.add_parser("migrate", help="Upgrade the database schema to the latest revision")

    retry = sub.add_parser("retry", help="Return failed and conflict items to the queue")
    retry.add_argument("ids", nargs="*", type=int, help="Item ids (default: all)")

    discard = sub.add_parser("discard", help="Delete failed or conflict items")
    discard.add_argument("ids", nargs="+", type=int)

    fetch = sub.add_parser("fetch-artifact", help="Download an artifact from the hub")
    fetch.add_argument("name")
    fetch.add_argument("destination", type=Path)

    register = sub.add_parser("register-node", help="Register a leaf node (hub)")
    register.add_argument("node_id")
    register.add_argument("name")
    register.add_argument("--email", default=None)
    register.add_argument("--description", default=None)

    rotate = sub.add_parser("rotate-key", help="Issue a new API key for a node (hub)")
    rotate.add_argument("node_id")

    set_status = sub.add_parser("set-node-status", help="Change a node's status (hub)")
    set_status.add_argument("node_id")
    set_status.add_argument("status", choices=[status.value for status in NodeStatus])

    nodes = sub.add_parser("nodes", help="List registered nodes (hub)")
    nodes.add_argument("--overdue", action="store_true", help="Only nodes that missed their sync")

    return parser


def _cmd_status(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    print(f"Mode: {config.mode}  Enabled: {config.enabled}  Node: {config.node_id or '-'}")
    if config.is_leaf:
        stats = QueueManager(db, config).get_stats()
        for status, count in sorted(stats.counts.items()):
            print(f"  {status:<11} {count}")
        print(f"Last synced item: {format_epoch(stats.last_synced_at)}")
        inbox = LeafInbox(db, config)
        print(f"Download watermark: {format_epoch(inbox.get_watermark())}")
        print(f"Inbox: {inbox.counts()}")
        stalled = inbox.stalled()
        if stalled:
            print(f"Stalled inbox updates: {len(stalled)}")
            for row in stalled:
                print(
                    f"  #{row.hub_update_id} {row.update_type} {row.action} "
                    f"deferred {row.skips} times, last {format_epoch(row.time_last_skipped)}"
                )
        if args.failed:
            _print_failed_items(QueueManager(db, config))
    for entry in SyncLog(db, config).recent(limit=5):
        print(
            f"  {format_epoch(entry.time_created)} {entry.node_id} {entry.direction} "
            f"{entry.status}: {entry.details or ''}"
        )
    return 0


def _print_failed_items(queue: QueueManager) -> None:
    items = queue.list_items(QueueStatus.FAILED, QueueStatus.CONFLICT)
    if not items:
        print("No failed or conflict items")
        return
    for item in items:
        print(
            f"  #{item.id} {item.event_name:<28} {item.status:<9} attempts {item.attempts}: "
            f"{item.last_error or ''}"
        )


def _cmd_test(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    info = client.check_status()
    if not info.registered:
        print("Hub reachable, but this node is not registered")
        return 1
    print(
        f"Hub reachable. Registered as {info.node_name} ({info.node_status}); "
        f"last synced {format_epoch(info.last_synced_at)}"
    )
    print(f"Transport: {client.metrics.describe()}")
    return 0 if info.active else 1


def _cmd_upload(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    result = SyncRunner(db, config, client=client).run_upload(force=args.force)
    print(result.details or "Nothing to upload")
    return 0


def _cmd_download(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    result = SyncRunner(db, config, client=client).run_download(force=args.force)
    print(result.details or "Nothing to download")
    return 0


def _cmd_cleanup(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    removed = SyncRunner(db, config, client=client).run_cleanup()
    print(", ".join(f"{key}: {count}" for key, count in removed.items()))
    return 0


def _cmd_migrate(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    run_upgrade_head()
    print("Database schema is up to date")
    return 0


def _cmd_retry(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    count = QueueManager(db, config).retry(args.ids or None)
    print(f"Re-queued {count} item(s)")
    return 0


def _cmd_discard(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    count = QueueManager(db, config).delete(args.ids)
    print(f"Deleted {count} item(s)")
    return 0


def _cmd_fetch_artifact(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    path = client.fetch_artifact(args.name, args.destination)
    print(f"Saved {args.name} to {path}")
    return 0


def _cmd_register_node(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    try:
        node, api_key = NodeRegistry(db, config).register(
            args.node_id,
            args.name,
            contact_email=args.email,
            description=args.description,
        )
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(f"Registered {node.node_id}. API key (shown once): {api_key}")
    return 0


def _cmd_rotate_key(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    try:
        api_key = NodeRegistry(db, config).rotate_key(args.node_id)
    except LookupError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(f"New API key for {args.node_id} (shown once): {api_key}")
    return 0


def _cmd_set_node_status(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    try:
        node = NodeRegistry(db, config).set_status(args.node_id, args.status)
    except LookupError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(f"{node.node_id} is now {node.status}")
    return 0


def _cmd_nodes(
    db: Session, config: SyncConfig, client: SyncClient, args: argparse.Namespace
) -> int:
    registry = NodeRegistry(db, config)
    nodes = registry.overdue() if args.overdue else registry.list_nodes()
    for node in nodes:
        print(
            f"{node.node_id:<20} {node.status:<10} last synced {format_epoch(node.last_synced_at)} "
            f"({node.total_synced_count} total)"
        )
    if not nodes:
        print("No nodes")
    return 0


Command = Callable[[Session, SyncConfig, SyncClient, argparse.Namespace], int]

COMMANDS: dict[str, Command] = {
    "status": _cmd_status,
    "test": _cmd_test,
    "upload": _cmd_upload,
    "download": _cmd_download,
    "cleanup": _cmd_cleanup,
    "migrate": _cmd_migrate,
    "retry": _cmd_retry,
    "discard": _cmd_discard,
    "fetch-artifact": _cmd_fetch_artifact,
    "register-node": _cmd_register_node,
    "rotate-key": _cmd_rotate_key,
    "set-node-status": _cmd_set_node_status,
    "nodes": _cmd_nodes,
}


def main(
    argv: Sequence[str] | None = None,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    config: SyncConfig | None = None,
    client: SyncClient | None = None,
) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    config = config or load_sync_config()

    if client is None:
        with SyncClient(config) as owned:
            return _run(args, session_factory, config, owned)
    return _run(args, session_factory, config, client)


def _run(
    args: argparse.Namespace,
    session_factory: Callable[[], Session],
    config: SyncConfig,
    client: SyncClient,
) -> int:
    with session_factory() as db:
        try:
            return COMMANDS[args.command](db, config, client, args)
        except SyncError as exc:
            logger.error("%s failed: %s", args.command, exc)
            return 1
        finally:
            if client.metrics.request_count:
                logger.info("Hub transport: %s", client.metrics.describe())


if __name__ == "__main__":
    sys.exit(main())

"""Hub endpoints for the leaf sync protocol."""

from __future__ import annotations

import hmac
import logging
from pathlib import Path

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import FileResponse

from syncqueue.api.v1.dependencies import (
    ApiKeyHeader,
    HubConfigDep,
    SessionDep,
    authenticate_node,
)
from syncqueue.core.security import verify_key
from syncqueue.core.settings import MAX_DOWNLOAD_LIMIT
from syncqueue.db.time import epoch_now
from syncqueue.models.sync_log import DIRECTION_UPLOAD
from syncqueue.schemas import (
    DownloadResponse,
    ItemResult,
    RegisterRequest,
    RegisterResponse,
    ReportRequest,
    ReportResponse,
    StatusResponse,
    UpdateOut,
    UploadRequest,
    UploadResponse,
)
from syncqueue.services.distribution import DistributionManager
from syncqueue.services.hub_applier import ApplyStatus, HubApplier, IncomingEvent
from syncqueue.services.node_registry import NodeRegistry
from syncqueue.services.sync_log import SyncLog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.get("/status", response_model=StatusResponse)
async def sync_status(
    config: HubConfigDep,
    db: SessionDep,
    api_key_header: ApiKeyHeader = None,
    node_id: str | None = None,
    apikey: str | None = None,
) -> StatusResponse:
    """Report hub availability and, when a node id is given, its registration.

    Without a node id this is a plain availability probe.
    """
    now = epoch_now()
    if not node_id:
        return StatusResponse(message="Hub is available", server_time=now)

    node = NodeRegistry(db, config).get(node_id)
    if node is None:
        return StatusResponse(message="Node is not registered", registered=False, server_time=now)

    api_key = api_key_header or apikey
    if api_key is not None and not verify_key(api_key, node.api_key_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid node id or API key",
        )

    return StatusResponse(
        message=f"Node is {node.status}",
        registered=True,
        node_name=node.display_name,
        node_status=node.status,
        last_synced_at=node.last_synced_at,
        server_time=now,
    )


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register_node(
    request: RegisterRequest,
    config: HubConfigDep,
    db: SessionDep,
) -> RegisterResponse:
    """Self-register a leaf with the shared provisioning secret.

    Returns:
        The new node's API key, shown only in this response

    Raises:
        HTTPException: 403 when registration is disabled or the secret is
            wrong, 409 when the node id is taken
    """
    if not config.allow_registration:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Node registration is disabled",
        )
    expected = config.registration_secret or ""
    if not expected or not hmac.compare_digest(request.secret, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid registration secret",
        )

    registry = NodeRegistry(db, config)
    if registry.get(request.node_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Node is already registered",
        )
    _, api_key = registry.register(
        request.node_id,
        request.name,
        contact_email=request.contact_email,
        description=request.description,
    )
    return RegisterResponse(message="Node registered", apikey=api_key)


@router.post("/upload", response_model=UploadResponse)
async def upload_items(
    request: UploadRequest,
    config: HubConfigDep,
    db: SessionDep,
    api_key_header: ApiKeyHeader = None,
) -> UploadResponse:
    """Apply a batch of leaf events and return a result per item."""
    node = authenticate_node(db, config, request.node_id, api_key_header or request.apikey)

    applier = HubApplier(db, config, node.node_id)
    results = applier.apply_batch(
        IncomingEvent(
            item_id=item.id,
            event_type=item.event_type,
            event_name=item.event_name,
            object_table=item.object_table,
            object_id=item.object_id,
            payload=item.payload,
            time_created=item.time_created,
        )
        for item in request.items
    )
    db.commit()

    success = sum(1 for result in results if result.status is ApplyStatus.SUCCESS)
    conflicts = sum(1 for result in results if result.status is ApplyStatus.CONFLICT)
    failed = len(results) - success - conflicts
    NodeRegistry(db, config).update_sync_stats(node.node_id, success)
    logger.info(
        "Node %s uploaded %d item(s): %d applied, %d conflicts, %d errors",
        node.node_id,
        len(results),
        success,
        conflicts,
        failed,
    )

    return UploadResponse(
        processed=len(results),
        success=success,
        failed=failed,
        conflicts=conflicts,
        results=[
            ItemResult(
                id=result.item_id,
                status=result.status.value,
                message=result.message,
                hub_id=result.hub_id,
            )
            for result in results
        ],
    )


@router.get("/download", response_model=DownloadResponse)
async def download_updates(
    config: HubConfigDep,
    db: SessionDep,
    node_id: str,
    api_key_header: ApiKeyHeader = None,
    apikey: str | None = None,
    since: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
) -> DownloadResponse:
    """Return undelivered updates for the node and mark them delivered."""
    node = authenticate_node(db, config, node_id, api_key_header or apikey)

    effective_limit = min(limit or config.download_limit, MAX_DOWNLOAD_LIMIT)
    updates = DistributionManager(db, config).deliver(node.node_id, since, effective_limit)
    return DownloadResponse(
        count=len(updates),
        since=since,
        limit=effective_limit,
        server_time=epoch_now(),
        updates=[
            UpdateOut(
                id=update.id,
                type=update.update_type,
                action=update.action,
                timestamp=update.time_created,
                priority=update.priority,
                data=update.payload,
            )
            for update in updates
        ],
    )


@router.post("/report", response_model=ReportResponse)
async def report_results(
    request: ReportRequest,
    config: HubConfigDep,
    db: SessionDep,
    api_key_header: ApiKeyHeader = None,
) -> ReportResponse:
    """Record a leaf's pass summary in the hub's sync log."""
    node = authenticate_node(db, config, request.node_id, api_key_header or request.apikey)

    summary = request.results
    SyncLog(db, config).record(
        node.node_id,
        summary.direction or DIRECTION_UPLOAD,
        item_count=summary.item_count,
        success_count=summary.success_count,
        fail_count=summary.fail_count,
        conflict_count=summary.conflict_count,
        details=summary.details,
    )
    return ReportResponse(message="Report received", server_time=epoch_now())


def _resolve_artifact(artifact_dir: str, name: str) -> Path | None:
    if not name or name.startswith(".") or Path(name).name != name:
        return None
    path = Path(artifact_dir) / name
    return path if path.is_file() else None


@router.get("/artifacts/{name}")
async def download_artifact(
    name: str,
    config: HubConfigDep,
    db: SessionDep,
    node_id: str,
    api_key_header: ApiKeyHeader = None,
    apikey: str | None = None,
) -> FileResponse:
    """Stream a prepared artifact (such as a content export) to a node."""
    authenticate_node(db, config, node_id, api_key_header or apikey)

    path = _resolve_artifact(config.artifact_dir, name)
    if path is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Artifact not found",
        )
    return FileResponse(
        path,
        media_type="application/octet-stream",
        filename=path.name,
        headers=NO_CACHE_HEADERS,
    )

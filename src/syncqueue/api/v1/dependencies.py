"""Shared API dependencies for node authentication and hub guards."""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from syncqueue.core.settings import SyncConfig, load_sync_config
from syncqueue.db.session import get_db
from syncqueue.models import NodeStatus, RegisteredNode
from syncqueue.services.node_registry import NodeRegistry

API_KEY_HEADER = "X-Sync-Api-Key"

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_sync_config() -> SyncConfig:
    """Return the process configuration. Overridden in tests."""
    return load_sync_config()


def require_hub(config: Annotated[SyncConfig, Depends(get_sync_config)]) -> SyncConfig:
    """Reject sync calls unless this process is an enabled hub.

    Raises:
        HTTPException: 403 when sync is disabled or the node is not a hub
    """
    if not config.enabled:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Sync is disabled on this server",
        )
    if not config.is_hub:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This server is not running in hub mode",
        )
    return config


HubConfigDep = Annotated[SyncConfig, Depends(require_hub)]
ApiKeyHeader = Annotated[str | None, Header(alias=API_KEY_HEADER)]


def authenticate_node(
    db: Session,
    config: SyncConfig,
    node_id: str | None,
    api_key: str | None,
) -> RegisteredNode:
    """Validate a node's API key before any node-scoped state is touched.

    Args:
        db: Database session
        config: Hub configuration
        node_id: Claimed node identifier
        api_key: Key from the header or the request body

    Returns:
        The authenticated, active node

    Raises:
        HTTPException: 401 for a missing or wrong key or an unknown node,
            403 when the node is not active
    """
    if not node_id or not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Node id and API key are required",
        )
    node = NodeRegistry(db, config).authenticate(node_id, api_key)
    if node is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid node id or API key",
        )
    if node.status != NodeStatus.ACTIVE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Node is {node.status}",
        )
    return node

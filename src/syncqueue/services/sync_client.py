"""HTTP client a leaf uses to talk to the hub.

Every call carries the node's API key, is bounded by the configured
timeouts and raises one of the :mod:`syncqueue.services.errors` classes on
failure:

- ConfigurationError before any request when local settings are missing
- ConnectivityError for timeouts, DNS failures and refused connections
- AuthenticationError when the hub answers 401 or 403
- ProtocolError for other non-2xx answers, unparseable bodies and
  application-level error flags
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from syncqueue.core.settings import SyncConfig
from syncqueue.models import QueueItem
from syncqueue.services.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectivityError,
    ProtocolError,
)
from syncqueue.services.leaf_applier import IncomingUpdate

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/sync"
API_KEY_HEADER = "X-Sync-Api-Key"

HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403


@dataclass
class TransportMetrics:
    """Request counters for the hub connection."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(
        self, response_time: float, success: bool, error_type: str | None = None
    ) -> None:
        """Record a request metric."""
        self.request_count += 1
        self.total_response_time += response_time

        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            if error_type:
                self.error_counts_by_type[error_type] += 1

    def get_average_response_time(self) -> float:
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0

    def get_success_rate(self) -> float:
        """Get success rate as a percentage."""
        return (self.success_count / self.request_count * 100) if self.request_count > 0 else 0.0

    def describe(self) -> str:
        """One-line summary for operators."""
        text = (
            f"{self.request_count} request(s), {self.get_success_rate():.0f}% succeeded, "
            f"average {self.get_average_response_time() * 1000:.0f} ms"
        )
        if self.error_counts_by_type:
            errors = ", ".join(
                f"{kind}: {count}" for kind, count in sorted(self.error_counts_by_type.items())
            )
            text += f" ({errors})"
        return text


@dataclass(frozen=True)
class NodeStatusInfo:
    """What the hub knows about this node."""

    registered: bool
    active: bool
    node_status: str | None
    node_name: str | None
    last_synced_at: int | None
    server_time: int


@dataclass(frozen=True)
class ItemOutcome:
    id: int
    status: str
    message: str
    hub_id: int | None


@dataclass(frozen=True)
class UploadOutcome:
    processed: int
    success: int
    failed: int
    conflicts: int
    results: list[ItemOutcome]


@dataclass(frozen=True)
class DownloadBatch:
    """One page of updates from the hub."""

    updates: list[IncomingUpdate]
    since: int
    limit: int
    server_time: int

    @property
    def drained(self) -> bool:
        """True when the hub returned less than a full page."""
        return len(self.updates) < self.limit


def serialize_item(item: QueueItem) -> dict[str, Any]:
    """Wire form of a queue item."""
    return {
        "id": item.id,
        "event_type": item.event_type,
        "event_name": item.event_name,
        "object_table": item.object_table,
        "object_id": item.object_id,
        "payload": item.payload,
        "priority": item.priority,
        "time_created": item.time_created,
    }


class SyncClient:
    """Synchronous HTTP client wrapper for hub interactions."""

    def __init__(self, config: SyncConfig, *, http_client: httpx.Client | None = None) -> None:
        self.config = config
        self._client = http_client
        self._owns_client = http_client is None
        self.metrics = TransportMetrics()

    def _require_credentials(self) -> tuple[str, str]:
        if not self.config.node_id:
            raise ConfigurationError("Node id is not configured")
        if not self.config.api_key:
            raise ConfigurationError("API key is not configured")
        return self.config.node_id, self.config.api_key

    def _ensure_client(self) -> httpx.Client:
        if self._client is None:
            if not self.config.hub_url:
                raise ConfigurationError("Hub URL is not configured")
            self._client = httpx.Client(
                base_url=self.config.hub_url,
                timeout=httpx.Timeout(
                    self.config.timeout_seconds,
                    connect=self.config.connect_timeout_seconds,
                ),
            )
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def __enter__(self) -> SyncClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        api_key: str | None = None,
    ) -> httpx.Response:
        client = self._ensure_client()
        headers = {API_KEY_HEADER: api_key} if api_key else {}
        start_time = time.monotonic()
        error_type: str | None = None
        try:
            response = client.request(
                method,
                f"{API_PREFIX}{path}",
                json=json_data,
                params=params,
                headers=headers,
                timeout=httpx.Timeout(
                    self.config.timeout_seconds,
                    connect=self.config.connect_timeout_seconds,
                ),
            )
        except httpx.TimeoutException as exc:
            error_type = "timeout"
            raise ConnectivityError(f"Hub request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            error_type = "network_error"
            raise ConnectivityError(f"Could not reach hub: {exc}") from exc
        finally:
            if error_type is not None:
                self.metrics.record_request(time.monotonic() - start_time, False, error_type)

        elapsed = time.monotonic() - start_time
        if response.status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            self.metrics.record_request(elapsed, False, f"http_{response.status_code}")
            raise AuthenticationError(
                f"Hub rejected credentials ({response.status_code}): {_error_detail(response)}"
            )
        if not response.is_success:
            self.metrics.record_request(elapsed, False, f"http_{response.status_code}")
            raise ProtocolError(
                f"Hub responded with {response.status_code}: {_error_detail(response)}"
            )
        self.metrics.record_request(elapsed, True)
        return response

    def _request_json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self._request(method, path, **kwargs)
        try:
            body = response.json()
        except ValueError as exc:
            raise ProtocolError("Hub returned a response that is not valid JSON") from exc
        if not isinstance(body, dict):
            raise ProtocolError("Hub returned an unexpected JSON document")
        if body.get("exception") or body.get("status") == "error":
            message = body.get("message") or body.get("exception") or "unknown error"
            raise ProtocolError(f"Hub reported an error: {message}")
        return body

    def check_status(self) -> NodeStatusInfo:
        """Ask the hub whether this node is registered and active."""
        node_id, api_key = self._require_credentials()
        body = self._request_json(
            "GET",
            "/status",
            params={"node_id": node_id},
            api_key=api_key,
        )
        try:
            node_status = body.get("node_status")
            return NodeStatusInfo(
                registered=bool(body.get("registered", False)),
                active=node_status == "active",
                node_status=node_status,
                node_name=body.get("node_name"),
                last_synced_at=body.get("last_synced_at"),
                server_time=int(body["server_time"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(f"Malformed status response: {exc}") from exc

    def register(
        self,
        name: str,
        secret: str,
        *,
        contact_email: str | None = None,
        description: str | None = None,
    ) -> str:
        """Self-register with the provisioning secret and return the new API key."""
        if not self.config.node_id:
            raise ConfigurationError("Node id is not configured")
        body = self._request_json(
            "POST",
            "/register",
            json_data={
                "node_id": self.config.node_id,
                "name": name,
                "secret": secret,
                "contact_email": contact_email,
                "description": description,
            },
        )
        api_key = body.get("apikey")
        if not api_key:
            raise ProtocolError("Registration response carried no API key")
        return str(api_key)

    def upload(self, items: Iterable[QueueItem]) -> UploadOutcome:
        """Send a batch of queue items and return the hub's per-item results."""
        node_id, api_key = self._require_credentials()
        body = self._request_json(
            "POST",
            "/upload",
            json_data={
                "node_id": node_id,
                "items": [serialize_item(item) for item in items],
            },
            api_key=api_key,
        )
        try:
            results = [
                ItemOutcome(
                    id=int(result["id"]),
                    status=str(result["status"]),
                    message=str(result.get("message") or ""),
                    hub_id=result.get("hub_id"),
                )
                for result in body.get("results", [])
            ]
            return UploadOutcome(
                processed=int(body.get("processed", len(results))),
                success=int(body.get("success", 0)),
                failed=int(body.get("failed", 0)),
                conflicts=int(body.get("conflicts", 0)),
                results=results,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(f"Malformed upload response: {exc}") from exc

    def download(self, since: int = 0, limit: int | None = None) -> DownloadBatch:
        """Fetch undelivered updates newer than ``since``.

        The hub marks every returned update as delivered, so the caller must
        store the batch before doing anything else with it.
        """
        node_id, api_key = self._require_credentials()
        limit = limit or self.config.download_limit
        body = self._request_json(
            "GET",
            "/download",
            params={"node_id": node_id, "since": since, "limit": limit},
            api_key=api_key,
        )
        try:
            updates = [
                IncomingUpdate(
                    id=int(update["id"]),
                    type=str(update["type"]),
                    action=str(update["action"]),
                    timestamp=int(update.get("timestamp") or 0),
                    data=update.get("data") or {},
                    priority=int(update.get("priority", 5)),
                )
                for update in body.get("updates", [])
            ]
            return DownloadBatch(
                updates=updates,
                since=int(body.get("since", since)),
                limit=int(body.get("limit", limit)),
                server_time=int(body.get("server_time", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(f"Malformed download response: {exc}") from exc

    def report(self, summary: Mapping[str, Any]) -> bool:
        """Send a pass summary. Failures are logged and never raised."""
        try:
            node_id, api_key = self._require_credentials()
            self._request_json(
                "POST",
                "/report",
                json_data={"node_id": node_id, "results": dict(summary)},
                api_key=api_key,
            )
        except (ConfigurationError, ConnectivityError, AuthenticationError, ProtocolError) as exc:
            logger.warning("Could not deliver sync report: %s", exc)
            return False
        return True

    def fetch_artifact(self, name: str, destination: Path) -> Path:
        """Stream an artifact from the hub to ``destination``."""
        node_id, api_key = self._require_credentials()
        client = self._ensure_client()
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            with client.stream(
                "GET",
                f"{API_PREFIX}/artifacts/{name}",
                params={"node_id": node_id},
                headers={API_KEY_HEADER: api_key},
            ) as response:
                if response.status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
                    raise AuthenticationError(
                        f"Hub rejected credentials ({response.status_code})"
                    )
                if not response.is_success:
                    raise ProtocolError(
                        f"Artifact download failed with status {response.status_code}"
                    )
                with destination.open("wb") as handle:
                    for chunk in response.iter_bytes():
                        handle.write(chunk)
        except httpx.TransportError as exc:
            raise ConnectivityError(f"Could not reach hub: {exc}") from exc
        return destination


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or body)
    return str(body)

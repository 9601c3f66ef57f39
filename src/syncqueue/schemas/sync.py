"""Wire schemas for the sync protocol."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class StatusResponse(BaseModel):
    """Availability probe and node registration state."""

    status: str = "ok"
    message: str = ""
    registered: bool = False
    node_name: str | None = None
    node_status: str | None = None
    last_synced_at: int | None = None
    server_time: int


class RegisterRequest(BaseModel):
    """Self-registration of a leaf using the shared provisioning secret."""

    node_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1)
    secret: str
    contact_email: str | None = None
    description: str | None = None


class RegisterResponse(BaseModel):
    status: str = "ok"
    message: str
    apikey: str


class UploadItem(BaseModel):
    """One outbound queue item."""

    id: int
    event_type: str
    event_name: str
    object_table: str | None = None
    object_id: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    time_created: int = 0


class UploadRequest(BaseModel):
    node_id: str
    apikey: str | None = None
    items: list[UploadItem] = Field(default_factory=list)


class ItemResult(BaseModel):
    id: int
    status: str
    message: str = ""
    hub_id: int | None = None


class UploadResponse(BaseModel):
    status: str = "ok"
    processed: int
    success: int
    failed: int
    conflicts: int = 0
    results: list[ItemResult]


class UpdateOut(BaseModel):
    """A distribution update as delivered to a leaf."""

    id: int
    type: str
    action: str
    timestamp: int
    priority: int = 5
    data: dict[str, Any] = Field(default_factory=dict)


class DownloadResponse(BaseModel):
    status: str = "ok"
    count: int
    since: int
    limit: int
    server_time: int
    updates: list[UpdateOut]


class ReportSummary(BaseModel):
    """Counts a leaf reports after a pass."""

    direction: str = "upload"
    item_count: int = 0
    success_count: int = 0
    fail_count: int = 0
    conflict_count: int = 0
    details: str | None = None


class ReportRequest(BaseModel):
    node_id: str
    apikey: str | None = None
    results: ReportSummary = Field(default_factory=ReportSummary)


class ReportResponse(BaseModel):
    status: str = "ok"
    message: str
    server_time: int

"""
Pydantic schemas for the sync wire protocol.

These schemas define the JSON bodies exchanged between leaf and hub.
"""

from .sync import (
    DownloadResponse,
    ItemResult,
    RegisterRequest,
    RegisterResponse,
    ReportRequest,
    ReportResponse,
    ReportSummary,
    StatusResponse,
    UpdateOut,
    UploadItem,
    UploadRequest,
    UploadResponse,
)

__all__ = [
    "DownloadResponse",
    "ItemResult",
    "RegisterRequest", "RegisterResponse",
    "ReportRequest", "ReportResponse", "ReportSummary",
    "StatusResponse",
    "UpdateOut",
    "UploadItem", "UploadRequest", "UploadResponse",
]

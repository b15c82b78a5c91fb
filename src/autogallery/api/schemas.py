"""Pydantic request/response schemas for the AutoGallery API."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from autogallery.gallery.filters import FilterState
    from autogallery.gallery.ingestion import Notification
    from autogallery.gallery.models import PhotoRecord


class PhotoOut(BaseModel):
    """A classified photo without its image payload."""

    id: UUID
    name: str
    media_type: str
    categories: list[str] = Field(description="Labels ordered by confidence, best first")
    confidence: float = Field(ge=0.0, le=1.0, description="Score of the top label")
    created_at: datetime
    image_url: str

    @classmethod
    def from_record(cls, record: PhotoRecord) -> PhotoOut:
        return cls(
            id=record.id,
            name=record.name,
            media_type=record.media_type,
            categories=list(record.categories),
            confidence=record.confidence,
            created_at=record.created_at,
            image_url=f"/api/v1/photos/{record.id}/image",
        )


class NotificationOut(BaseModel):
    """A per-file ingestion event."""

    kind: str = Field(description="'rejected', 'classified', or 'error'")
    file_name: str
    detail: str

    @classmethod
    def from_notification(cls, notification: Notification) -> NotificationOut:
        return cls(kind=str(notification.kind), file_name=notification.file_name, detail=notification.detail)


class IngestResponse(BaseModel):
    """Response for a photo upload batch."""

    photos: list[PhotoOut]
    notifications: list[NotificationOut]


class IngestAbortedResponse(IngestResponse):
    """503 body for a batch stopped by a lost classifier session.

    ``photos`` and ``notifications`` cover the files handled before the failure;
    those photos were added to the gallery.
    """

    detail: str


class FilterOut(BaseModel):
    """Current category filter. ``category`` is null when all photos are shown."""

    category: str | None = None

    @classmethod
    def from_state(cls, state: FilterState) -> FilterOut:
        return cls(category=state.category)


class FilterRequest(BaseModel):
    """Select a category, or null for all photos."""

    category: str | None = None


class GalleryResponse(BaseModel):
    photos: list[PhotoOut]
    total_count: int


class VisibleResponse(BaseModel):
    photos: list[PhotoOut]
    total_count: int
    filter: FilterOut


class CategoryCount(BaseModel):
    category: str
    count: int


class CategoriesResponse(BaseModel):
    categories: list[CategoryCount]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    session_state: str
    backend: str | None
    model: str
    photos: int
    pending_batches: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    repo_id: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str

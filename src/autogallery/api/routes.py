"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse

from autogallery.api.schemas import (
    CategoriesResponse,
    CategoryCount,
    ErrorResponse,
    FilterOut,
    FilterRequest,
    GalleryResponse,
    HealthResponse,
    IngestAbortedResponse,
    IngestResponse,
    ModelInfo,
    ModelsResponse,
    NotificationOut,
    PhotoOut,
    VisibleResponse,
)
from autogallery.gallery.ingestion import BatchAbortedError
from autogallery.gallery.models import RawFile
from autogallery.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from autogallery.gallery.filters import Gallery
    from autogallery.gallery.ingestion import BatchQueue, IngestReport
    from autogallery.ml.inference import InferencePool
    from autogallery.ml.model_manager import ClassifierSessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def _get_gallery(request: Request) -> Gallery:
    gallery: Gallery = request.app.state.gallery
    return gallery


def _get_batch_queue(request: Request) -> BatchQueue:
    queue: BatchQueue = request.app.state.batch_queue
    return queue


def _get_session_manager(request: Request) -> ClassifierSessionManager:
    manager: ClassifierSessionManager = request.app.state.session_manager
    return manager


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


@router.post(
    "/photos",
    response_model=IngestResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": IngestAbortedResponse}},
    summary="Upload and classify a batch of photos",
)
async def upload_photos(request: Request, files: list[UploadFile]) -> IngestResponse | JSONResponse:
    """Classify uploaded files and add every image to the gallery.

    Non-image files are rejected individually; images that fail to classify
    are added with an "unknown" label. The whole batch becomes visible at once.
    If the classifier session is lost midway, the files handled so far are kept
    and reported in the 503 body.
    """
    batch = [
        RawFile(
            name=upload.filename or "unnamed",
            media_type=upload.content_type or "application/octet-stream",
            content=await upload.read(),
        )
        for upload in files
    ]

    try:
        report = await _get_batch_queue(request).submit(batch)
    except BatchAbortedError as exc:
        logger.error("Batch of %d files stopped at %s: %s", len(batch), exc.file_name, exc)
        partial = _ingest_response(exc.report)
        body = IngestAbortedResponse(
            detail=f"Classifier unavailable at {exc.file_name}: {exc}",
            photos=partial.photos,
            notifications=partial.notifications,
        )
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body.model_dump(mode="json"))

    return _ingest_response(report)


def _ingest_response(report: IngestReport) -> IngestResponse:
    return IngestResponse(
        photos=[PhotoOut.from_record(record) for record in report.records],
        notifications=[NotificationOut.from_notification(n) for n in report.notifications],
    )


@router.get("/photos", response_model=GalleryResponse, summary="List all photos")
async def list_photos(request: Request) -> GalleryResponse:
    """Return every photo in upload order, ignoring the filter."""
    records = _get_gallery(request).store.list()
    return GalleryResponse(photos=[PhotoOut.from_record(r) for r in records], total_count=len(records))


@router.get("/photos/visible", response_model=VisibleResponse, summary="List photos under the active filter")
async def visible_photos(request: Request) -> VisibleResponse:
    gallery = _get_gallery(request)
    records = gallery.visible()
    return VisibleResponse(
        photos=[PhotoOut.from_record(r) for r in records],
        total_count=len(records),
        filter=FilterOut.from_state(gallery.filter.state),
    )


@router.get(
    "/photos/{photo_id}/image",
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Download the stored image",
)
async def photo_image(request: Request, photo_id: UUID) -> Response:
    record = _get_gallery(request).store.get(photo_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Photo not found")
    return Response(content=record.content, media_type=record.media_type)


@router.delete("/photos/{photo_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a photo")
async def delete_photo(request: Request, photo_id: UUID) -> Response:
    """Remove a photo. Deleting an unknown id is a no-op."""
    _get_gallery(request).delete(photo_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/categories", response_model=CategoriesResponse, summary="List categories")
async def list_categories(request: Request) -> CategoriesResponse:
    counts = _get_gallery(request).store.category_counts()
    return CategoriesResponse(categories=[CategoryCount(category=c, count=n) for c, n in counts.items()])


@router.get("/filter", response_model=FilterOut, summary="Current category filter")
async def get_filter(request: Request) -> FilterOut:
    return FilterOut.from_state(_get_gallery(request).filter.state)


@router.put("/filter", response_model=FilterOut, summary="Select a category filter")
async def set_filter(request: Request, body: FilterRequest) -> FilterOut:
    """Select a category, or all photos when ``category`` is null.

    Selecting a category that no photo carries leaves the filter unchanged.
    """
    gallery = _get_gallery(request)
    if body.category is None:
        gallery.select_all()
    else:
        gallery.select_category(body.category)
    return FilterOut.from_state(gallery.filter.state)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    manager = _get_session_manager(request)
    pool = _get_inference_pool(request)
    backend = manager.backend
    return HealthResponse(
        status="ok",
        session_state=str(manager.state),
        backend=str(backend) if backend is not None else None,
        model=manager.model_name,
        photos=len(_get_gallery(request).store),
        pending_batches=_get_batch_queue(request).pending_batches,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the classification models and which one is configured."""
    active = _get_session_manager(request).model_name
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                repo_id=spec.repo_id,
                status="active" if spec.name == active else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )

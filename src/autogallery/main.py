"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from autogallery.api.routes import router
from autogallery.config import Settings, get_settings
from autogallery.gallery.filters import Gallery
from autogallery.gallery.ingestion import BatchProcessor, BatchQueue
from autogallery.ml.inference import InferencePool
from autogallery.ml.model_manager import ClassifierSessionManager

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build the gallery, classifier session manager, and batch queue on ``app.state``."""
    app.state.settings = settings

    inference_pool = InferencePool(settings)
    session_manager = ClassifierSessionManager(settings, inference_pool)
    gallery = Gallery()
    processor = BatchProcessor(
        session_manager,
        max_image_pixels=settings.max_image_pixels,
        max_file_size=settings.max_file_size,
    )

    app.state.inference_pool = inference_pool
    app.state.session_manager = session_manager
    app.state.gallery = gallery
    app.state.batch_queue = BatchQueue(processor, gallery)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting AutoGallery (device=%s, model=%s, workers=%s)",
        settings.device,
        settings.classification_model,
        settings.inference_workers,
    )

    init_state(app, settings)

    logger.info("AutoGallery ready; classifier session loads on first upload")
    yield

    logger.info("Shutting down AutoGallery")
    app.state.session_manager.shutdown()
    app.state.inference_pool.shutdown()
    logger.info("AutoGallery shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="AutoGallery",
        description="Photo gallery with on-device image classification and category filtering",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("autogallery.main:app", host=settings.host, port=settings.port)

"""Tests for the AutoGallery HTTP API."""

from __future__ import annotations

import asyncio
import io
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

import httpx
import pytest
from fastapi import FastAPI, status
from PIL import Image

from autogallery.config import get_settings
from autogallery.gallery.filters import Gallery
from autogallery.gallery.ingestion import BatchProcessor, BatchQueue
from autogallery.main import create_app, init_state
from autogallery.ml.image_classifier import ClassificationResult
from autogallery.ml.model_manager import SessionUnavailableError


class ScriptedClassifier:
    """Answers classify calls from a list of responses."""

    def __init__(self, responses: Sequence[list[ClassificationResult] | BaseException]) -> None:
        self._responses = list(responses)

    async def classify(self, image: Image.Image) -> list[ClassificationResult]:
        await asyncio.sleep(0)
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), "blue").save(buffer, format="PNG")
    return buffer.getvalue()


def _init_app_state(
    app: FastAPI,
    responses: Sequence[list[ClassificationResult] | BaseException] = (),
    **env_overrides: str,
) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    env = {"AUTOGALLERY_DEVICE": "cpu", "AUTOGALLERY_MODELS_DIR": "/tmp/autogallery_test_models"}
    env.update(env_overrides)
    with patch.dict(os.environ, env):
        settings = get_settings()
    init_state(app, settings)

    processor = BatchProcessor(
        ScriptedClassifier(responses),
        max_image_pixels=settings.max_image_pixels,
        max_file_size=settings.max_file_size,
    )
    app.state.gallery = Gallery()
    app.state.batch_queue = BatchQueue(processor, app.state.gallery)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    app.state.inference_pool.shutdown()


async def _upload(client: httpx.AsyncClient, *files: tuple[str, bytes, str]) -> httpx.Response:
    return await client.post(
        "/api/v1/photos",
        files=[("files", (name, io.BytesIO(data), media_type)) for name, data, media_type in files],
    )


@pytest.fixture()
def app() -> FastAPI:
    """Create an app whose classifier labels the first image a tabby cat."""
    application = create_app()
    _init_app_state(
        application,
        responses=[
            [ClassificationResult("tabby cat", 0.92), ClassificationResult("feline", 0.3)],
            [ClassificationResult("golden retriever", 0.7)],
        ],
    )
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestUploadEndpoint:
    async def test_upload_classifies_and_rejects(self, client: httpx.AsyncClient) -> None:
        response = await _upload(
            client,
            ("a.png", _png_bytes(), "image/png"),
            ("b.txt", b"not an image", "text/plain"),
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert len(data["photos"]) == 1
        photo = data["photos"][0]
        assert photo["name"] == "a.png"
        assert photo["categories"] == ["tabby cat", "feline"]
        assert photo["confidence"] == pytest.approx(0.92)
        assert [(n["kind"], n["file_name"]) for n in data["notifications"]] == [
            ("classified", "a.png"),
            ("rejected", "b.txt"),
        ]

    async def test_backend_error_returns_unknown_photo(self) -> None:
        app = create_app()
        _init_app_state(app, responses=[RuntimeError("backend error")])
        async for ac in _make_client(app):
            response = await _upload(ac, ("c.png", _png_bytes(), "image/png"))
            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert data["photos"][0]["categories"] == ["unknown"]
            assert data["photos"][0]["confidence"] == 0.5
            assert data["notifications"][0]["kind"] == "error"

    async def test_session_unavailable_returns_503(self) -> None:
        app = create_app()
        _init_app_state(app, responses=[SessionUnavailableError("no backend")])
        async for ac in _make_client(app):
            response = await _upload(ac, ("c.png", _png_bytes(), "image/png"))
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            data = response.json()
            assert "no backend" in data["detail"]
            assert data["photos"] == []
            assert data["notifications"] == []

            listing = await ac.get("/api/v1/photos")
            assert listing.json()["total_count"] == 0

    async def test_503_body_carries_files_handled_before_failure(self) -> None:
        app = create_app()
        _init_app_state(app, responses=[SessionUnavailableError("no backend")])
        async for ac in _make_client(app):
            response = await _upload(
                ac,
                ("b.txt", b"not an image", "text/plain"),
                ("broken.jpg", b"\xff\xd8garbage", "image/jpeg"),
                ("good.png", _png_bytes(), "image/png"),
            )

            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            data = response.json()
            assert "good.png" in data["detail"]
            assert [p["name"] for p in data["photos"]] == ["broken.jpg"]
            assert data["photos"][0]["categories"] == ["unknown"]
            assert [(n["kind"], n["file_name"]) for n in data["notifications"]] == [
                ("rejected", "b.txt"),
                ("error", "broken.jpg"),
            ]

            listing = (await ac.get("/api/v1/photos")).json()
            assert listing["total_count"] == 1
            assert listing["photos"][0]["id"] == data["photos"][0]["id"]

    async def test_image_payload_served(self, client: httpx.AsyncClient) -> None:
        payload = _png_bytes()
        uploaded = await _upload(client, ("a.png", payload, "image/png"))
        image_url = uploaded.json()["photos"][0]["image_url"]

        response = await client.get(image_url)

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "image/png"
        assert response.content == payload

    async def test_unknown_image_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/photos/00000000-0000-0000-0000-000000000000/image")
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestGalleryEndpoints:
    async def test_categories_sorted_with_counts(self, client: httpx.AsyncClient) -> None:
        await _upload(client, ("a.png", _png_bytes(), "image/png"))

        response = await client.get("/api/v1/categories")

        assert response.json()["categories"] == [
            {"category": "feline", "count": 1},
            {"category": "tabby cat", "count": 1},
        ]

    async def test_filter_rejects_absent_category(self, client: httpx.AsyncClient) -> None:
        await _upload(client, ("a.png", _png_bytes(), "image/png"))
        selected = await client.put("/api/v1/filter", json={"category": "tabby cat"})
        assert selected.json() == {"category": "tabby cat"}

        response = await client.put("/api/v1/filter", json={"category": "dog"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"category": "tabby cat"}

    async def test_visible_follows_filter(self, client: httpx.AsyncClient) -> None:
        await _upload(
            client,
            ("a.png", _png_bytes(), "image/png"),
            ("b.png", _png_bytes(), "image/png"),
        )
        await client.put("/api/v1/filter", json={"category": "golden retriever"})

        visible = (await client.get("/api/v1/photos/visible")).json()
        assert [p["name"] for p in visible["photos"]] == ["b.png"]
        assert visible["filter"] == {"category": "golden retriever"}

        await client.put("/api/v1/filter", json={"category": None})
        visible = (await client.get("/api/v1/photos/visible")).json()
        assert visible["total_count"] == 2
        assert (await client.get("/api/v1/filter")).json() == {"category": None}

    async def test_delete_is_idempotent_and_resets_filter(self, client: httpx.AsyncClient) -> None:
        uploaded = await _upload(
            client,
            ("a.png", _png_bytes(), "image/png"),
            ("b.png", _png_bytes(), "image/png"),
        )
        cat_id = uploaded.json()["photos"][0]["id"]
        await client.put("/api/v1/filter", json={"category": "tabby cat"})

        first = await client.delete(f"/api/v1/photos/{cat_id}")
        second = await client.delete(f"/api/v1/photos/{cat_id}")

        assert first.status_code == status.HTTP_204_NO_CONTENT
        assert second.status_code == status.HTTP_204_NO_CONTENT
        assert (await client.get("/api/v1/filter")).json() == {"category": None}
        visible = (await client.get("/api/v1/photos/visible")).json()
        assert [p["name"] for p in visible["photos"]] == ["b.png"]
        listing = (await client.get("/api/v1/photos")).json()
        assert listing["total_count"] == 1


class TestHealthEndpoint:
    async def test_health_reports_uninitialized_session(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["session_state"] == "uninitialized"
        assert data["backend"] is None
        assert data["model"] == "mobilenetv4_conv_small"
        assert data["photos"] == 0
        assert isinstance(data["queue_depth"], int)


class TestModelsEndpoint:
    async def test_default_model_active(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        models = {m["name"]: m["status"] for m in response.json()["models"]}
        assert models["mobilenetv4_conv_small"] == "active"
        assert models["vit_base_patch16_224"] == "available"

    async def test_configured_model_active(self) -> None:
        app = create_app()
        _init_app_state(app, AUTOGALLERY_CLASSIFICATION_MODEL="vit_base_patch16_224")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/models")
            models = {m["name"]: m["status"] for m in response.json()["models"]}
            assert models["vit_base_patch16_224"] == "active"

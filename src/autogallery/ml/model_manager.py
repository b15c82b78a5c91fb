"""Classifier session manager: download the model, bind a backend, classify.

One ONNX InferenceSession is shared by the whole process. It is created
lazily on first use; concurrent first callers all await the same pending
initialization. Backend selection walks an ordered candidate list
(accelerated provider first, CPU fallback second) exactly once per
initialization, and the winning backend is kept for the process lifetime.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

import onnxruntime
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from autogallery.ml.image_classifier import OnnxImageClassifier, load_labels

if TYPE_CHECKING:
    from PIL import Image

    from autogallery.config import Settings
    from autogallery.ml.image_classifier import ClassificationResult
    from autogallery.ml.inference import InferencePool

logger = logging.getLogger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


class SessionUnavailableError(RuntimeError):
    """No backend could be bound; classification cannot proceed."""


class BackendUnavailableError(RuntimeError):
    """A single backend candidate could not be bound."""


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    config_filename: str
    input_size: int
    mean: tuple[float, float, float]
    std: tuple[float, float, float]
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenetv4_conv_small": ModelSpec(
        name="mobilenetv4_conv_small",
        repo_id="onnx-community/mobilenetv4_conv_small.e2400_r224_in1k",
        filename="model.onnx",
        subfolder="onnx",
        config_filename="config.json",
        input_size=224,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        license="Apache-2.0",
    ),
    "vit_base_patch16_224": ModelSpec(
        name="vit_base_patch16_224",
        repo_id="Xenova/vit-base-patch16-224",
        filename="model.onnx",
        subfolder="onnx",
        config_filename="config.json",
        input_size=224,
        mean=(0.5, 0.5, 0.5),
        std=(0.5, 0.5, 0.5),
        license="Apache-2.0",
    ),
}


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class SessionState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class Backend(StrEnum):
    ACCELERATED = "accelerated"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class BackendCandidate:
    """One entry of the ordered backend list."""

    backend: Backend
    provider: str
    options: dict[str, object]


@dataclass(frozen=True)
class SessionHandle:
    """A ready classifier bound to the backend chosen at initialization."""

    backend: Backend
    provider: str
    classifier: OnnxImageClassifier


@dataclass(frozen=True)
class ModelFiles:
    model: Path
    config: Path


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ClassifierSessionManager:
    """Owns the process-wide classifier session."""

    def __init__(self, settings: Settings, pool: InferencePool) -> None:
        self._settings = settings
        self._pool = pool
        self._spec = self._get_spec(settings.classification_model)
        self._models_dir = Path(settings.models_dir)

        self._state = SessionState.UNINITIALIZED
        self._pending: asyncio.Task[SessionHandle] | None = None
        self._handle: SessionHandle | None = None
        self._files: ModelFiles | None = None

        self._candidates = self._build_candidates()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def backend(self) -> Backend | None:
        """Backend bound to the ready session, or None before initialization."""
        return self._handle.backend if self._handle is not None else None

    @property
    def model_name(self) -> str:
        return self._spec.name

    async def ensure_session(self) -> SessionHandle:
        """Return the shared session, initializing it on first use.

        Callers arriving while initialization is in flight await the same
        pending task instead of starting another one.

        Raises:
            SessionUnavailableError: If every backend candidate failed.
        """
        if self._handle is not None:
            return self._handle

        if self._pending is None:
            self._state = SessionState.INITIALIZING
            self._pending = asyncio.get_running_loop().create_task(self._initialize())
        return await asyncio.shield(self._pending)

    async def classify(self, image: Image.Image) -> list[ClassificationResult]:
        """Classify a decoded RGB image with the shared session.

        Returns at most three predictions, highest score first. Backend errors
        are not caught here.
        """
        handle = await self.ensure_session()
        return await self._pool.run(handle.classifier.classify, image)

    def ensure_downloaded(self) -> ModelFiles:
        """Download the model and its label config if not already present."""
        if self._files is not None and self._files.model.exists() and self._files.config.exists():
            return self._files

        spec = self._spec
        model_path = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        config_path = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.config_filename,
                local_dir=str(self._models_dir),
            )
        )
        self._files = ModelFiles(model=model_path, config=config_path)
        logger.info("Downloaded %s to %s", spec.name, model_path)
        return self._files

    def shutdown(self) -> None:
        """Drop the cached session."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        self._handle = None
        self._state = SessionState.UNINITIALIZED
        logger.info("Classifier session released")

    # -- Internal -----------------------------------------------------------

    async def _initialize(self) -> SessionHandle:
        try:
            try:
                files = await self._pool.run(self.ensure_downloaded)
                labels = await self._pool.run(load_labels, files.config)
            except Exception as exc:
                raise SessionUnavailableError(f"Cannot fetch model {self._spec.name}: {exc}") from exc

            failures: list[str] = []
            for candidate in self._candidates:
                try:
                    session = await self._pool.run(self._bind, candidate, files.model)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Backend %s (%s) unavailable: %s", candidate.backend, candidate.provider, exc)
                    failures.append(f"{candidate.provider}: {exc}")
                    continue

                handle = SessionHandle(
                    backend=candidate.backend,
                    provider=candidate.provider,
                    classifier=OnnxImageClassifier(session, labels, self._spec),
                )
                self._handle = handle
                self._state = SessionState.READY
                logger.info(
                    "Classifier %s ready on %s backend (%s)",
                    self._spec.name,
                    candidate.backend,
                    candidate.provider,
                )
                return handle

            raise SessionUnavailableError("No inference backend available: " + "; ".join(failures))
        except BaseException:
            if self._is_current():
                self._state = SessionState.UNINITIALIZED
            raise
        finally:
            if self._is_current():
                self._pending = None

    def _is_current(self) -> bool:
        # A run cancelled by shutdown() must not touch the state of a newer run.
        return self._pending is asyncio.current_task()

    def _bind(self, candidate: BackendCandidate, model_path: Path) -> InferenceSession:
        if candidate.provider not in onnxruntime.get_available_providers():
            raise BackendUnavailableError(f"{candidate.provider} is not available in this onnxruntime build")

        providers: list[str | tuple[str, dict[str, object]]] = [candidate.provider]
        if candidate.options:
            providers = [(candidate.provider, candidate.options)]
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=providers,
        )
        # onnxruntime silently downgrades to CPU when a provider fails to load.
        active = session.get_providers()
        if not active or active[0] != candidate.provider:
            raise BackendUnavailableError(f"{candidate.provider} requested but session bound to {active}")
        return session

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _build_candidates(self) -> list[BackendCandidate]:
        device = self._settings.device
        candidates: list[BackendCandidate] = []
        if device == "cuda":
            candidates.append(
                BackendCandidate(
                    backend=Backend.ACCELERATED,
                    provider="CUDAExecutionProvider",
                    options={
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                )
            )
        elif device == "openvino":
            candidates.append(
                BackendCandidate(
                    backend=Backend.ACCELERATED,
                    provider="OpenVINOExecutionProvider",
                    options={"device_type": "GPU"},
                )
            )
        candidates.append(BackendCandidate(backend=Backend.FALLBACK, provider=CPU_PROVIDER, options={}))
        return candidates

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        return opts

"""Image classification on top of a bound ONNX session.

Turns a decoded image into ranked (label, score) predictions: preprocessing,
one ``session.run`` call, softmax over the logits, then top-k ranking.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from autogallery.ml.preprocessing import to_model_input

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession
    from PIL import Image

    from autogallery.ml.model_manager import ModelSpec

MAX_LABELS = 3


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    score: float


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    """Numerically stable softmax over the last axis."""
    shifted = logits - np.max(logits, axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return (exp / np.sum(exp, axis=-1, keepdims=True)).astype(np.float32)


def rank_predictions(
    probabilities: Sequence[float] | NDArray[np.float32],
    labels: Mapping[int, str],
    limit: int = MAX_LABELS,
) -> list[ClassificationResult]:
    """Return the ``limit`` highest-scoring predictions, best first.

    Class indices missing from ``labels`` are reported as ``LABEL_<index>``.
    Ties keep the lower class index first.
    """
    scores = np.asarray(probabilities, dtype=np.float32).reshape(-1)
    if limit <= 0 or scores.size == 0:
        return []
    order = np.argsort(-scores, kind="stable")[:limit]
    return [
        ClassificationResult(label=labels.get(int(index), f"LABEL_{int(index)}"), score=float(scores[index]))
        for index in order
    ]


def load_labels(config_path: Path) -> dict[int, str]:
    """Read the ``id2label`` table from a HuggingFace ``config.json``."""
    with config_path.open(encoding="utf-8") as fh:
        config = json.load(fh)
    try:
        id2label = config["id2label"]
    except KeyError:
        raise ValueError(f"{config_path} has no id2label table") from None
    return {int(index): str(label) for index, label in id2label.items()}


class OnnxImageClassifier:
    """Classifier bound to one ONNX session and its label table."""

    def __init__(self, session: InferenceSession, labels: Mapping[int, str], spec: ModelSpec) -> None:
        self._session = session
        self._labels = dict(labels)
        self._spec = spec
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        return self._spec.name

    def classify(self, image: Image.Image, limit: int = MAX_LABELS) -> list[ClassificationResult]:
        """Classify an RGB image and return ranked predictions.

        Runs synchronously; callers offload it to the inference pool.
        Backend errors from ``session.run`` propagate unchanged.
        """
        tensor = to_model_input(image, self._spec.input_size, self._spec.mean, self._spec.std)
        outputs = self._session.run(None, {self._input_name: tensor})
        logits = np.asarray(outputs[0], dtype=np.float32)[0]
        return rank_predictions(softmax(logits), self._labels, limit)

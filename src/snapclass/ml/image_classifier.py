"""Image classification backends.

The ONNX backend tags objects/scenes using ImageNet-style models
(MobileNetV3, EfficientNet, ConvNeXt) exported to ONNX.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from snapclass.core.models import Category
from snapclass.ml.model_manager import get_spec
from snapclass.ml.preprocessing import preprocess_for_classification

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from snapclass.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[Category]:
        """Classify an image and return ranked tags.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of categories sorted by confidence (descending).
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class OnnxImageClassifier:
    """Runs a registered ONNX classification model through the model manager."""

    def __init__(self, model_manager: ModelManager, model_name: str, top_k: int = 10) -> None:
        self._model_manager = model_manager
        self._spec = get_spec(model_name)
        self._top_k = top_k

    @property
    def model_name(self) -> str:
        return self._spec.name

    def classify(self, image: NDArray[np.uint8]) -> list[Category]:
        session = self._model_manager.get_session(self._spec.name)
        labels = self._model_manager.load_labels(self._spec.name)

        tensor = preprocess_for_classification(image, self._spec.input_size)
        input_name = session.get_inputs()[0].name
        (logits,) = session.run(None, {input_name: tensor})[:1]

        scores = np.asarray(logits, dtype=np.float32).reshape(-1)
        if scores.shape[0] != len(labels):
            raise RuntimeError(
                f"Model '{self._spec.name}' produced {scores.shape[0]} scores for {len(labels)} labels"
            )
        if not self._spec.outputs_probabilities:
            scores = softmax(scores)

        order = np.argsort(scores)[::-1][: self._top_k]
        # Clamp float32 rounding noise into [0, 1].
        return [Category(label=labels[i], score=float(np.clip(scores[i], 0.0, 1.0))) for i in order]

"""MobileNet classifier backed by ONNX Runtime.

``MobileNetLoader.load`` resolves a version/alpha pair to a registered ONNX
model and returns an ``OnnxMobileNet``, whose ``classify`` runs inference in
the shared ``InferencePool``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from classifyx.config import get_settings
from classifyx.ml.image_classifier import ClassificationResult
from classifyx.ml.inference import InferencePool
from classifyx.ml.model_manager import OnnxModelManager, model_key
from classifyx.ml.preprocessing import prepare_input, to_rgb_array

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from classifyx.config import Settings
    from classifyx.ml.model_manager import ModelManager, ModelSpec
    from classifyx.ml.preprocessing import Layout
    from classifyx.ml.sources import ImageSource

logger = logging.getLogger(__name__)


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


def top_k_results(scores: NDArray[np.float32], labels: list[str], top_k: int) -> list[ClassificationResult]:
    """Pick the ``top_k`` highest scores, highest first."""
    order = np.argsort(scores)[::-1][:top_k]
    return [
        ClassificationResult(
            label=labels[i] if i < len(labels) else str(i),
            confidence=float(scores[i]),
        )
        for i in order
    ]


class OnnxMobileNet:
    """A loaded MobileNet model.

    The ONNX session is fetched from the model manager on every call, so an
    idle eviction releases it and the next call reloads it.
    """

    def __init__(
        self,
        spec: ModelSpec,
        manager: ModelManager,
        labels: list[str],
        pool: InferencePool,
    ) -> None:
        self._spec = spec
        self._manager = manager
        self._labels = labels
        self._pool = pool

    @property
    def model_name(self) -> str:
        return self._spec.name

    async def classify(self, image: ImageSource, top_k: int) -> list[ClassificationResult]:
        # Video frames are read on the event loop thread.
        rgb = to_rgb_array(image)
        return await self._pool.run(self._classify_sync, rgb, top_k)

    def _classify_sync(self, rgb: NDArray[np.uint8], top_k: int) -> list[ClassificationResult]:
        session = self._manager.get_session(self._spec.name)
        input_name, layout = _input_layout(session)
        tensor = prepare_input(rgb, self._spec.input_size, layout)
        outputs = session.run(None, {input_name: tensor})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.min() < 0.0 or abs(float(scores.sum()) - 1.0) > 1e-3:
            scores = softmax(scores)
        return top_k_results(scores, self._labels, top_k)


def _input_layout(session: InferenceSession) -> tuple[str, Layout]:
    model_input = session.get_inputs()[0]
    # Channels-first models declare (N, 3, H, W).
    if len(model_input.shape) == 4 and model_input.shape[1] == 3:
        return model_input.name, "NCHW"
    return model_input.name, "NHWC"


class MobileNetLoader:
    """Loads MobileNet models through a model manager."""

    def __init__(self, manager: ModelManager, pool: InferencePool) -> None:
        self._manager = manager
        self._pool = pool

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> MobileNetLoader:
        settings = settings or get_settings()
        return cls(OnnxModelManager(settings), InferencePool(settings))

    async def load(self, version: float, alpha: float) -> OnnxMobileNet:
        """Load MobileNet ``version`` with width multiplier ``alpha``.

        Raises:
            KeyError: If no model is registered for the pair.
        """
        name = model_key(version, alpha)
        spec = OnnxModelManager.get_spec(name)
        await self._pool.run(self._manager.get_session, name)
        labels = await self._pool.run(self._manager.get_labels, name)
        logger.info("Loaded %s with %d labels", name, len(labels))
        return OnnxMobileNet(spec, self._manager, labels, self._pool)

"""Image classification model protocol.

Implementations: MobileNet v1/v2 via ONNX Runtime (see ``classifyx.ml.mobilenet``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from classifyx.ml.sources import ImageSource


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for loaded image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    async def classify(self, image: ImageSource, top_k: int) -> list[ClassificationResult]:
        """Classify an image and return ranked labels.

        Args:
            image: Still image or video source (the current frame is used).
            top_k: Maximum number of results.

        Returns:
            At most ``top_k`` results sorted by confidence (descending).
        """
        ...

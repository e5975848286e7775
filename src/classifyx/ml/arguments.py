"""Resolution of overloaded positional arguments into typed call descriptors.

Both the session factory and ``predict`` accept their arguments in several
orders. The functions here probe each slot by type and capability and return
frozen descriptors; they never touch a model or an event loop.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from numbers import Integral
from typing import TYPE_CHECKING, Any

from classifyx.config import ModelName, parse_model_name
from classifyx.errors import InvalidInputError
from classifyx.ml.sources import is_still_image, is_video_source, unwrap

if TYPE_CHECKING:
    from classifyx.ml.sources import ImageSource, VideoSource

Callback = Callable[[BaseException | None, Any], object]


@dataclass(frozen=True)
class ClassifierCall:
    """Resolved arguments of the session factory."""

    model_name: ModelName
    video: VideoSource | None = None
    options: Mapping[str, object] = field(default_factory=dict)
    callback: Callback | None = None


@dataclass(frozen=True)
class PredictionRequest:
    """A validated request for one classification."""

    image: ImageSource
    top_k: int
    callback: Callback | None = None


@dataclass(frozen=True)
class PredictCall:
    """Resolved arguments of ``predict``; the image may still be missing."""

    image: ImageSource | None
    top_k: int
    callback: Callback | None = None

    def to_request(self) -> PredictionRequest:
        if self.image is None:
            raise InvalidInputError("No image to classify: pass an image or bind a video source")
        if self.top_k < 1:
            raise InvalidInputError(f"Number of classes must be a positive integer, got {self.top_k}")
        return PredictionRequest(image=self.image, top_k=self.top_k, callback=self.callback)


def _is_count(value: object) -> bool:
    return isinstance(value, Integral) and not isinstance(value, bool)


def _is_callback(value: object) -> bool:
    return callable(value) and not is_video_source(value)


def resolve_classifier_args(
    model_name: object,
    second: object = None,
    third: object = None,
    fourth: object = None,
) -> ClassifierCall:
    """Resolve ``(model, video | options | callback, options | callback, callback)``.

    Raises:
        ConfigurationError: If ``model_name`` is not a supported identifier.
    """
    name = parse_model_name(model_name)
    video: VideoSource | None = None
    options: dict[str, object] = {}
    callback: Callback | None = None

    if is_video_source(second):
        video = second  # type: ignore[assignment]
    elif is_video_source(unwrap(second)):
        video = unwrap(second)  # type: ignore[assignment]
    elif isinstance(second, Mapping):
        options.update(second)
    elif _is_callback(second):
        callback = second  # type: ignore[assignment]

    if isinstance(third, Mapping):
        options.update(third)
    elif _is_callback(third):
        callback = third  # type: ignore[assignment]

    if _is_callback(fourth):
        callback = fourth  # type: ignore[assignment]

    return ClassifierCall(model_name=name, video=video, options=options, callback=callback)


def parse_predict_args(
    first: object = None,
    second: object = None,
    third: object = None,
    *,
    video: VideoSource | None,
    default_top_k: int,
) -> PredictCall:
    """Resolve ``(image | count | callback, count | callback, callback)``."""
    image: ImageSource | None = None
    top_k = default_top_k
    callback: Callback | None = None

    candidate = unwrap(first)
    if first is None:
        image = video
    elif is_video_source(candidate) or is_still_image(candidate):
        image = candidate  # type: ignore[assignment]
    elif _is_callback(first):
        image = video
        callback = first  # type: ignore[assignment]
    elif _is_count(first):
        image = video
        top_k = int(first)  # type: ignore[call-overload]

    # Deliberate: a numeric second argument is the count; the first is not re-read.
    if _is_count(second):
        top_k = int(second)  # type: ignore[call-overload]
    elif _is_callback(second):
        callback = second  # type: ignore[assignment]

    if _is_callback(third):
        callback = third  # type: ignore[assignment]

    return PredictCall(image=image, top_k=top_k, callback=callback)


def resolve_predict_args(
    first: object = None,
    second: object = None,
    third: object = None,
    *,
    video: VideoSource | None,
    default_top_k: int,
) -> PredictionRequest:
    """Resolve predict arguments and validate the result.

    Raises:
        InvalidInputError: If no image can be resolved or top-k is not positive.
    """
    call = parse_predict_args(first, second, third, video=video, default_top_k=default_top_k)
    return call.to_request()

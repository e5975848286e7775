"""Classification sessions: model lifecycle, readiness gating and completion.

A session starts loading its model as soon as it is constructed. Every
``predict`` call waits on the same load task, yields one event-loop tick, and
on a video-bound session the very first call also waits for the video source
to start producing frames. Results are delivered through the returned future
and, when one was given, through a ``(error, result)`` callback observing the
same future.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from classifyx.config import ModelName, build_model_config
from classifyx.errors import ClassificationError, ClassifierError, ModelLoadError
from classifyx.ml.arguments import parse_predict_args, resolve_classifier_args

if TYPE_CHECKING:
    from collections.abc import Callable

    from classifyx.config import ModelConfig
    from classifyx.ml.arguments import Callback, PredictCall
    from classifyx.ml.image_classifier import ClassificationResult, ImageClassifier
    from classifyx.ml.sources import VideoSource

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ModelLoader(Protocol):
    """Protocol for the model loading capability."""

    async def load(self, version: float, alpha: float) -> ImageClassifier:
        """Load the model identified by ``version`` and ``alpha``."""
        ...


def call_callback(future: asyncio.Future[T], callback: Callback | None) -> asyncio.Future[T]:
    """Attach a node-style ``(error, result)`` observer to ``future``.

    The future itself is returned untouched, so callers may await it as well.
    """
    if callback is None:
        return future

    def _deliver(done: asyncio.Future[T]) -> None:
        if done.cancelled():
            callback(asyncio.CancelledError(), None)
            return
        error = done.exception()
        if error is not None:
            callback(error, None)
        else:
            callback(None, done.result())

    future.add_done_callback(_deliver)
    return future


async def next_frame() -> None:
    """Yield one tick to the event loop."""
    await asyncio.sleep(0)


class ClassificationSession:
    """A loaded (or loading) classifier bound to an optional video source."""

    def __init__(
        self,
        config: ModelConfig,
        video: VideoSource | None,
        loader: ModelLoader,
        callback: Callback | None = None,
    ) -> None:
        self.config = config
        self.video = video
        self._loader = loader
        self._model: ImageClassifier | None = None

        self._source_ready = False
        self._source_wait: asyncio.Future[None] | None = None

        logger.info(
            "Loading %s (version=%s, alpha=%s)",
            config.name.value,
            config.version,
            config.alpha,
        )
        self.ready: asyncio.Task[None] = asyncio.ensure_future(self._load_model())
        call_callback(self.ready, callback)

    @property
    def model_name(self) -> ModelName:
        return self.config.name

    @property
    def is_ready(self) -> bool:
        return self.ready.done() and not self.ready.cancelled() and self.ready.exception() is None

    async def _load_model(self) -> None:
        try:
            self._model = await self._loader.load(self.config.version, self.config.alpha)
        except Exception as exc:
            logger.exception("Failed to load %s", self.config.name.value)
            raise ModelLoadError(f"Failed to load {self.config.name.value}: {exc}") from exc
        logger.info("%s ready", self.config.name.value)

    async def wait_ready(self) -> ClassificationSession:
        """Wait for the model to load and return this session."""
        await asyncio.shield(self.ready)
        return self

    def predict(
        self,
        image_num_or_callback: object = None,
        num_or_callback: object = None,
        callback: object = None,
    ) -> asyncio.Future[list[ClassificationResult]]:
        """Classify an image (or the bound video) and return a future of results.

        Accepted shapes::

            predict()                    # bound video, default top-k
            predict(5)                   # bound video, top 5
            predict(callback)            # bound video, result to callback
            predict(image, 5, callback)  # explicit still image
        """
        call = parse_predict_args(
            image_num_or_callback,
            num_or_callback,
            callback,
            video=self.video,
            default_top_k=self.config.topk,
        )
        task = asyncio.ensure_future(self._predict(call))
        return call_callback(task, call.callback)

    async def _predict(self, call: PredictCall) -> list[ClassificationResult]:
        request = call.to_request()

        await asyncio.shield(self.ready)
        await next_frame()

        if self.video is not None and not self._source_ready:
            await self._wait_for_source()

        if self._model is None:
            raise ModelLoadError(f"{self.config.name.value} is not loaded")
        try:
            return await self._model.classify(request.image, request.top_k)
        except ClassifierError:
            raise
        except Exception as exc:
            raise ClassificationError(f"Classification failed: {exc}") from exc

    async def _wait_for_source(self) -> None:
        if self._source_wait is None:
            loop = asyncio.get_running_loop()
            self._source_wait = loop.create_future()
            waiter = self._source_wait

            def _on_ready() -> None:
                loop.call_soon_threadsafe(_resolve, waiter)

            logger.debug("Waiting for video source to produce frames")
            self.video.on_ready(_on_ready)  # type: ignore[union-attr]

        await asyncio.shield(self._source_wait)
        self._source_ready = True


def _resolve(waiter: asyncio.Future[None]) -> None:
    if not waiter.done():
        waiter.set_result(None)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


@functools.cache
def default_loader(name: ModelName) -> ModelLoader:
    """Return the registered loader for ``name``, shared by every session using it."""
    from classifyx.ml.mobilenet import MobileNetLoader

    loaders: dict[ModelName, Callable[[], ModelLoader]] = {
        ModelName.MOBILENET: MobileNetLoader.from_settings,
    }
    return loaders[name]()


def image_classifier(
    model_name: object,
    video_or_options_or_callback: object = None,
    options_or_callback: object = None,
    callback: object = None,
    *,
    loader: ModelLoader | None = None,
) -> Any:
    """Create a classification session.

    Returns the session itself when a callback was given, otherwise a future
    resolving to the session once its model has loaded. Must be called while
    an event loop is running.

    Raises:
        ConfigurationError: If the model name or options are invalid.
    """
    resolved = resolve_classifier_args(
        model_name,
        video_or_options_or_callback,
        options_or_callback,
        callback,
    )
    config = build_model_config(resolved.model_name, resolved.options)
    session = ClassificationSession(
        config,
        resolved.video,
        loader if loader is not None else default_loader(config.name),
        resolved.callback,
    )
    if resolved.callback is not None:
        return session
    return asyncio.ensure_future(session.wait_ready())

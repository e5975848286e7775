"""Tests for classification sessions and the session factory."""

from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, patch

import numpy as np
import pytest

from classifyx.config import ModelName
from classifyx.errors import (
    ClassificationError,
    ConfigurationError,
    InvalidInputError,
    ModelLoadError,
)
from classifyx.ml.image_classifier import ClassificationResult
from classifyx.ml.session import (
    ClassificationSession,
    call_callback,
    default_loader,
    image_classifier,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from numpy.typing import NDArray

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

RESULTS = [
    ClassificationResult(label="tabby cat", confidence=0.6),
    ClassificationResult(label="tiger cat", confidence=0.2),
    ClassificationResult(label="lynx", confidence=0.1),
    ClassificationResult(label="fox", confidence=0.05),
    ClassificationResult(label="dog", confidence=0.03),
    ClassificationResult(label="wolf", confidence=0.02),
]


class FakeModel:
    model_name = "fake"

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[object, int]] = []

    async def classify(self, image: object, top_k: int) -> list[ClassificationResult]:
        self.calls.append((image, top_k))
        if self.error is not None:
            raise self.error
        return RESULTS[:top_k]


class FakeLoader:
    def __init__(
        self,
        model: FakeModel | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.model = model or FakeModel()
        self.error = error
        self.gate = gate
        self.calls: list[tuple[float, float]] = []

    async def load(self, version: float, alpha: float) -> FakeModel:
        self.calls.append((version, alpha))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.model


class FakeVideo:
    def __init__(self, playing: bool = False) -> None:
        self.playing = playing
        self.listeners: list[Callable[[], None]] = []

    def read_frame(self) -> NDArray[np.uint8]:
        return np.zeros((8, 8, 3), dtype=np.uint8)

    def on_ready(self, listener: Callable[[], None]) -> None:
        self.listeners.append(listener)
        if self.playing:
            listener()

    def start(self) -> None:
        self.playing = True
        for listener in self.listeners:
            listener()


class Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[BaseException | None, object]] = []

    def __call__(self, error: BaseException | None, result: object) -> None:
        self.calls.append((error, result))


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _image() -> NDArray[np.uint8]:
    return np.full((16, 16, 3), 255, dtype=np.uint8)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestImageClassifierFactory:
    async def test_without_callback_returns_future_of_session(self) -> None:
        loader = FakeLoader()
        ready = image_classifier("MobileNet", loader=loader)

        assert isinstance(ready, asyncio.Future)
        session = await ready
        assert isinstance(session, ClassificationSession)
        assert session.is_ready

    async def test_with_callback_returns_session(self) -> None:
        recorder = Recorder()
        session = image_classifier("mobilenet", recorder, loader=FakeLoader())

        assert isinstance(session, ClassificationSession)
        await session.ready
        await _settle()
        assert recorder.calls == [(None, None)]

    async def test_defaults_reach_loader(self) -> None:
        loader = FakeLoader()
        session = await image_classifier("mobilenet", loader=loader)

        assert session.model_name is ModelName.MOBILENET
        assert (session.config.version, session.config.alpha, session.config.topk) == (1, 1.0, 3)
        assert loader.calls == [(1.0, 1.0)]

    async def test_options_reach_loader(self) -> None:
        loader = FakeLoader()
        session = await image_classifier("mobilenet", {"version": 2, "alpha": 0.75, "topk": 5}, loader=loader)

        assert loader.calls == [(2.0, 0.75)]
        assert session.config.topk == 5

    async def test_unknown_model_raises_before_loading(self) -> None:
        loader = FakeLoader()
        with pytest.raises(ConfigurationError):
            image_classifier("resnet", loader=loader)
        assert loader.calls == []

    async def test_cancelled_wait_does_not_cancel_load(self) -> None:
        gate = asyncio.Event()
        session = image_classifier("mobilenet", Recorder(), loader=FakeLoader(gate=gate))

        waiter = asyncio.ensure_future(session.wait_ready())
        await _settle()
        waiter.cancel()
        await _settle()
        gate.set()

        assert await session.wait_ready() is session
        assert session.is_ready

    async def test_default_loader_shared_between_sessions(self) -> None:
        default_loader.cache_clear()
        loader = FakeLoader()
        try:
            with patch("classifyx.ml.mobilenet.MobileNetLoader.from_settings", return_value=loader) as build:
                first = await image_classifier("mobilenet")
                second = await image_classifier("MobileNet", {"topk": 5})
        finally:
            default_loader.cache_clear()

        build.assert_called_once()
        assert first._loader is loader
        assert second._loader is loader

    def test_default_loader_builds_one_pool(self, tmp_path: Path) -> None:
        default_loader.cache_clear()
        with patch.dict(os.environ, {"CLASSIFYX_MODELS_DIR": str(tmp_path)}):
            first = default_loader(ModelName.MOBILENET)
            second = default_loader(ModelName.MOBILENET)
        default_loader.cache_clear()

        assert first is second
        assert first._pool is second._pool  # type: ignore[attr-defined]
        first._pool.shutdown()  # type: ignore[attr-defined]

    async def test_binds_video(self) -> None:
        video = FakeVideo(playing=True)
        session = await image_classifier("mobilenet", video, loader=FakeLoader())
        assert session.video is video


# ---------------------------------------------------------------------------
# Predict
# ---------------------------------------------------------------------------


class TestPredict:
    async def test_predict_bound_video_uses_default_top_k(self) -> None:
        model = FakeModel()
        video = FakeVideo(playing=True)
        session = await image_classifier("mobilenet", video, loader=FakeLoader(model))

        results = await session.predict()

        assert len(results) <= 3
        confidences = [r.confidence for r in results]
        assert confidences == sorted(confidences, reverse=True)
        assert model.calls == [(video, 3)]

    async def test_predict_with_count(self) -> None:
        model = FakeModel()
        session = await image_classifier("mobilenet", FakeVideo(playing=True), loader=FakeLoader(model))

        results = await session.predict(5)

        assert len(results) <= 5
        assert model.calls[0][1] == 5

    async def test_predict_still_image(self) -> None:
        model = FakeModel()
        session = await image_classifier("mobilenet", loader=FakeLoader(model))
        image = _image()

        await session.predict(image)

        assert model.calls[0][0] is image

    async def test_still_image_takes_precedence_over_bound_video(self) -> None:
        model = FakeModel()
        session = await image_classifier("mobilenet", FakeVideo(playing=True), loader=FakeLoader(model))
        image = _image()

        await session.predict(image, 2)

        assert model.calls == [(image, 2)]

    async def test_no_image_raises_invalid_input(self) -> None:
        session = await image_classifier("mobilenet", loader=FakeLoader())
        with pytest.raises(InvalidInputError):
            await session.predict()

    async def test_no_image_error_reaches_callback(self) -> None:
        session = await image_classifier("mobilenet", loader=FakeLoader())
        recorder = Recorder()

        future = session.predict(recorder)
        with pytest.raises(InvalidInputError) as excinfo:
            await future
        await _settle()

        assert recorder.calls == [(excinfo.value, None)]

    async def test_predict_waits_for_model_load(self) -> None:
        gate = asyncio.Event()
        model = FakeModel()
        session = image_classifier("mobilenet", Recorder(), loader=FakeLoader(model, gate=gate))

        future = session.predict(_image())
        await _settle()
        assert not future.done()
        assert model.calls == []

        gate.set()
        assert len(await future) == 3

    async def test_predict_yields_a_tick_after_ready(self) -> None:
        session = await image_classifier("mobilenet", loader=FakeLoader())
        with patch("classifyx.ml.session.next_frame", new_callable=AsyncMock) as tick:
            await session.predict(_image())
        tick.assert_awaited_once()

    async def test_callback_and_future_see_same_result(self) -> None:
        session = await image_classifier("mobilenet", loader=FakeLoader())
        recorder = Recorder()

        results = await session.predict(_image(), 2, recorder)
        await _settle()

        assert recorder.calls == [(None, results)]

    async def test_callback_and_future_see_same_error(self) -> None:
        model = FakeModel(error=RuntimeError("inference failed"))
        session = await image_classifier("mobilenet", loader=FakeLoader(model))
        recorder = Recorder()

        future = session.predict(_image(), recorder)
        with pytest.raises(ClassificationError) as excinfo:
            await future
        await _settle()

        assert recorder.calls == [(excinfo.value, None)]
        assert isinstance(excinfo.value.__cause__, RuntimeError)

    async def test_timed_out_predict_does_not_cancel_load(self) -> None:
        gate = asyncio.Event()
        session = image_classifier("mobilenet", Recorder(), loader=FakeLoader(gate=gate))

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(session.predict(_image()), timeout=0.01)
        gate.set()

        assert len(await session.predict(_image())) == 3
        assert session.is_ready

    async def test_session_usable_after_classification_error(self) -> None:
        model = FakeModel(error=RuntimeError("inference failed"))
        session = await image_classifier("mobilenet", loader=FakeLoader(model))

        with pytest.raises(ClassificationError):
            await session.predict(_image())

        model.error = None
        assert len(await session.predict(_image())) == 3


# ---------------------------------------------------------------------------
# Source-ready gate
# ---------------------------------------------------------------------------


class TestSourceReadyGate:
    async def test_first_predict_waits_for_video(self) -> None:
        video = FakeVideo()
        session = await image_classifier("mobilenet", video, loader=FakeLoader())

        first = session.predict()
        await _settle()
        assert not first.done()
        assert len(video.listeners) == 1

        video.start()
        assert len(await first) == 3

    async def test_second_predict_does_not_wait_again(self) -> None:
        video = FakeVideo()
        session = await image_classifier("mobilenet", video, loader=FakeLoader())

        first = session.predict()
        await _settle()
        video.start()
        await first

        # The source never fires again; the second call must not depend on it.
        second = session.predict()
        assert len(await asyncio.wait_for(second, timeout=1.0)) == 3
        assert len(video.listeners) == 1

    async def test_concurrent_predicts_share_one_wait(self) -> None:
        video = FakeVideo()
        session = await image_classifier("mobilenet", video, loader=FakeLoader())

        futures = [session.predict(), session.predict(2), session.predict(1)]
        await _settle()
        assert not any(f.done() for f in futures)
        assert len(video.listeners) == 1

        video.start()
        results = await asyncio.gather(*futures)
        assert [len(r) for r in results] == [3, 2, 1]

    async def test_timed_out_first_predict_keeps_gate(self) -> None:
        video = FakeVideo()
        session = await image_classifier("mobilenet", video, loader=FakeLoader())

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(session.predict(), timeout=0.01)
        video.start()

        assert len(await asyncio.wait_for(session.predict(), timeout=1.0)) == 3
        assert len(video.listeners) == 1

    async def test_no_gate_without_bound_video(self) -> None:
        session = await image_classifier("mobilenet", loader=FakeLoader())
        assert len(await asyncio.wait_for(session.predict(_image()), timeout=1.0)) == 3


# ---------------------------------------------------------------------------
# Load failures
# ---------------------------------------------------------------------------


class TestModelLoadFailure:
    async def test_every_predict_fails_with_same_error(self) -> None:
        gate = asyncio.Event()
        recorder = Recorder()
        loader = FakeLoader(error=OSError("weights missing"), gate=gate)
        session = image_classifier("mobilenet", FakeVideo(playing=True), recorder, loader=loader)

        before = session.predict()
        gate.set()
        with pytest.raises(ModelLoadError) as first:
            await before
        with pytest.raises(ModelLoadError) as second:
            await session.predict(_image())
        await _settle()

        assert first.value is second.value
        assert isinstance(first.value.__cause__, OSError)
        assert recorder.calls == [(first.value, None)]
        assert not session.is_ready

    async def test_future_form_rejects(self) -> None:
        ready = image_classifier("mobilenet", loader=FakeLoader(error=RuntimeError("no network")))
        with pytest.raises(ModelLoadError, match="no network"):
            await ready

    async def test_predict_callback_receives_load_error(self) -> None:
        session = image_classifier("mobilenet", Recorder(), loader=FakeLoader(error=RuntimeError("boom")))
        recorder = Recorder()

        with pytest.raises(ModelLoadError) as excinfo:
            await session.predict(_image(), recorder)
        await _settle()

        assert recorder.calls == [(excinfo.value, None)]


# ---------------------------------------------------------------------------
# call_callback
# ---------------------------------------------------------------------------


class TestCallCallback:
    async def test_returns_same_future(self) -> None:
        future: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        assert call_callback(future, None) is future
        assert call_callback(future, Recorder()) is future

    async def test_delivers_result(self) -> None:
        future: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        recorder = Recorder()
        call_callback(future, recorder)

        future.set_result(7)
        await _settle()

        assert recorder.calls == [(None, 7)]

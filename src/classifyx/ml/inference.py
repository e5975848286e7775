"""Inference concurrency layer.

Architecture:
    session.predict (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

Model loads and classify calls beyond the semaphore limit queue with a 5s
timeout, then raise ``TimeoutError``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from classifyx.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Bounds concurrent blocking model work and runs it off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="classifyx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Raises:
            TimeoutError: If the semaphore cannot be acquired within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        except TimeoutError:
            logger.warning("Inference queue full, gave up after %.1fs", SEMAPHORE_TIMEOUT_SECONDS)
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of calls waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)

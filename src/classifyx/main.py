"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from classifyx.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from classifyx.api.routes import router
from classifyx.config import get_settings
from classifyx.ml.inference import InferencePool
from classifyx.ml.mobilenet import MobileNetLoader
from classifyx.ml.model_manager import OnnxModelManager
from classifyx.ml.session import image_classifier

logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS: float = 60.0


async def evict_idle_models(manager: ModelManager, interval: float) -> None:
    """Unload idle model sessions every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        manager.unload_idle_models()


def _log_model_loaded(error: BaseException | None, _result: object) -> None:
    if error is None:
        logger.info("ClassifyX ready")
    else:
        logger.error("Default classifier failed to load: %s", error)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting ClassifyX (device=%s, max_concurrent=%s, model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_name,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager

    # The model loads in the background; requests get 503 until it is ready.
    app.state.session = image_classifier(
        settings.model_name,
        settings.session_options(),
        _log_model_loaded,
        loader=MobileNetLoader(model_manager, inference_pool),
    )

    eviction: asyncio.Task[None] | None = None
    if settings.model_ttl > 0:
        interval = min(float(settings.model_ttl), EVICTION_INTERVAL_SECONDS)
        eviction = asyncio.create_task(evict_idle_models(model_manager, interval))

    yield

    logger.info("Shutting down ClassifyX")
    if eviction is not None:
        eviction.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await eviction
    model_manager.shutdown()
    inference_pool.shutdown()
    logger.info("ClassifyX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ClassifyX",
        description="Image classification API over pretrained MobileNet models",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("classifyx.main:app", host=settings.host, port=settings.port)

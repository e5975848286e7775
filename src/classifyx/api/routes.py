"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from classifyx.api.middleware import verify_api_key
from classifyx.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from classifyx.errors import ClassificationError, ClassifierError, status_for
from classifyx.ml.model_manager import MODEL_REGISTRY, model_key
from classifyx.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from classifyx.config import Settings
    from classifyx.ml.inference import InferencePool
    from classifyx.ml.model_manager import ModelManager
    from classifyx.ml.session import ClassificationSession

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_session(request: Request) -> ClassificationSession:
    session: ClassificationSession = request.app.state.session
    return session


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    top_k: Annotated[int | None, Query(ge=1, le=100)] = None,
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return ranked tags."""
    settings = _get_settings(request)
    session = _get_session(request)
    if not session.ready.done():
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Model is still loading")

    raw = await file.read()
    if len(raw) > settings.max_file_size:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "File exceeds size limit")

    try:
        image = decode_image(raw, settings.max_image_pixels)
        if top_k is None:
            results = await session.predict(image)
        else:
            results = await session.predict(image, top_k)
    except ClassificationError as exc:
        if isinstance(exc.__cause__, TimeoutError):
            return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full")
        return _error(status_for(exc.code), exc.message)
    except ClassifierError as exc:
        return _error(status_for(exc.code), exc.message)

    return ClassifyImageResponse(
        model=model_key(session.config.version, session.config.alpha),
        tags=[ImageTag(label=r.label, confidence=r.confidence) for r in results],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        ready=_get_session(request).is_ready,
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and which one the default session uses."""
    config = _get_session(request).config
    active = model_key(config.version, config.alpha)

    models = [
        ModelInfo(
            name=spec.name,
            version=spec.version,
            alpha=spec.alpha,
            status="active" if spec.name == active else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)

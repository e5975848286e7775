"""Model manager: download, load, cache, and evict ONNX models.

Handles downloading MobileNet weights and label files from HuggingFace,
creating and caching ONNX InferenceSessions, and TTL-based eviction.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from classifyx.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is downloaded and return its file path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_labels(self, model_name: str) -> list[str]:
        """Return the class labels of a model, indexed by output position."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX model."""

    name: str
    version: int
    alpha: float
    filename: str
    labels_filename: str
    input_size: int
    license: str


def model_key(version: float, alpha: float) -> str:
    """Registry key for a MobileNet ``version`` and width multiplier ``alpha``."""
    return f"mobilenet_v{version:g}_{alpha:g}"


def _mobilenet(version: int, alpha: float) -> ModelSpec:
    name = model_key(version, alpha)
    return ModelSpec(
        name=name,
        version=version,
        alpha=alpha,
        filename=f"{name}_224.onnx",
        labels_filename="imagenet_labels.txt" if version == 1 else "imagenet_labels_1000.txt",
        input_size=224,
        license="Apache-2.0",
    )


MODEL_REGISTRY: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        _mobilenet(1, 0.25),
        _mobilenet(1, 0.5),
        _mobilenet(1, 0.75),
        _mobilenet(1, 1.0),
        _mobilenet(2, 0.5),
        _mobilenet(2, 0.75),
        _mobilenet(2, 1.0),
    )
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Downloads, loads, caches, and evicts ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, _CachedSession] = {}
        self._model_paths: dict[str, Path] = {}
        self._labels: dict[str, list[str]] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally."""
        spec = self.get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = self._download(spec.filename)
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_labels(self, model_name: str) -> list[str]:
        """Download (once) and return the label list of a model."""
        spec = self.get_spec(model_name)
        with self._lock:
            cached = self._labels.get(spec.labels_filename)
            if cached is not None:
                return cached

        path = self._download(spec.labels_filename)
        labels = [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
        with self._lock:
            self._labels[spec.labels_filename] = labels
        return labels

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.session

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                existing.last_used = time.monotonic()
                return existing.session
            self._sessions[model_name] = _CachedSession(
                session=session,
                last_used=time.monotonic(),
            )
            logger.info("Loaded session for %s", model_name)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def unload_idle_models(self) -> None:
        """Remove sessions that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._sessions.items() if (now - cached.last_used) > ttl]
            for name in expired:
                del self._sessions[name]
                logger.info("Evicted idle session for %s", name)

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    @staticmethod
    def get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    # -- Internal -----------------------------------------------------------

    def _download(self, filename: str) -> Path:
        return Path(
            hf_hub_download(
                repo_id=self._settings.models_repo,
                filename=filename,
                local_dir=str(self._models_dir),
            )
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts

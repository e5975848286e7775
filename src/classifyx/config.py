"""Environment-based settings and per-model classification defaults."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from classifyx.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from CLASSIFYX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLASSIFYX_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Default classification session (None = per-model default)
    model_name: str = "mobilenet"
    model_version: float | None = Field(default=None, gt=0)
    model_alpha: float | None = Field(default=None, gt=0)
    model_topk: int | None = Field(default=None, ge=1)

    # Model storage
    models_repo: str = "classifyx/mobilenet-onnx"
    models_dir: str = "/tmp/classifyx/models"  # noqa: S108

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    def session_options(self) -> dict[str, float | int]:
        """Options mapping for the default classification session."""
        options: dict[str, float | int] = {}
        if self.model_version is not None:
            options["version"] = self.model_version
        if self.model_alpha is not None:
            options["alpha"] = self.model_alpha
        if self.model_topk is not None:
            options["topk"] = self.model_topk
        return options


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()


# ---------------------------------------------------------------------------
# Model configuration
# ---------------------------------------------------------------------------


class ModelName(StrEnum):
    MOBILENET = "mobilenet"


class ModelConfig(BaseModel):
    """Resolved configuration of one classification session."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: ModelName
    version: float = Field(gt=0)
    alpha: float = Field(gt=0)
    topk: int = Field(ge=1)


MODEL_DEFAULTS: dict[ModelName, ModelConfig] = {
    ModelName.MOBILENET: ModelConfig(name=ModelName.MOBILENET, version=1, alpha=1.0, topk=3),
}


def parse_model_name(value: object) -> ModelName:
    """Match a model identifier case-insensitively against the supported set."""
    if not isinstance(value, str):
        raise ConfigurationError('Please specify a model to use. E.g: "MobileNet"')
    try:
        return ModelName(value.lower())
    except ValueError:
        supported = ", ".join(name.value for name in ModelName)
        raise ConfigurationError(f"Unknown model: {value!r} (supported: {supported})") from None


def build_model_config(name: ModelName, options: Mapping[str, object] | None = None) -> ModelConfig:
    """Merge caller options over the defaults for ``name``.

    Falsy option values fall back to the default; unknown keys are ignored.
    """
    defaults = MODEL_DEFAULTS[name]
    merged: dict[str, object] = defaults.model_dump()
    for key in ("version", "alpha", "topk"):
        value = (options or {}).get(key)
        if value:
            merged[key] = value
    try:
        return ModelConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid options for {name.value}: {exc}") from exc

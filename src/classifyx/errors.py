"""Exception taxonomy for classification sessions."""

from __future__ import annotations

from enum import StrEnum

from fastapi import status


class ErrorCode(StrEnum):
    CONFIGURATION = "configuration"
    INVALID_INPUT = "invalid_input"
    MODEL_LOAD = "model_load"
    CLASSIFICATION = "classification"


class ClassifierError(Exception):
    """Base class for all errors raised by the classification layer."""

    code: ErrorCode

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(ClassifierError):
    """Unrecognized or missing model identifier, or invalid model options."""

    code = ErrorCode.CONFIGURATION


class InvalidInputError(ClassifierError):
    """A predict call could not resolve an image or a valid top-k."""

    code = ErrorCode.INVALID_INPUT


class ModelLoadError(ClassifierError):
    """The model failed to load. Fatal to the whole session."""

    code = ErrorCode.MODEL_LOAD


class ClassificationError(ClassifierError):
    """The model failed to classify one image. The session stays usable."""

    code = ErrorCode.CLASSIFICATION


def status_for(code: ErrorCode) -> int:
    if code is ErrorCode.CONFIGURATION:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if code is ErrorCode.INVALID_INPUT:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.MODEL_LOAD:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR

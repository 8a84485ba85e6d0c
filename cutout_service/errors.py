"""
Typed failures raised by the background-removal pipeline.

Every stage fails fast with one of these rather than returning a partial
result. None of them are fatal to the process: they are scoped to the
current request and leave earlier session state in place.
"""

from __future__ import annotations


class CutoutError(Exception):
    """Base class for all pipeline errors."""


class UnknownModel(CutoutError, KeyError):
    """The requested model id is not in the catalog."""

    def __init__(self, model_id: str, available=()):
        self.model_id = model_id
        self.available = tuple(available)
        super().__init__(model_id)

    def __str__(self) -> str:
        return f"Unknown model: {self.model_id}. Available: {list(self.available)}"


class LoadFailure(CutoutError):
    """Model weights could not be fetched or read (network or storage)."""


class InitializationFailure(CutoutError):
    """The inference engine rejected the weights (corrupt or incompatible)."""


class DecodeError(CutoutError, ValueError):
    """Input bytes are not a supported raster image."""


class InferenceFailure(CutoutError):
    """The engine errored on a well-formed tensor or returned a bad shape."""


class EncodeError(CutoutError):
    """The composited pixels could not be encoded."""


class NoModelLoaded(CutoutError):
    """A session operation needs a model but none has been selected."""


class NoRetainedMask(CutoutError):
    """Recompositing was requested before any image was processed."""


class RequestSuperseded(CutoutError):
    """A newer image or model selection made this request's result stale."""

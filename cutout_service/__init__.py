"""
Local background removal with segmentation models.

Exposes reusable primitives for resolving and loading models,
preprocessing images, running inference, and compositing the mask
back onto the original image.
"""

from .errors import (
    CutoutError,
    DecodeError,
    EncodeError,
    InferenceFailure,
    InitializationFailure,
    LoadFailure,
    NoModelLoaded,
    NoRetainedMask,
    RequestSuperseded,
    UnknownModel,
)
from .model_loader import LoadedModel, ModelLoader
from .pipeline import RemovalSession, remove_background
from .postprocessing import CompositeResult, composite, parse_color
from .preprocessing import PreparedInput, prepare
from .registry import ModelDescriptor, ModelFamily, WeightsFormat, available_models, descriptor_of

__all__ = [
    "CompositeResult",
    "CutoutError",
    "DecodeError",
    "EncodeError",
    "InferenceFailure",
    "InitializationFailure",
    "LoadFailure",
    "LoadedModel",
    "ModelDescriptor",
    "ModelFamily",
    "ModelLoader",
    "NoModelLoaded",
    "NoRetainedMask",
    "PreparedInput",
    "RemovalSession",
    "RequestSuperseded",
    "UnknownModel",
    "WeightsFormat",
    "available_models",
    "composite",
    "descriptor_of",
    "parse_color",
    "prepare",
    "remove_background",
]

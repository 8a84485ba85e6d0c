"""
Static catalog of the segmentation models the pipeline can run.

Each model belongs to a family that fixes how its input tensor is
normalized. The family is resolved here, once, so nothing downstream
ever looks at a model id to decide how to treat pixels.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import UnknownModel


class ModelFamily(Enum):
    """Input normalization conventions, named after the models trained with them."""

    RMBG = "rmbg"
    U2NET = "u2net"

    @property
    def mean(self) -> Tuple[float, float, float]:
        return _FAMILY_STATS[self][0]

    @property
    def std(self) -> Tuple[float, float, float]:
        return _FAMILY_STATS[self][1]


# RMBG consumes plain byte/255 values; U2-Net derivatives were trained with ImageNet stats.
_FAMILY_STATS = {
    ModelFamily.RMBG: ((0.0, 0.0, 0.0), (1.0, 1.0, 1.0)),
    ModelFamily.U2NET: ((0.485, 0.456, 0.406), (0.229, 0.224, 0.225)),
}


class WeightsFormat(Enum):
    ONNX = "onnx"
    TORCHSCRIPT = "torchscript"


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    display_name: str
    input_resolution: int
    family: ModelFamily
    weights_location: str
    mask_resolution: Optional[int] = None
    weights_format: WeightsFormat = WeightsFormat.ONNX
    sha256: Optional[str] = None

    def __post_init__(self) -> None:
        if self.input_resolution <= 0:
            raise ValueError(f"input_resolution must be positive, got {self.input_resolution}")
        if self.mask_resolution is None:
            # frozen dataclass: bypass __setattr__ for the derived default
            object.__setattr__(self, "mask_resolution", self.input_resolution)
        elif self.mask_resolution <= 0:
            raise ValueError(f"mask_resolution must be positive, got {self.mask_resolution}")

    @property
    def tensor_length(self) -> int:
        return 3 * self.input_resolution * self.input_resolution

    @property
    def weights_filename(self) -> str:
        """Cache file name; keeps the id unique even when upstream names collide."""
        suffix = ".onnx" if self.weights_format is WeightsFormat.ONNX else ".pt"
        return f"{self.id}{suffix}"


_RMBG_BASE = "https://huggingface.co/briaai/RMBG-1.4/resolve/main/onnx"
_REMBG_BASE = "https://github.com/danielgatis/rembg/releases/download/v0.0.0"

MODEL_CATALOG: Dict[str, ModelDescriptor] = {
    d.id: d
    for d in (
        ModelDescriptor(
            id="rmbg-1.4",
            display_name="RMBG 1.4",
            input_resolution=1024,
            family=ModelFamily.RMBG,
            weights_location=f"{_RMBG_BASE}/model.onnx",
        ),
        ModelDescriptor(
            id="rmbg-1.4-quantized",
            display_name="RMBG 1.4 (quantized)",
            input_resolution=1024,
            family=ModelFamily.RMBG,
            weights_location=f"{_RMBG_BASE}/model_quantized.onnx",
        ),
        ModelDescriptor(
            id="u2netp",
            display_name="U2-Net (portable)",
            input_resolution=320,
            family=ModelFamily.U2NET,
            weights_location=f"{_REMBG_BASE}/u2netp.onnx",
        ),
        ModelDescriptor(
            id="silueta",
            display_name="Silueta",
            input_resolution=320,
            family=ModelFamily.U2NET,
            weights_location=f"{_REMBG_BASE}/silueta.onnx",
        ),
    )
}


def descriptor_of(model_id: str) -> ModelDescriptor:
    """Look up a catalog entry, raising `UnknownModel` for anything else."""
    try:
        return MODEL_CATALOG[model_id]
    except KeyError:
        raise UnknownModel(model_id, MODEL_CATALOG) from None


def available_models() -> List[ModelDescriptor]:
    return list(MODEL_CATALOG.values())

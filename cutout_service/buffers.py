"""Immutable pixel and tensor buffers passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def _frozen(array: np.ndarray) -> np.ndarray:
    if not array.flags.writeable and array.flags.c_contiguous:
        return array
    array = np.array(array, order="C", copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class ImageBuffer:
    """Decoded raster image as an (H, W, 4) uint8 RGBA array."""

    width: int
    height: int
    pixels: np.ndarray

    def __post_init__(self) -> None:
        if self.pixels.shape != (self.height, self.width, 4):
            raise ValueError(
                f"pixels shape {self.pixels.shape} does not match {self.height}x{self.width}x4"
            )
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"pixels must be uint8, got {self.pixels.dtype}")
        object.__setattr__(self, "pixels", _frozen(self.pixels))

    @classmethod
    def from_rgba(cls, rgba: np.ndarray) -> "ImageBuffer":
        height, width = rgba.shape[:2]
        return cls(width=width, height=height, pixels=rgba)

    @property
    def size(self):
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]


@dataclass(frozen=True)
class InputTensor:
    """Channel-first float32 planes, flattened to length 3 * res * res."""

    data: np.ndarray
    resolution: int

    def __post_init__(self) -> None:
        data = np.asarray(self.data, dtype=np.float32).reshape(-1)
        expected = 3 * self.resolution * self.resolution
        if data.size != expected:
            raise ValueError(f"input tensor has {data.size} values, expected {expected}")
        object.__setattr__(self, "data", _frozen(data))

    def __len__(self) -> int:
        return self.data.size

    def batch(self) -> np.ndarray:
        """(1, 3, res, res) view for engines that expect a batch axis."""
        return self.data.reshape(1, 3, self.resolution, self.resolution)


@dataclass(frozen=True)
class MaskTensor:
    """Single-channel model output, flattened to length res * res."""

    data: np.ndarray
    resolution: int

    def __post_init__(self) -> None:
        data = np.asarray(self.data, dtype=np.float32).reshape(-1)
        expected = self.resolution * self.resolution
        if data.size != expected:
            raise ValueError(f"mask has {data.size} values, expected {expected}")
        object.__setattr__(self, "data", _frozen(data))

    def __len__(self) -> int:
        return self.data.size

    @classmethod
    def from_output(cls, output, resolution: int) -> "MaskTensor":
        """Wrap a raw engine output of any (1, 1, res, res)-compatible shape."""
        return cls(data=np.asarray(output, dtype=np.float32), resolution=resolution)

    def as_image(self) -> np.ndarray:
        return self.data.reshape(self.resolution, self.resolution)

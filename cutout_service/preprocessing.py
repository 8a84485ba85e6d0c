"""
Image decoding and tensor preparation.

Images are stretched to the model's square input (aspect ratio is not
kept, matching how the models were trained), laid out channel-first and
normalized according to the model family.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from typing import Optional

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from . import config
from .buffers import ImageBuffer, InputTensor
from .errors import DecodeError
from .registry import ModelDescriptor, ModelFamily

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedInput:
    tensor: InputTensor
    decoded: ImageBuffer


def _to_8bit(image: Image.Image) -> Image.Image:
    """Scale 16-bit grayscale (I;16*, I) down to L; Pillow would otherwise saturate at 255."""
    if image.mode != "I" and not image.mode.startswith("I;16"):
        return image
    wide = np.clip(np.asarray(image, dtype=np.int64), 0, 65535)
    return Image.fromarray((wide >> 8).astype(np.uint8))


def decode_image(image_bytes: bytes, max_pixels: Optional[int] = None) -> ImageBuffer:
    """Decode JPEG/PNG/WebP (anything Pillow reads) into an RGBA buffer."""
    if not image_bytes:
        raise DecodeError("Empty image data")
    try:
        image = Image.open(BytesIO(image_bytes))
        if max_pixels and image.width * image.height > max_pixels:
            raise DecodeError(
                f"Image is {image.width}x{image.height}, above the {max_pixels} pixel limit"
            )
        image = _to_8bit(ImageOps.exif_transpose(image))
        rgba = np.asarray(image.convert("RGBA"), dtype=np.uint8)
    except DecodeError:
        raise
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise DecodeError("Invalid image data") from exc
    return ImageBuffer.from_rgba(rgba)


def resize_rgb(image: ImageBuffer, width: int, height: int) -> np.ndarray:
    """Bilinear resample of the RGB planes to (height, width, 3) uint8; alpha is dropped."""
    rgb = Image.fromarray(np.ascontiguousarray(image.rgb))
    if (width, height) != (image.width, image.height):
        rgb = rgb.resize((width, height), Image.BILINEAR)
    return np.asarray(rgb, dtype=np.uint8)


def normalize(rgb: np.ndarray, family: ModelFamily) -> np.ndarray:
    """HWC uint8 -> CHW float32 using the family's normalization."""
    planes = rgb.astype(np.float32) / 255.0
    if family is ModelFamily.U2NET:
        mean = np.asarray(family.mean, dtype=np.float32)
        std = np.asarray(family.std, dtype=np.float32)
        planes = (planes - mean) / std
    elif family is not ModelFamily.RMBG:
        raise ValueError(f"No normalization defined for family {family!r}")
    return np.transpose(planes, (2, 0, 1))  # HWC -> CHW


def image_to_tensor(image: ImageBuffer, descriptor: ModelDescriptor) -> InputTensor:
    res = descriptor.input_resolution
    resized = resize_rgb(image, res, res)
    return InputTensor(data=normalize(resized, descriptor.family), resolution=res)


def prepare(image_bytes: bytes, descriptor: ModelDescriptor) -> PreparedInput:
    """
    Decode `image_bytes` and build the input tensor for `descriptor`.

    The returned `decoded` buffer keeps the original resolution so the mask
    can later be composited at full size.
    """
    settings = config.get_settings()
    decoded = decode_image(image_bytes, max_pixels=settings.max_image_pixels)
    tensor = image_to_tensor(decoded, descriptor)
    logger.debug(
        "preprocess: %dx%d -> %dx%d family=%s",
        decoded.width,
        decoded.height,
        descriptor.input_resolution,
        descriptor.input_resolution,
        descriptor.family.value,
    )
    return PreparedInput(tensor=tensor, decoded=decoded)

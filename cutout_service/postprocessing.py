"""Compositing of a model mask onto the original image."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from io import BytesIO
import logging
from pathlib import Path
import re
from typing import Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from PIL import Image

from . import config
from .buffers import ImageBuffer, MaskTensor
from .errors import EncodeError

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]
ColorLike = Union[str, Sequence[int]]

_HEX_COLOR = re.compile(r"[0-9a-fA-F]{6}")


@dataclass(frozen=True)
class CompositeResult:
    png_bytes: bytes
    width: int
    height: int
    has_background: bool

    def to_data_uri(self) -> str:
        return "data:image/png;base64," + base64.b64encode(self.png_bytes).decode("ascii")

    def to_image(self) -> Image.Image:
        return Image.open(BytesIO(self.png_bytes))


def parse_color(value: ColorLike) -> RGB:
    """Accept '#RRGGBB', 'RRGGBB', '#RGB' or an (r, g, b) sequence."""
    if isinstance(value, str):
        raw = value.strip()
        if raw.startswith("#"):
            raw = raw[1:]
        if len(raw) == 3:
            raw = "".join(ch * 2 for ch in raw)
        if not _HEX_COLOR.fullmatch(raw):
            raise ValueError(f"Invalid color: {value!r}")
        return (int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16))

    channels = tuple(value)
    if len(channels) != 3 or not all(isinstance(c, (int, np.integer)) and 0 <= c <= 255 for c in channels):
        raise ValueError(f"Invalid color: {value!r}")
    return tuple(int(c) for c in channels)  # type: ignore[return-value]


def resample_mask(mask: MaskTensor, mask_resolution: int, width: int, height: int) -> np.ndarray:
    """Bilinear resize of the square mask to (height, width), clamped to [0, 1]."""
    if len(mask) != mask_resolution * mask_resolution:
        raise ValueError(
            f"mask has {len(mask)} values, expected {mask_resolution}x{mask_resolution}"
        )
    # cv2 wants a writeable array; MaskTensor data is read-only
    square = mask.data.reshape(mask_resolution, mask_resolution).copy()
    if (width, height) != (mask_resolution, mask_resolution):
        square = cv2.resize(square, (width, height), interpolation=cv2.INTER_LINEAR)
    # NaN from the engine counts as background
    return np.clip(np.nan_to_num(square, nan=0.0), 0.0, 1.0)


def _to_u8(values: np.ndarray) -> np.ndarray:
    return np.clip(np.rint(values), 0, 255).astype(np.uint8)


def compose_rgba(
    original: ImageBuffer,
    alpha: np.ndarray,
    background_color: Optional[RGB] = None,
) -> np.ndarray:
    """Blend pixels with an (H, W) alpha in [0, 1]; returns (H, W, 4) uint8."""
    rgb = original.rgb
    if background_color is None:
        return np.dstack((rgb, _to_u8(alpha * 255.0)))

    a = alpha[..., None].astype(np.float32)
    bg = np.asarray(background_color, dtype=np.float32)
    blended = a * rgb.astype(np.float32) + (1.0 - a) * bg
    opaque = np.full(alpha.shape, 255, dtype=np.uint8)
    return np.dstack((_to_u8(blended), opaque))


def encode_png(rgba: np.ndarray) -> bytes:
    try:
        out = Image.fromarray(np.ascontiguousarray(rgba))
        buf = BytesIO()
        out.save(buf, format="PNG")
    except (OSError, ValueError, TypeError) as exc:
        raise EncodeError("Failed to encode composite as PNG") from exc
    return buf.getvalue()


def _maybe_dump_debug(alpha: np.ndarray, debug_dir: Path) -> None:
    """Optionally write the resampled matte when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        alpha_path = debug_dir / "alpha.png"
        cv2.imwrite(str(alpha_path), _to_u8(alpha * 255.0))
        logger.debug("postprocess: wrote debug matte to %s", alpha_path)
    except Exception as exc:  # noqa: BLE001
        logger.warning("postprocess: failed to write debug outputs: %s", exc)


def composite(
    original: ImageBuffer,
    mask: MaskTensor,
    mask_resolution: int,
    background_color: Optional[ColorLike] = None,
) -> CompositeResult:
    """
    Apply `mask` to `original` at the original's full resolution.

    Without a background color the subject keeps its colors and gets the
    mask as a soft alpha channel. With one, every pixel is blended over the
    solid color and the result is opaque. The function is pure: calling it
    again with another color against the same image and mask only redoes
    the blend, never inference.
    """
    bg = parse_color(background_color) if background_color is not None else None
    alpha = resample_mask(mask, mask_resolution, original.width, original.height)

    logger.debug(
        "postprocess: mask %dx%d -> %dx%d mean_alpha=%.4f background=%s",
        mask_resolution,
        mask_resolution,
        original.width,
        original.height,
        float(alpha.mean()) if alpha.size else 0.0,
        bg,
    )

    settings = config.get_settings()
    if settings.debug:
        _maybe_dump_debug(alpha, Path(settings.debug_output_dir))

    rgba = compose_rgba(original, alpha, bg)
    return CompositeResult(
        png_bytes=encode_png(rgba),
        width=original.width,
        height=original.height,
        has_background=bg is not None,
    )

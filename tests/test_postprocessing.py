import base64
import warnings

import numpy as np
import pytest
from PIL import Image

from cutout_service import config
from cutout_service.buffers import ImageBuffer, MaskTensor
from cutout_service.errors import EncodeError
from cutout_service.postprocessing import composite, parse_color, resample_mask


def _image(width, height, color=(200, 100, 50)):
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[...] = tuple(color) + (255,)
    return ImageBuffer.from_rgba(pixels)


def _mask(values, res):
    return MaskTensor(np.asarray(values, dtype=np.float32).reshape(-1), res)


def _uniform_mask(value, res):
    return _mask(np.full((res, res), value), res)


def _pixels(result):
    return np.asarray(result.to_image().convert("RGBA"))


@pytest.mark.parametrize("value,expected", [(1.0, 255), (0.0, 0)])
def test_transparent_alpha_extremes(value, expected):
    result = composite(_image(40, 30), _uniform_mask(value, 16), 16)
    out = _pixels(result)
    assert out.shape == (30, 40, 4)
    assert (out[..., 3] == expected).all()
    assert (out[..., :3] == (200, 100, 50)).all()
    assert not result.has_background


def test_transparent_keeps_soft_alpha():
    mask = _mask([[0.0, 0.25], [0.75, 1.0]], 2)
    out = _pixels(composite(_image(2, 2), mask, 2))
    np.testing.assert_array_equal(out[..., 3], [[0, 64], [191, 255]])


def test_out_of_range_mask_values_are_clamped():
    mask = _mask([[-0.5, 1.7], [3.0, -2.0]], 2)
    out = _pixels(composite(_image(2, 2), mask, 2))
    np.testing.assert_array_equal(out[..., 3], [[0, 255], [255, 0]])


def test_background_blend_boundaries():
    mask = _mask([[1.0, 0.0], [0.0, 1.0]], 2)
    out = _pixels(composite(_image(2, 2, (12, 34, 56)), mask, 2, background_color="#0000FF"))
    assert (out[..., 3] == 255).all()
    np.testing.assert_array_equal(out[0, 0, :3], (12, 34, 56))
    np.testing.assert_array_equal(out[0, 1, :3], (0, 0, 255))
    np.testing.assert_array_equal(out[1, 0, :3], (0, 0, 255))
    np.testing.assert_array_equal(out[1, 1, :3], (12, 34, 56))


def test_background_blend_mixes_partial_alpha():
    out = _pixels(composite(_image(1, 1, (200, 0, 100)), _mask([[0.25]], 1), 1, background_color=(0, 200, 0)))
    np.testing.assert_array_equal(out[0, 0], (50, 150, 25, 255))


def test_mask_is_resampled_to_original_size():
    result = composite(_image(400, 300), _uniform_mask(1.0, 320), 320)
    assert (result.width, result.height) == (400, 300)
    out = _pixels(result)
    assert out.shape == (300, 400, 4)
    assert (out[..., 3] == 255).all()


def test_composite_is_deterministic():
    rng = np.random.default_rng(7)
    mask = _mask(rng.random((32, 32)), 32)
    image = ImageBuffer.from_rgba(rng.integers(0, 256, (50, 70, 4), dtype=np.uint8))
    for bg in (None, "#123456"):
        first = composite(image, mask, 32, bg)
        second = composite(image, mask, 32, bg)
        assert first.png_bytes == second.png_bytes


def test_mask_resolution_must_match_mask_length():
    with pytest.raises(ValueError):
        composite(_image(10, 10), _uniform_mask(1.0, 8), 16)


def test_resample_uniform_mask_stays_uniform():
    alpha = resample_mask(_uniform_mask(0.5, 320), 320, 123, 457)
    assert alpha.shape == (457, 123)
    np.testing.assert_allclose(alpha, 0.5, atol=1e-6)


def test_data_uri():
    result = composite(_image(3, 3), _uniform_mask(1.0, 3), 3)
    uri = result.to_data_uri()
    assert uri.startswith("data:image/png;base64,")
    assert base64.b64decode(uri.split(",", 1)[1]) == result.png_bytes
    assert result.png_bytes.startswith(b"\x89PNG")


@pytest.mark.parametrize(
    "value,expected",
    [
        ("#0000FF", (0, 0, 255)),
        ("ff8800", (255, 136, 0)),
        ("  #abc ", (170, 187, 204)),
        ((1, 2, 3), (1, 2, 3)),
        ([255, 255, 255], (255, 255, 255)),
    ],
)
def test_parse_color(value, expected):
    assert parse_color(value) == expected


@pytest.mark.parametrize(
    "value",
    ["", "#12345", "#GGGGGG", "-1-1-1", "+f+f+f", " 1 2 3", "0x1234", (1, 2), (0, 0, 256), (1.5, 2, 3)],
)
def test_parse_color_rejects(value):
    with pytest.raises(ValueError):
        parse_color(value)


def test_invalid_background_color_fails_before_work():
    with pytest.raises(ValueError):
        composite(_image(2, 2), _uniform_mask(1.0, 2), 2, background_color="blue")


def test_encode_failure(monkeypatch):
    def broken_save(self, *args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(Image.Image, "save", broken_save)
    with pytest.raises(EncodeError):
        composite(_image(2, 2), _uniform_mask(1.0, 2), 2)


def test_debug_dump_writes_matte(monkeypatch, tmp_path):
    monkeypatch.setenv("CUTOUT_DEBUG", "true")
    config.get_settings.cache_clear()
    composite(_image(4, 4), _uniform_mask(1.0, 2), 2)
    assert (tmp_path / "debug" / "alpha.png").exists()


def test_nan_mask_values_become_background():
    mask = _mask([[np.nan, 1.0], [0.0, np.nan]], 2)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        out = _pixels(composite(_image(2, 2), mask, 2))
    np.testing.assert_array_equal(out[..., 3], [[0, 255], [0, 0]])

from __future__ import annotations

from io import BytesIO
from typing import Callable, Optional

import numpy as np
import pytest
from PIL import Image

from cutout_service import config
from cutout_service.errors import LoadFailure
from cutout_service.model_loader import LoadedModel, ModelLoader


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point the model cache at a temp dir and drop cached settings around each test."""
    monkeypatch.setenv("CUTOUT_MODEL_DIR", str(tmp_path / "models"))
    monkeypatch.setenv("CUTOUT_DEBUG_OUTPUT_DIR", str(tmp_path / "debug"))
    monkeypatch.delenv("CUTOUT_DEBUG", raising=False)
    config.get_settings.cache_clear()
    yield config.get_settings()
    config.get_settings.cache_clear()


@pytest.fixture
def make_image_bytes():
    def _make(width: int, height: int, color=(200, 120, 40), fmt: str = "PNG", mode: str = "RGB") -> bytes:
        if mode == "RGBA" and len(color) == 3:
            color = tuple(color) + (255,)
        image = Image.new(mode, (width, height), color)
        buf = BytesIO()
        image.save(buf, format=fmt)
        return buf.getvalue()

    return _make


class FakeLoader(ModelLoader):
    """Loader that skips weights entirely and serves masks from `mask_fn`."""

    def __init__(self, mask_fn: Callable, fail_for=()):
        super().__init__()
        self.mask_fn = mask_fn
        self.fail_for = set(fail_for)
        self.batches = []
        self.loaded = []

    def load(self, descriptor, on_progress: Optional[Callable[[float], None]] = None) -> LoadedModel:
        if descriptor.id in self.fail_for:
            raise LoadFailure(f"cannot fetch {descriptor.id}")
        if on_progress is not None:
            on_progress(0.0)
            on_progress(1.0)

        def runner(batch: np.ndarray) -> np.ndarray:
            self.batches.append(batch.shape)
            return self.mask_fn(descriptor)

        model = LoadedModel(descriptor, runner, engine="fake")
        self.loaded.append(model)
        return model


@pytest.fixture
def fake_loader():
    def _make(mask_fn=None, fail_for=()) -> FakeLoader:
        if mask_fn is None:
            def mask_fn(d):
                return np.ones((1, 1, d.mask_resolution, d.mask_resolution), dtype=np.float32)
        return FakeLoader(mask_fn, fail_for=fail_for)

    return _make

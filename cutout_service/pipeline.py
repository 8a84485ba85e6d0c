"""
High-level background-removal pipeline.

`RemovalSession` is the main entry point for a UI layer: it owns the loaded
model and keeps the last (original image, mask) pair so the background
color can be changed without rerunning inference. `remove_background` is
a one-shot wrapper for scripts:
bytes in -> preprocessing -> model -> compositing -> PNG bytes out.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from threading import Lock
from typing import Optional

from .buffers import ImageBuffer, MaskTensor
from .errors import NoModelLoaded, NoRetainedMask, RequestSuperseded
from .model_loader import LoadedModel, ModelLoader, ProgressCallback, ProgressReporter
from .postprocessing import ColorLike, CompositeResult, composite
from .preprocessing import PreparedInput, prepare
from .registry import ModelDescriptor, descriptor_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Retained:
    descriptor: ModelDescriptor
    original: ImageBuffer
    mask: MaskTensor


class RemovalSession:
    """
    One user's pipeline: Load -> Prepare -> Infer -> Composite.

    Every `select_model` / `process` call bumps a generation counter. A
    request that finishes after a newer one has started raises
    `RequestSuperseded` instead of replacing the retained state, so the
    newest selection always wins.
    """

    def __init__(self, loader: Optional[ModelLoader] = None):
        self.loader = loader or ModelLoader()
        self._model: Optional[LoadedModel] = None
        self._retained: Optional[_Retained] = None
        self._generation = 0
        self._state_lock = Lock()
        self._switch_lock = Lock()

    @property
    def model(self) -> Optional[LoadedModel]:
        return self._model

    @property
    def descriptor(self) -> Optional[ModelDescriptor]:
        return self._model.descriptor if self._model is not None else None

    @property
    def has_mask(self) -> bool:
        return self._retained is not None

    def _next_generation(self) -> int:
        with self._state_lock:
            self._generation += 1
            return self._generation

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise RequestSuperseded(f"request {generation} superseded by {self._generation}")

    def select_model(self, model_id: str, on_progress: Optional[ProgressCallback] = None) -> LoadedModel:
        """
        Load `model_id` and make it the session's model.

        The new handle is loaded before the old one is released, so a
        failed load leaves the previous model usable.
        """
        descriptor = descriptor_of(model_id)
        with self._switch_lock:
            if self._model is not None and self._model.descriptor == descriptor:
                ProgressReporter(on_progress).report(1.0)
                return self._model

            generation = self._next_generation()

            new_model = self.loader.load(descriptor, on_progress)
            with self._state_lock:
                previous, self._model = self._model, new_model
                # the retained mask belongs to the previous model
                self._retained = None
            if previous is not None:
                previous.release()
            logger.info("Session model switched to %s (generation %d)", descriptor.id, generation)
            return new_model

    def _prepare(self, image_bytes: bytes) -> tuple[LoadedModel, PreparedInput, int]:
        model = self._model
        if model is None:
            raise NoModelLoaded("Select a model before processing an image")
        generation = self._next_generation()
        return model, prepare(image_bytes, model.descriptor), generation

    def _finish(
        self,
        model: LoadedModel,
        prepared: PreparedInput,
        mask: MaskTensor,
        generation: int,
        background_color: Optional[ColorLike],
    ) -> CompositeResult:
        self._ensure_current(generation)
        result = composite(prepared.decoded, mask, model.descriptor.mask_resolution, background_color)
        with self._state_lock:
            self._ensure_current(generation)
            self._retained = _Retained(model.descriptor, prepared.decoded, mask)
        return result

    def process(self, image_bytes: bytes, background_color: Optional[ColorLike] = None) -> CompositeResult:
        """Run the full pipeline on `image_bytes` and retain the mask for recompositing."""
        model, prepared, generation = self._prepare(image_bytes)
        mask = model.infer(prepared.tensor)
        return self._finish(model, prepared, mask, generation, background_color)

    async def process_async(
        self, image_bytes: bytes, background_color: Optional[ColorLike] = None
    ) -> CompositeResult:
        """Like `process`, with inference moved off the event loop."""
        model, prepared, generation = self._prepare(image_bytes)
        mask = await asyncio.to_thread(model.infer, prepared.tensor)
        return self._finish(model, prepared, mask, generation, background_color)

    def recomposite(self, background_color: Optional[ColorLike] = None) -> CompositeResult:
        """Re-blend the retained image and mask against a new background."""
        retained = self._retained
        if retained is None:
            raise NoRetainedMask("No processed image to recomposite")
        return composite(
            retained.original,
            retained.mask,
            retained.descriptor.mask_resolution,
            background_color,
        )

    def reset(self) -> None:
        """Forget the retained image and mask; the model stays loaded."""
        with self._state_lock:
            self._generation += 1
            self._retained = None

    def close(self) -> None:
        with self._switch_lock, self._state_lock:
            self._generation += 1
            self._retained = None
            if self._model is not None:
                self._model.release()
                self._model = None


def remove_background(
    image_bytes: bytes,
    model_id: str,
    background_color: Optional[ColorLike] = None,
    loader: Optional[ModelLoader] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> bytes:
    """
    Full pipeline from raw bytes to PNG bytes with a throwaway session.

    Raises:
        CutoutError subclasses for each failing stage.
    """
    session = RemovalSession(loader)
    try:
        session.select_model(model_id, on_progress)
        return session.process(image_bytes, background_color).png_bytes
    finally:
        session.close()

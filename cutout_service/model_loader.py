"""
Model loading utilities.

The loader:
 - resolves a descriptor's weights (download into the local cache, or a
   local path used in place),
 - initializes the inference engine (onnxruntime for ONNX graphs,
   torch for TorchScript archives),
 - reports monotonic progress while doing so,
 - returns a `LoadedModel` handle whose `infer()` is the only thing the
   rest of the pipeline calls.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
import time
from typing import Callable, List, Optional

import numpy as np
import onnxruntime as ort
import requests
import torch

from . import config
from .buffers import InputTensor, MaskTensor
from .errors import InferenceFailure, InitializationFailure, LoadFailure
from .registry import ModelDescriptor, WeightsFormat

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

# Share of the progress bar spent fetching weights; initialization covers the rest.
FETCH_SHARE = 0.9

# Prefer CUDA -> Apple MPS -> CPU to support both GPU machines and local macOS dev.
if torch.cuda.is_available():
    _DEVICE = torch.device("cuda")
elif torch.backends.mps.is_available():  # type: ignore[attr-defined]
    _DEVICE = torch.device("mps")
else:
    _DEVICE = torch.device("cpu")


def get_device() -> torch.device:
    """Return the torch device TorchScript models are placed on."""
    return _DEVICE


class ProgressReporter:
    """Clamp to [0, 1], never go backwards, never let the callback break a load."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback
        self.last = 0.0

    def report(self, fraction: float) -> None:
        fraction = max(self.last, min(max(float(fraction), 0.0), 1.0))
        self.last = fraction
        if self._callback is None:
            return
        try:
            self._callback(fraction)
        except Exception as exc:  # noqa: BLE001
            logger.warning("progress callback raised: %s", exc)


class _OnnxRunner:
    def __init__(self, session: ort.InferenceSession):
        self.session = session
        self.input_name = session.get_inputs()[0].name

    def __call__(self, batch: np.ndarray) -> np.ndarray:
        outputs = self.session.run(None, {self.input_name: batch})
        return np.asarray(outputs[0])


class _TorchScriptRunner:
    def __init__(self, module: torch.jit.ScriptModule, device: torch.device):
        self.module = module
        self.device = device

    def __call__(self, batch: np.ndarray) -> np.ndarray:
        with torch.no_grad():
            out = self.module(torch.from_numpy(batch.copy()).to(self.device))
        if isinstance(out, (tuple, list)):
            out = out[0]
        return out.detach().cpu().numpy()


class LoadedModel:
    """Handle to a model whose weights are resident in an inference engine."""

    def __init__(self, descriptor: ModelDescriptor, runner, engine: str):
        self.descriptor = descriptor
        self.engine = engine
        self._runner = runner

    @property
    def released(self) -> bool:
        return self._runner is None

    def infer(self, tensor: InputTensor) -> MaskTensor:
        """Run the engine on `tensor` and return the first output as a mask."""
        if self._runner is None:
            raise InferenceFailure(f"Model {self.descriptor.id} has been released")
        if tensor.resolution != self.descriptor.input_resolution:
            raise InferenceFailure(
                f"{self.descriptor.id} expects {self.descriptor.input_resolution}px input, "
                f"got {tensor.resolution}px"
            )

        start = time.perf_counter()
        try:
            output = self._runner(tensor.batch())
        except Exception as exc:  # noqa: BLE001
            logger.exception("Inference failed for %s", self.descriptor.id)
            raise InferenceFailure(f"{self.engine} failed on {self.descriptor.id}: {exc}") from exc

        res = self.descriptor.mask_resolution
        if output.size != res * res:
            raise InferenceFailure(
                f"{self.descriptor.id} returned shape {tuple(output.shape)}, expected 1x{res}x{res}"
            )
        logger.info(
            "Inference on %s took %.0fms", self.descriptor.id, (time.perf_counter() - start) * 1000.0
        )
        return MaskTensor.from_output(output, res)

    def release(self) -> None:
        """Drop the engine session so its memory can be reclaimed."""
        if self._runner is not None:
            logger.info("Releasing model %s", self.descriptor.id)
        self._runner = None


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _is_remote(location: str) -> bool:
    return location.startswith(("http://", "https://"))


class ModelLoader:
    """Fetches weights into the on-disk cache and initializes them in an engine."""

    def __init__(self, settings: Optional[config.Settings] = None):
        self.settings = settings or config.get_settings()

    @property
    def cache_dir(self) -> Path:
        return Path(self.settings.model_dir)

    def cached_path(self, descriptor: ModelDescriptor) -> Path:
        return self.cache_dir / descriptor.weights_filename

    def load(self, descriptor: ModelDescriptor, on_progress: Optional[ProgressCallback] = None) -> LoadedModel:
        """
        Make `descriptor`'s weights resident and return a handle to them.

        Raises:
            LoadFailure: weights could not be fetched, read or verified.
            InitializationFailure: the engine rejected the weights.
        """
        progress = ProgressReporter(on_progress)
        progress.report(0.0)
        weights_path = self.resolve_weights(descriptor, progress)
        progress.report(FETCH_SHARE)
        model = self._initialize(descriptor, weights_path)
        progress.report(1.0)
        logger.info("Model %s loaded with %s", descriptor.id, model.engine)
        return model

    async def load_async(
        self, descriptor: ModelDescriptor, on_progress: Optional[ProgressCallback] = None
    ) -> LoadedModel:
        return await asyncio.to_thread(self.load, descriptor, on_progress)

    def resolve_weights(self, descriptor: ModelDescriptor, progress: Optional[ProgressReporter] = None) -> Path:
        progress = progress or ProgressReporter(None)
        location = descriptor.weights_location
        if not _is_remote(location):
            path = Path(location.removeprefix("file://")).expanduser()
            if not path.is_file():
                raise LoadFailure(f"Weights for {descriptor.id} not found at {path}")
            self._verify(descriptor, path, discard=False)
            return path

        path = self.cached_path(descriptor)
        if path.is_file():
            if descriptor.sha256 is None or _sha256(path) == descriptor.sha256:
                logger.debug("Using cached weights for %s at %s", descriptor.id, path)
                return path
            logger.warning("Cached weights for %s failed verification; re-downloading", descriptor.id)
            path.unlink()

        self._download(location, path, progress)
        self._verify(descriptor, path, discard=True)
        return path

    def _verify(self, descriptor: ModelDescriptor, path: Path, discard: bool) -> None:
        if descriptor.sha256 is None:
            return
        if _sha256(path) != descriptor.sha256:
            if discard:
                path.unlink(missing_ok=True)
            raise LoadFailure(f"Weights for {descriptor.id} failed hash verification")

    def _download(self, url: str, dest: Path, progress: ProgressReporter) -> None:
        """Stream `url` into `dest`, reporting bytes fetched."""
        part = dest.with_name(dest.name + ".part")
        logger.info("Downloading %s to %s", url, dest)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            with requests.get(
                url, stream=True, timeout=(5, self.settings.download_timeout_seconds)
            ) as resp:
                resp.raise_for_status()
                total = int(resp.headers.get("Content-Length") or 0)
                fetched = 0
                with open(part, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=self.settings.download_chunk_size):
                        if not chunk:
                            continue
                        fh.write(chunk)
                        fetched += len(chunk)
                        if total > 0:
                            progress.report(FETCH_SHARE * min(fetched / total, 1.0))
            part.replace(dest)
        except (requests.RequestException, OSError) as exc:
            part.unlink(missing_ok=True)
            raise LoadFailure(f"Failed to download weights from {url}: {exc}") from exc
        logger.info("Downloaded %.1f MB", fetched / (1024 * 1024))

    def _providers(self) -> List[str]:
        available = set(ort.get_available_providers())
        providers = [p for p in self.settings.execution_providers if p in available and p != "CPUExecutionProvider"]
        providers.append("CPUExecutionProvider")
        return providers

    def _initialize(self, descriptor: ModelDescriptor, weights_path: Path) -> LoadedModel:
        if descriptor.weights_format is WeightsFormat.TORCHSCRIPT:
            device = get_device()
            try:
                module = torch.jit.load(str(weights_path), map_location=device)
                module.eval()
            except Exception as exc:  # noqa: BLE001
                raise InitializationFailure(
                    f"torch could not load {descriptor.id} from {weights_path}: {exc}"
                ) from exc
            return LoadedModel(descriptor, _TorchScriptRunner(module, device), engine=f"torch:{device}")

        sess_options = ort.SessionOptions()
        sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        providers = self._providers()
        try:
            session = ort.InferenceSession(str(weights_path), sess_options=sess_options, providers=providers)
        except Exception as exc:  # noqa: BLE001
            raise InitializationFailure(
                f"onnxruntime rejected weights for {descriptor.id}: {exc}"
            ) from exc
        return LoadedModel(descriptor, _OnnxRunner(session), engine="onnxruntime")

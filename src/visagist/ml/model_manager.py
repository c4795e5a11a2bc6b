"""Model manager: download the classifier, bind it to a backend, track readiness.

Backends are tried as an ordered list of strategies: the accelerated
execution provider configured by ``VISAGIST_DEVICE`` first, then the CPU
fallback. Both use the same precision. The first strategy that yields a
session becomes the single shared handle.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions, get_available_providers
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from visagist.ml.image_classifier import OnnxImageClassifier
from visagist.ml.preprocessing import ImagePreprocessor

if TYPE_CHECKING:
    from visagist.config import Settings
    from visagist.ml.image_classifier import ImageClassifier

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ModelLoadError(RuntimeError):
    """Every backend strategy failed to load the model."""

    def __init__(self, model_id: str, attempts: list[LoadAttempt] | None = None) -> None:
        super().__init__(f"unable to load model: {model_id}")
        self.model_id = model_id
        self.attempts = list(attempts or [])


class ModelNotLoadedError(RuntimeError):
    """Classification was requested before a successful load."""

    def __init__(self) -> None:
        super().__init__("model not loaded. call load() first.")


class BackendUnavailableError(RuntimeError):
    """The requested execution provider cannot be used on this host."""


# ---------------------------------------------------------------------------
# Status and backend strategies
# ---------------------------------------------------------------------------


class ModelStatus(StrEnum):
    LOADING = "loading"
    DOWNLOADING = "downloading"
    READY = "ready"
    ERROR = "error"


class DeviceKind(StrEnum):
    ACCELERATED = "accelerated"
    FALLBACK = "fallback"


Provider = str | tuple[str, dict[str, object]]


@dataclass(frozen=True)
class BackendStrategy:
    """One way of acquiring the model: a device kind and its provider list."""

    kind: DeviceKind
    providers: list[Provider]

    @property
    def primary_provider(self) -> str:
        first = self.providers[0]
        return first if isinstance(first, str) else first[0]


@dataclass(frozen=True)
class LoadAttempt:
    """Outcome of trying one backend strategy."""

    kind: DeviceKind
    provider: str
    succeeded: bool
    error: str | None = None


def build_strategies(settings: Settings) -> list[BackendStrategy]:
    """Return the backend strategies to try, in preference order."""
    strategies: list[BackendStrategy] = []
    if settings.device == "cuda":
        strategies.append(
            BackendStrategy(
                kind=DeviceKind.ACCELERATED,
                providers=[
                    (
                        "CUDAExecutionProvider",
                        {
                            "device_id": 0,
                            "gpu_mem_limit": settings.gpu_mem_limit,
                            "arena_extend_strategy": "kSameAsRequested",
                        },
                    )
                ],
            )
        )
    elif settings.device == "openvino":
        strategies.append(
            BackendStrategy(
                kind=DeviceKind.ACCELERATED,
                providers=[("OpenVINOExecutionProvider", {"device_type": "GPU"})],
            )
        )
    strategies.append(BackendStrategy(kind=DeviceKind.FALLBACK, providers=["CPUExecutionProvider"]))
    return strategies


# ---------------------------------------------------------------------------
# Backend acquisition
# ---------------------------------------------------------------------------

# Weight file per precision, following the transformers.js repository layout.
MODEL_FILES: dict[str, str] = {
    "fp32": "onnx/model.onnx",
    "fp16": "onnx/model_fp16.onnx",
    "q8": "onnx/model_quantized.onnx",
    "int8": "onnx/model_int8.onnx",
    "uint8": "onnx/model_uint8.onnx",
    "q4": "onnx/model_q4.onnx",
}


class BackendFactory(Protocol):
    """Acquires a ready-to-use classifier handle on a given backend."""

    def acquire(self, model_id: str, strategy: BackendStrategy, precision: str) -> ImageClassifier:
        """Return a handle bound to ``strategy`` or raise."""
        ...


class OnnxBackendFactory:
    """Downloads model files from HuggingFace and creates ONNX sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)
        self._paths: dict[tuple[str, str], Path] = {}

    def ensure_downloaded(self, model_id: str, filename: str) -> Path:
        """Download a file from the model repo if not already present locally."""
        cached = self._paths.get((model_id, filename))
        if cached is not None and cached.exists():
            return cached

        downloaded = Path(
            hf_hub_download(
                repo_id=model_id,
                filename=filename,
                local_dir=str(self._models_dir / model_id.replace("/", "--")),
            )
        )
        self._paths[(model_id, filename)] = downloaded
        logger.info("Downloaded %s/%s to %s", model_id, filename, downloaded)
        return downloaded

    def acquire(self, model_id: str, strategy: BackendStrategy, precision: str) -> OnnxImageClassifier:
        try:
            weights_file = MODEL_FILES[precision]
        except KeyError:
            raise ValueError(f"Unsupported precision: {precision}") from None

        provider = strategy.primary_provider
        if provider not in get_available_providers():
            raise BackendUnavailableError(f"{provider} is not available in this onnxruntime build")

        config = self._read_json(model_id, "config.json")
        preprocessor_config = self._read_json(model_id, "preprocessor_config.json")
        model_path = self.ensure_downloaded(model_id, weights_file)

        session = InferenceSession(
            str(model_path),
            sess_options=self._build_session_options(strategy),
            providers=strategy.providers,
        )
        # onnxruntime silently drops providers it cannot initialize.
        if provider not in session.get_providers():
            raise BackendUnavailableError(f"{provider} could not be initialized for {model_id}")

        return OnnxImageClassifier(
            model_id,
            session,
            labels=self._labels(config),
            preprocessor=ImagePreprocessor.from_config(preprocessor_config),
            top_k=self._settings.top_k,
            max_file_size=self._settings.max_file_size,
            max_image_pixels=self._settings.max_image_pixels,
            fetch_timeout=self._settings.fetch_timeout,
        )

    def _read_json(self, model_id: str, filename: str) -> dict[str, Any]:
        path = self.ensure_downloaded(model_id, filename)
        with path.open(encoding="utf-8") as fh:
            data: dict[str, Any] = json.load(fh)
        return data

    @staticmethod
    def _labels(config: dict[str, Any]) -> dict[int, str]:
        id2label = config.get("id2label") or {}
        return {int(idx): str(label) for idx, label in id2label.items()}

    def _build_session_options(self, strategy: BackendStrategy) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if strategy.primary_provider == "OpenVINOExecutionProvider":
            # OpenVINO does its own graph optimization
            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class ModelManager:
    """Owns the single shared classifier handle and its load status."""

    def __init__(self, settings: Settings, factory: BackendFactory | None = None) -> None:
        self._settings = settings
        self._factory: BackendFactory = factory if factory is not None else OnnxBackendFactory(settings)
        self._strategies = build_strategies(settings)

        self._load_lock = threading.Lock()
        self._handle: ImageClassifier | None = None
        self._backend: DeviceKind | None = None
        self._status = ModelStatus.LOADING
        self._attempts: list[LoadAttempt] = []

    @property
    def model_id(self) -> str:
        return self._settings.model_id

    @property
    def precision(self) -> str:
        return self._settings.precision

    def load(self) -> None:
        """Load the model, trying each backend strategy in order.

        Idempotent: returns immediately once a handle exists. Concurrent
        callers wait for the in-flight load instead of starting another.

        Raises:
            ModelLoadError: If every strategy failed.
        """
        with self._load_lock:
            if self._handle is not None:
                logger.debug("Model %s already loaded", self.model_id)
                self._status = ModelStatus.READY
                return

            self._status = ModelStatus.DOWNLOADING
            self._attempts = []
            logger.info("Loading model %s (precision=%s)", self.model_id, self.precision)

            for index, strategy in enumerate(self._strategies):
                is_last = index == len(self._strategies) - 1
                try:
                    handle = self._factory.acquire(self.model_id, strategy, self.precision)
                except Exception as exc:  # noqa: BLE001
                    self._attempts.append(
                        LoadAttempt(kind=strategy.kind, provider=strategy.primary_provider, succeeded=False, error=str(exc))
                    )
                    if is_last:
                        logger.error("Failed to load %s on %s: %s", self.model_id, strategy.primary_provider, exc)
                    else:
                        logger.warning("%s backend failed, falling back: %s", strategy.primary_provider, exc)
                    continue

                self._attempts.append(LoadAttempt(kind=strategy.kind, provider=strategy.primary_provider, succeeded=True))
                self._handle = handle
                self._backend = strategy.kind
                self._status = ModelStatus.READY
                logger.info("Model %s loaded with %s (%s)", self.model_id, strategy.primary_provider, strategy.kind)
                return

            self._status = ModelStatus.ERROR
            raise ModelLoadError(self.model_id, self._attempts)

    def status(self) -> ModelStatus:
        return self._status

    def is_ready(self) -> bool:
        return self._handle is not None and self._status == ModelStatus.READY

    def backend(self) -> DeviceKind | None:
        return self._backend

    def attempts(self) -> list[LoadAttempt]:
        """Return the per-strategy outcomes of the most recent load."""
        return list(self._attempts)

    def require_handle(self) -> ImageClassifier:
        """Return the loaded handle.

        Raises:
            ModelNotLoadedError: If no load has succeeded yet.
        """
        handle = self._handle
        if handle is None:
            raise ModelNotLoadedError
        return handle

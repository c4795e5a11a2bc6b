"""ONNX image classification handle.

A handle is bound to exactly one InferenceSession on one backend. It turns
an image reference into label/score pairs and knows nothing about memes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from visagist.ml.preprocessing import ImagePreprocessor, load_image

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from visagist.ml.preprocessing import ImageRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LabelScore:
    """A single label with its softmax score."""

    label: str
    score: float


class ImageClassifier(Protocol):
    """Protocol for a loaded image classification model."""

    @property
    def model_id(self) -> str:
        """Return the model identifier string."""
        ...

    def infer(self, image_ref: ImageRef) -> list[LabelScore]:
        """Classify an image and return label/score pairs.

        Args:
            image_ref: Raw bytes, a local path, or an http(s) URL.

        Returns:
            Label/score pairs sorted by score (descending).
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float64]:
    shifted = logits.astype(np.float64) - np.max(logits)
    exp = np.exp(shifted)
    return exp / exp.sum()


class OnnxImageClassifier:
    """Runs a single-label image classification model through onnxruntime."""

    def __init__(
        self,
        model_id: str,
        session: InferenceSession,
        labels: dict[int, str],
        preprocessor: ImagePreprocessor,
        *,
        top_k: int = 5,
        max_file_size: int = 209_715_200,
        max_image_pixels: int = 16_777_216,
        fetch_timeout: float = 10.0,
    ) -> None:
        self._model_id = model_id
        self._session = session
        self._labels = labels
        self._preprocessor = preprocessor
        self._top_k = top_k
        self._max_file_size = max_file_size
        self._max_image_pixels = max_image_pixels
        self._fetch_timeout = fetch_timeout
        self._input_name = session.get_inputs()[0].name

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def providers(self) -> list[str]:
        """Execution providers active on the underlying session."""
        return list(self._session.get_providers())

    def infer(self, image_ref: ImageRef) -> list[LabelScore]:
        image = load_image(
            image_ref,
            max_file_size=self._max_file_size,
            max_image_pixels=self._max_image_pixels,
            fetch_timeout=self._fetch_timeout,
        )
        pixel_values = self._preprocessor(image)

        outputs = self._session.run(None, {self._input_name: pixel_values})
        logits = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        scores = softmax(logits)

        ranked = np.argsort(scores)[::-1][: self._top_k]
        return [LabelScore(label=self._labels.get(int(i), f"LABEL_{int(i)}"), score=float(scores[i])) for i in ranked]

"""Meme classification engine.

Runs the shared handle through the inference pool, times each call and
applies the decision rules. A single image can never fail a caller once the
model is loaded: bad input, backend errors and timeouts all resolve to a
degraded zero-confidence result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from visagist.ml.decision import decide

if TYPE_CHECKING:
    from visagist.ml.image_classifier import ImageClassifier
    from visagist.ml.inference import InferencePool
    from visagist.ml.model_manager import ModelManager
    from visagist.ml.preprocessing import ImageRef

logger = logging.getLogger(__name__)


class Outcome(StrEnum):
    CLASSIFIED = "classified"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ClassificationResult:
    """Meme decision for one image."""

    is_meme: bool
    confidence: float
    inference_time_ms: float
    outcome: Outcome = Outcome.CLASSIFIED

    @property
    def degraded(self) -> bool:
        return self.outcome is Outcome.DEGRADED

    @classmethod
    def safe_default(cls, inference_time_ms: float = 0.0) -> ClassificationResult:
        return cls(is_meme=False, confidence=0.0, inference_time_ms=inference_time_ms, outcome=Outcome.DEGRADED)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def _is_valid_raw(raw: object) -> bool:
    return isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)) and len(raw) > 0


class MemeClassifier:
    """Classifies images as meme / not meme using the loaded model."""

    def __init__(self, models: ModelManager, pool: InferencePool, *, inference_timeout: float | None = None) -> None:
        self._models = models
        self._pool = pool
        self._inference_timeout = inference_timeout

    async def classify_one(self, image_ref: ImageRef) -> ClassificationResult:
        """Classify a single image.

        Raises:
            ModelNotLoadedError: If the model has not been loaded.
        """
        return await self._classify(self._models.require_handle(), image_ref, self._pool.queue_timeout)

    async def _classify(
        self, handle: ImageClassifier, image_ref: ImageRef, queue_timeout: float | None
    ) -> ClassificationResult:
        start = time.perf_counter()
        try:
            raw = await self._pool.run(
                handle.infer, image_ref, timeout=self._inference_timeout, queue_timeout=queue_timeout
            )
        except Exception:  # noqa: BLE001
            logger.exception("Classification failed after %.1f ms", _elapsed_ms(start))
            return ClassificationResult.safe_default(_elapsed_ms(start))

        inference_time_ms = _elapsed_ms(start)
        if not _is_valid_raw(raw):
            logger.warning("Invalid classification result: %r", raw)
            return ClassificationResult.safe_default(inference_time_ms)

        decision = decide(raw)
        logger.debug(
            "Classification completed (is_meme=%s, confidence=%.4f, %.1f ms): %r",
            decision.is_meme,
            decision.confidence,
            inference_time_ms,
            raw,
        )
        return ClassificationResult(
            is_meme=decision.is_meme,
            confidence=decision.confidence,
            inference_time_ms=inference_time_ms,
        )

    async def classify_batch(self, image_refs: Sequence[ImageRef]) -> list[ClassificationResult]:
        """Classify images concurrently; output order matches input order.

        Raises:
            ModelNotLoadedError: If the model has not been loaded.
        """
        handle = self._models.require_handle()

        if not image_refs:
            logger.debug("Empty batch provided")
            return []

        logger.info("Starting batch classification (size=%d)", len(image_refs))
        try:
            # Items queue for a slot without limit; only the inference timeout defaults one.
            results = list(
                await asyncio.gather(*(self._classify(handle, ref, None) for ref in image_refs))
            )
        except Exception:  # noqa: BLE001
            logger.exception("Batch classification failed (size=%d)", len(image_refs))
            return [ClassificationResult.safe_default() for _ in image_refs]

        meme_count = sum(1 for r in results if r.is_meme)
        avg_ms = sum(r.inference_time_ms for r in results) / len(results)
        logger.info(
            "Batch classification completed (size=%d, memes=%d, avg_inference_ms=%.1f)",
            len(results),
            meme_count,
            avg_ms,
        )
        return results

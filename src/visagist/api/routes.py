"""API route definitions."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse

from visagist.api.schemas import (
    BatchItem,
    ClassifyBatchResponse,
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    LoadAttemptInfo,
    ModelInfo,
)
from visagist.ml.meme_classifier import ClassificationResult
from visagist.ml.model_manager import ModelLoadError, ModelNotLoadedError

if TYPE_CHECKING:
    from visagist.config import Settings
    from visagist.ml.inference import InferencePool
    from visagist.ml.meme_classifier import MemeClassifier
    from visagist.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")

_UNAVAILABLE = {status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}}
_UPLOAD_ERRORS = {
    status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
    **_UNAVAILABLE,
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_classifier(request: Request) -> MemeClassifier:
    classifier: MemeClassifier = request.app.state.classifier
    return classifier


async def _read_upload(file: UploadFile, max_file_size: int) -> bytes:
    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported content type for {file.filename!r}: {content_type or 'unknown'}",
        )
    data = await file.read(max_file_size + 1)
    if len(data) > max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File {file.filename!r} exceeds {max_file_size} bytes",
        )
    return data


def _not_loaded(exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


def _to_response(result: ClassificationResult) -> ClassifyImageResponse:
    return ClassifyImageResponse(
        is_meme=result.is_meme,
        confidence=result.confidence,
        inference_time_ms=result.inference_time_ms,
        degraded=result.degraded,
    )


def _model_info(manager: ModelManager) -> ModelInfo:
    backend = manager.backend()
    return ModelInfo(
        model_id=manager.model_id,
        precision=manager.precision,
        status=manager.status().value,
        backend=backend.value if backend is not None else None,
        attempts=[
            LoadAttemptInfo(
                backend=attempt.kind.value,
                provider=attempt.provider,
                succeeded=attempt.succeeded,
                error=attempt.error,
            )
            for attempt in manager.attempts()
        ],
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses=_UPLOAD_ERRORS,
    summary="Classify an image as meme or not meme",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image."""
    settings = _get_settings(request)
    data = await _read_upload(file, settings.max_file_size)
    try:
        result = await _get_classifier(request).classify_one(data)
    except ModelNotLoadedError as exc:
        return _not_loaded(exc)
    return _to_response(result)


@router.post(
    "/classify-batch",
    response_model=ClassifyBatchResponse,
    responses=_UNAVAILABLE,
    summary="Classify several images concurrently",
)
async def classify_batch(request: Request, files: list[UploadFile]) -> ClassifyBatchResponse | JSONResponse:
    """Classify uploaded images; results keep upload order."""
    settings = _get_settings(request)
    payloads: list[bytes] = []
    rejected: dict[int, str] = {}
    for index, file in enumerate(files):
        try:
            payloads.append(await _read_upload(file, settings.max_file_size))
        except HTTPException as exc:
            logger.warning("Rejected batch upload: %s", exc.detail)
            rejected[index] = str(exc.detail)

    try:
        classified = iter(await _get_classifier(request).classify_batch(payloads))
    except ModelNotLoadedError as exc:
        return _not_loaded(exc)

    results = [
        ClassificationResult.safe_default() if index in rejected else next(classified)
        for index in range(len(files))
    ]
    items = [
        BatchItem(filename=file.filename, error=rejected.get(index), **_to_response(result).model_dump())
        for index, (file, result) in enumerate(zip(files, results, strict=True))
    ]
    count = len(results)
    return ClassifyBatchResponse(
        results=items,
        meme_count=sum(1 for r in results if r.is_meme),
        average_confidence=sum(r.confidence for r in results) / count if count else 0.0,
        average_inference_time_ms=sum(r.inference_time_ms for r in results) / count if count else 0.0,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    manager = _get_model_manager(request)
    pool = _get_inference_pool(request)
    backend = manager.backend()
    return HealthResponse(
        status="ok",
        model_status=manager.status().value,
        ready=manager.is_ready(),
        backend=backend.value if backend is not None else None,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/model",
    response_model=ModelInfo,
    summary="Model status and backend selection",
)
async def model_info(request: Request) -> ModelInfo:
    """Return the model's load status and per-backend load attempts."""
    return _model_info(_get_model_manager(request))


@router.post(
    "/model/load",
    response_model=ModelInfo,
    responses=_UNAVAILABLE,
    summary="Load the model (no-op when already loaded)",
)
async def load_model(request: Request) -> ModelInfo | JSONResponse:
    """Load the model, trying the accelerated backend before the CPU fallback."""
    manager = _get_model_manager(request)
    try:
        await asyncio.to_thread(manager.load)
    except ModelLoadError as exc:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})
    return _model_info(manager)

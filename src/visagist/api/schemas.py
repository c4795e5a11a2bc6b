"""Pydantic request/response schemas for the Visagist API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ClassifyImageResponse(BaseModel):
    """Meme decision for a single image."""

    is_meme: bool
    confidence: float = Field(ge=0.0, le=1.0, description="Raw meme-class score, not decision certainty")
    inference_time_ms: float = Field(ge=0.0)
    degraded: bool = Field(
        default=False,
        description="True when inference failed and the safe default was returned",
    )


class BatchItem(ClassifyImageResponse):
    """A batch result tagged with the uploaded filename."""

    filename: str | None = None
    error: str | None = Field(default=None, description="Why the upload was rejected before classification")


class ClassifyBatchResponse(BaseModel):
    """Response for batch classification, in upload order."""

    results: list[BatchItem]
    meme_count: int
    average_confidence: float
    average_inference_time_ms: float


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    model_status: str
    ready: bool
    backend: str | None
    concurrent_requests: int
    queue_depth: int


class LoadAttemptInfo(BaseModel):
    """Outcome of one backend strategy during the latest load."""

    backend: str = Field(description="'accelerated' or 'fallback'")
    provider: str
    succeeded: bool
    error: str | None = None


class ModelInfo(BaseModel):
    """State of the meme classification model."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    precision: str
    status: str = Field(description="Model status: 'loading', 'downloading', 'ready', or 'error'")
    backend: str | None
    attempts: list[LoadAttemptInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str

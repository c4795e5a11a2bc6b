"""Environment-based configuration for Visagist."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

Precision = Literal["fp32", "fp16", "q8", "int8", "uint8", "q4"]


class Settings(BaseSettings):
    """Application settings loaded from VISAGIST_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VISAGIST_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # Model selection
    model_id: str = "prettyirrelevant/meme-detector-onnx"
    precision: Precision = "q8"
    models_dir: str = "models"
    top_k: int = Field(default=5, ge=1)

    # ML device: accelerated provider tried first, CPU always last
    device: Literal["cpu", "cuda", "openvino"] = "cuda"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=30.0, gt=0)
    inference_timeout: float = Field(default=30.0, gt=0)

    # Input limits
    fetch_timeout: float = Field(default=10.0, gt=0)
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()

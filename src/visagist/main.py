"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from visagist.api.routes import router
from visagist.config import get_settings
from visagist.ml.inference import InferencePool
from visagist.ml.meme_classifier import MemeClassifier
from visagist.ml.model_manager import ModelLoadError, ModelManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Visagist (model=%s, precision=%s, device=%s, max_concurrent=%s)",
        settings.model_id,
        settings.precision,
        settings.device,
        settings.max_concurrent,
    )

    inference_pool = InferencePool(settings)
    model_manager = ModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.classifier = MemeClassifier(
        model_manager,
        inference_pool,
        inference_timeout=settings.inference_timeout,
    )

    try:
        await asyncio.to_thread(model_manager.load)
    except ModelLoadError as exc:
        # Keep serving so /health and /model report the failure; POST /model/load retries.
        logger.error("Model unavailable at startup: %s", exc)
    else:
        logger.info("Visagist ready")

    yield

    logger.info("Shutting down Visagist")
    inference_pool.shutdown()
    logger.info("Visagist shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Visagist",
        description="Local meme detection API backed by an ONNX image classifier",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the API with uvicorn using VISAGIST_HOST / VISAGIST_PORT."""
    settings = get_settings()
    uvicorn.run("visagist.main:app", host=settings.host, port=settings.port)

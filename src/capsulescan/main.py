"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from capsulescan.api.routes import router
from capsulescan.config import get_settings
from capsulescan.ml.image_classifier import ClassificationPipeline
from capsulescan.ml.inference import InferencePool
from capsulescan.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the classifier on startup, release it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting CapsuleScan (device=%s, max_concurrent=%s, candidates=%s, labels=%s, normalization=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_candidates,
        settings.labels_file,
        settings.normalization,
    )

    inference_pool = InferencePool(settings)
    pipeline = ClassificationPipeline(settings, OnnxModelManager(settings))
    app.state.inference_pool = inference_pool
    app.state.pipeline = pipeline

    await inference_pool.run(pipeline.load)
    if pipeline.is_loaded:
        logger.info("CapsuleScan ready")
    else:
        logger.warning("CapsuleScan started without a model; classify requests return the fallback result")
    yield

    logger.info("Shutting down CapsuleScan")
    pipeline.dispose()
    inference_pool.shutdown()
    logger.info("CapsuleScan shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="CapsuleScan",
        description="Photo classification of capsules against a fixed label set using a local ONNX model",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()

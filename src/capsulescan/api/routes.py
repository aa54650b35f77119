"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from capsulescan.api.middleware import PAYLOAD_TOO_LARGE, get_request_settings, verify_api_key
from capsulescan.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    LabelsResponse,
    ModelInfo,
    ModelsResponse,
    TensorInfo,
)
from capsulescan.ml.ground_truth import expected_label_from_filename, is_correct
from capsulescan.ml.image_classifier import ClassificationPipeline, PipelineState

if TYPE_CHECKING:
    from capsulescan.ml.inference import InferencePool
    from capsulescan.ml.model_manager import TensorSpec

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> ClassificationPipeline:
    pipeline: ClassificationPipeline = request.app.state.pipeline
    return pipeline


def _tensor_info(spec: TensorSpec) -> TensorInfo:
    return TensorInfo(name=spec.name, shape=list(spec.shape), dtype=spec.dtype)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        PAYLOAD_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return up to 3 ranked tags.

    If the model is not loaded or the image cannot be processed, the single
    fallback tag "Model not available" is returned with confidence 1.0.
    """
    settings = get_request_settings(request)
    pool = _get_inference_pool(request)
    pipeline = _get_pipeline(request)

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return JSONResponse(
            status_code=PAYLOAD_TOO_LARGE,
            content={"detail": f"Upload exceeds {settings.max_file_size} bytes"},
        )

    try:
        results = await pool.run(pipeline.classify, data)
    except TimeoutError:
        logger.warning("Inference queue full; rejecting %s", file.filename)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Inference queue is full, retry later"},
        )

    expected = expected_label_from_filename(file.filename, pipeline.labels)
    return ClassifyImageResponse(
        tags=[ImageTag(label=r.label, confidence=r.confidence) for r in results],
        expected_label=expected,
        correct=is_correct(results, expected),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_request_settings(request)
    pool = _get_inference_pool(request)
    pipeline = _get_pipeline(request)
    state = pipeline.state
    model = pipeline.model
    return HealthResponse(
        status="ok" if state is PipelineState.LOADED else "degraded",
        state=state.value,
        gpu=settings.device == "cuda",
        model_loaded=state is PipelineState.LOADED,
        model_name=model.name if model is not None else None,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/labels",
    response_model=LabelsResponse,
    summary="List class labels",
)
async def list_labels(request: Request) -> LabelsResponse:
    """Return the loaded labels in class-index order (empty when not loaded)."""
    return LabelsResponse(labels=list(_get_pipeline(request).labels))


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List model candidates",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return configured model candidates in priority order and which one is active."""
    settings = get_request_settings(request)
    active = _get_pipeline(request).model

    models: list[ModelInfo] = []
    for priority, name in enumerate(settings.model_candidates):
        if active is not None and active.name == name:
            models.append(
                ModelInfo(
                    name=name,
                    priority=priority,
                    status="active",
                    input=_tensor_info(active.input),
                    output=_tensor_info(active.output),
                )
            )
        else:
            models.append(ModelInfo(name=name, priority=priority, status="candidate"))

    return ModelsResponse(models=models)

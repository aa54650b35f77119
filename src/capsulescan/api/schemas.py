"""Pydantic request/response schemas for the CapsuleScan API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, description="Confidence, normally 0.0-1.0")


class ClassifyImageResponse(BaseModel):
    """Response for image classification endpoint."""

    tags: list[ImageTag] = Field(description="Up to 3 tags sorted by confidence (descending)")
    expected_label: str | None = Field(
        default=None,
        description="Label inferred from the uploaded filename, if any",
    )
    correct: bool | None = Field(
        default=None,
        description="Whether the top tag matches expected_label; null when unknown",
    )


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    state: str = Field(description="Classifier state: 'loaded' or 'not_loaded'")
    gpu: bool
    model_loaded: bool
    model_name: str | None
    concurrent_requests: int
    queue_depth: int


class TensorInfo(BaseModel):
    """Declared shape and element type of a model tensor."""

    name: str
    shape: list[int]
    dtype: str


class ModelInfo(BaseModel):
    """Information about a configured model candidate."""

    name: str
    priority: int = Field(description="Position in the candidate list (0 = tried first)")
    status: str = Field(description="Model status: 'active' or 'candidate'")
    input: TensorInfo | None = None
    output: TensorInfo | None = None


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class LabelsResponse(BaseModel):
    """The loaded label vocabulary in class-index order."""

    labels: list[str]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str

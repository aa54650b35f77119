"""Environment-based configuration for CapsuleScan."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CAPSULESCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CAPSULESCAN_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model and label sources, tried in priority order
    models_dir: str = "models"
    models_repo_id: str | None = None
    model_candidates: list[str] = Field(
        default_factory=lambda: ["model.onnx", "model_unquant.onnx"],
        min_length=1,
    )
    labels_file: str = "labels.txt"

    # Must match how the model was trained: "unit" = [0, 1], "signed" = [-1, 1]
    normalization: Literal["unit", "signed"] = "unit"
    confidence_threshold: float = Field(default=0.0, ge=0.0, le=1.0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()

"""Environment-based configuration for SnapClass."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from SNAPCLASS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPCLASS_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    classification_model: str = "mobilenetv3_large"

    # Classifier output options
    max_results: int | None = Field(default=5, ge=1)
    score_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    classify_timeout: float = Field(default=30.0, gt=0.0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Image references are confined to this directory when set
    image_root: str | None = None

    # Model management
    models_dir: str = "models"
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Sessions untouched this long are dropped (0 = keep until deleted)
    session_ttl: int = Field(default=3600, ge=0)

    # Seconds between idle model and session sweeps
    housekeeping_interval: float = Field(default=60.0, gt=0.0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()

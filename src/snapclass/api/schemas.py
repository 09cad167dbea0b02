"""Pydantic request/response schemas for the SnapClass API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

SessionStatus = Literal["idle", "image_selected", "analyzing", "completed", "failed"]


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)
    percentage: float = Field(description="Confidence x 100 at full precision")


class TopCategory(BaseModel):
    """The highest-scoring category, rounded for display."""

    label: str
    percentage: int


class ClassifyImageResponse(BaseModel):
    """Response for image classification endpoint."""

    tags: list[ImageTag]
    top: TopCategory
    inference_time_ms: int
    summary: str = Field(description="Human-readable report")


class SessionResponse(BaseModel):
    """Current state of a classification session."""

    session_id: str
    status: SessionStatus
    image_reference: str | None = None
    error: str | None = Field(default=None, description="Failure message when status is 'failed'")
    notification_shown: bool
    messages: list[str] = Field(default_factory=list, description="One-shot user messages since the last poll")


class SelectImageRequest(BaseModel):
    """Picker result; null means the user cancelled."""

    image_reference: str | None = None


class PermissionRequest(BaseModel):
    capability: str = Field(min_length=1)
    granted: bool


class PresentationResponse(BaseModel):
    """Flat display payload plus the report derived from it."""

    summary_text: str
    image_reference: str
    inference_time_ms: int
    report: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    active_sessions: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(default="image_classification")
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str
    input_size: int


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str

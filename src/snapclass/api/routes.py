"""API route definitions."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, UploadFile, status

from snapclass.api.middleware import verify_api_key
from snapclass.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
    PermissionRequest,
    PresentationResponse,
    SelectImageRequest,
    SessionResponse,
    TopCategory,
)
from snapclass.api.sessions import SessionHandle
from snapclass.core.aggregator import aggregate, format_report
from snapclass.core.display import render_result
from snapclass.core.models import Empty, Failure
from snapclass.core.state import Failed, Idle, PersistedState
from snapclass.errors import ClassifierFailure, DecodeError, EmptyResultError
from snapclass.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from snapclass.api.sessions import SessionRegistry
    from snapclass.config import Settings
    from snapclass.ml.classifier_client import ClassifierClient
    from snapclass.ml.image_source import ImageSource
    from snapclass.ml.inference import InferencePool
    from snapclass.ml.model_manager import ModelManager

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

HTTP_413_CONTENT_TOO_LARGE = 413
HTTP_422_UNPROCESSABLE_CONTENT = 422

_NOT_FOUND = {status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_classifier_client(request: Request) -> ClassifierClient:
    client: ClassifierClient = request.app.state.classifier_client
    return client


def _get_image_source(request: Request) -> ImageSource:
    source: ImageSource = request.app.state.image_source
    return source


def _get_sessions(request: Request) -> SessionRegistry:
    sessions: SessionRegistry = request.app.state.sessions
    return sessions


def _get_handle(session_id: str, request: Request) -> SessionHandle:
    handle = _get_sessions(request).get(session_id)
    if handle is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown session: {session_id}")
    return handle


SessionDep = Annotated[SessionHandle, Depends(_get_handle)]


def _session_response(handle: SessionHandle) -> SessionResponse:
    session = handle.session
    state = session.state
    return SessionResponse(
        session_id=handle.session_id,
        status=state.status,  # type: ignore[arg-type]
        image_reference=None if isinstance(state, Idle) else state.image_reference,
        error=state.message if isinstance(state, Failed) else None,
        notification_shown=session.notification_shown,
        messages=handle.drain_messages(),
    )


# ---------------------------------------------------------------------------
# One-shot classification
# ---------------------------------------------------------------------------


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return ranked tags."""
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=HTTP_413_CONTENT_TOO_LARGE,
            detail=f"Upload exceeds {settings.max_file_size} bytes",
        )

    try:
        pixels = await asyncio.to_thread(_get_image_source(request).decode, data)
    except DecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    outcome = await _get_classifier_client(request).classify(pixels)
    if isinstance(outcome, Failure):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=ClassifierFailure(outcome.message).user_message,
        )
    if isinstance(outcome, Empty):
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE_CONTENT, detail=EmptyResultError().user_message)

    try:
        summary = aggregate(outcome.result)
    except EmptyResultError as exc:
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE_CONTENT, detail=exc.user_message) from exc

    return ClassifyImageResponse(
        tags=[
            ImageTag(label=category.label, confidence=category.score, percentage=entry.raw_percentage)
            for category, entry in zip(outcome.result, summary.ranked, strict=True)
        ],
        top=TopCategory(label=summary.top.label, percentage=summary.top.percentage),
        inference_time_ms=outcome.inference_time_ms,
        summary=format_report(summary, outcome.inference_time_ms),
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post(
    "/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a classification session",
)
async def create_session(request: Request) -> SessionResponse:
    return _session_response(_get_sessions(request).create())


@router.post(
    "/sessions/restore",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reopen a session from a snapshot",
)
async def restore_session(request: Request, persisted: PersistedState) -> SessionResponse:
    return _session_response(_get_sessions(request).restore(persisted))


@router.get("/sessions/{session_id}", response_model=SessionResponse, responses=_NOT_FOUND)
async def get_session(handle: SessionDep) -> SessionResponse:
    """Return the session state and drain pending one-shot messages."""
    return _session_response(handle)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT, responses=_NOT_FOUND)
async def close_session(session_id: str, request: Request) -> Response:
    if not _get_sessions(request).remove(session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown session: {session_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put(
    "/sessions/{session_id}/image",
    response_model=SessionResponse,
    responses=_NOT_FOUND,
    summary="Apply an image picker result",
)
async def select_image(body: SelectImageRequest, handle: SessionDep) -> SessionResponse:
    handle.session.select_image(body.image_reference)
    return _session_response(handle)


@router.post(
    "/sessions/{session_id}/analyze",
    response_model=SessionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_NOT_FOUND,
    summary="Start classifying the selected image",
)
async def analyze(handle: SessionDep) -> SessionResponse:
    await handle.session.analyze()
    return _session_response(handle)


@router.post(
    "/sessions/{session_id}/permissions",
    response_model=SessionResponse,
    responses=_NOT_FOUND,
    summary="Report a permission dialog outcome",
)
async def report_permission(body: PermissionRequest, handle: SessionDep) -> SessionResponse:
    handle.session.on_permission_result(body.capability, body.granted)
    return _session_response(handle)


@router.get(
    "/sessions/{session_id}/result",
    response_model=PresentationResponse,
    responses={**_NOT_FOUND, status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Fetch the display payload of a completed session",
)
async def get_result(handle: SessionDep) -> PresentationResponse:
    payload = handle.session.present()
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session is {handle.session.state.status}, not completed",
        )
    return PresentationResponse(**payload.to_transfer(), report=render_result(payload))


@router.post(
    "/sessions/{session_id}/snapshot",
    response_model=PersistedState,
    responses=_NOT_FOUND,
    summary="Capture the session's transient state",
)
async def snapshot_session(handle: SessionDep) -> PersistedState:
    return handle.session.snapshot()


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        active_sessions=len(_get_sessions(request)),
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and their status based on current configuration."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            status="active" if spec.name == settings.classification_model else "available",
            license=spec.license,
            input_size=spec.input_size,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)

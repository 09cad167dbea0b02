"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from snapclass.config import Settings

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from snapclass.api.routes import router
from snapclass.api.sessions import SessionRegistry
from snapclass.config import get_settings
from snapclass.ml.classifier_client import ClassifierClient, ClassifierOptions
from snapclass.ml.image_classifier import OnnxImageClassifier
from snapclass.ml.image_source import ImageSource
from snapclass.ml.inference import InferencePool
from snapclass.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build the service graph and attach it to ``app.state``."""
    app.state.settings = settings

    inference_pool = InferencePool(settings.max_concurrent)
    model_manager = OnnxModelManager(settings)
    classifier = OnnxImageClassifier(model_manager, settings.classification_model)
    classifier_client = ClassifierClient(
        classifier,
        inference_pool,
        options=ClassifierOptions.from_settings(settings),
        timeout=settings.classify_timeout,
    )
    image_source = ImageSource.from_settings(settings)

    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.classifier_client = classifier_client
    app.state.image_source = image_source
    app.state.sessions = SessionRegistry(image_source, classifier_client, session_ttl=settings.session_ttl)


async def housekeeping(model_manager: OnnxModelManager, sessions: SessionRegistry, interval: float) -> None:
    """Every ``interval`` seconds, unload idle models and drop abandoned sessions."""
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(model_manager.unload_idle_models)
            evicted = sessions.evict_idle()
        except Exception:
            logger.exception("Housekeeping sweep failed")
            continue
        if evicted:
            logger.info("Housekeeping evicted %d idle sessions", evicted)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SnapClass (device=%s, max_concurrent=%s, model=%s, max_results=%s, timeout=%ss)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
        settings.max_results,
        settings.classify_timeout,
    )

    init_state(app, settings)
    app.state.housekeeping = asyncio.create_task(
        housekeeping(app.state.model_manager, app.state.sessions, settings.housekeeping_interval),
        name="snapclass-housekeeping",
    )

    logger.info("SnapClass ready")
    yield

    logger.info("Shutting down SnapClass")
    app.state.housekeeping.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.housekeeping
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("SnapClass shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapClass",
        description="Image classification service with ranked results and resumable sessions",
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


def run() -> None:
    """Serve the application with uvicorn."""
    settings = get_settings()
    uvicorn.run("snapclass.main:app", host=settings.host, port=settings.port)

"""Classification session: the state machine for one image-to-result transaction.

Transitions::

    Idle ----select----> ImageSelected ----analyze----> Analyzing
      ^                      ^    ^                      |     |
      |                      |    +---select (any)----   |     |
    analyze (no image,       |                           v     v
    message only)            +------ select ------ Completed  Failed

A new selection always supersedes the current state. Every dispatch is
tagged with a ``Ticket``; outcomes whose ticket is no longer the live one
are discarded, so stale callbacks never mutate state.

User-visible messages go through ``_emit``, gated by the one-shot
``notification_shown`` flag. The flag is reset when an analysis attempt
starts and survives snapshot/restore.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Protocol

from snapclass.core import handoff
from snapclass.core.aggregator import aggregate, parse_lines, render_lines
from snapclass.core.models import Category, Empty, Failure, Ticket
from snapclass.core.state import (
    Analyzing,
    Completed,
    Failed,
    Idle,
    ImageSelected,
    PersistedState,
)
from snapclass.errors import (
    ClassifierFailure,
    DecodeError,
    EmptyResultError,
    MalformedPayloadError,
    NoImageSelectedError,
    NotReadyError,
    SnapClassError,
)

if TYPE_CHECKING:
    from snapclass.core.handoff import PresentationPayload
    from snapclass.core.models import ImageReference, InferenceOutcome, PixelBuffer
    from snapclass.core.state import SessionState
    from snapclass.ml.classifier_client import OutcomeListener

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def __call__(self, message: str) -> None: ...


class ImageResolver(Protocol):
    def resolve(self, ref: ImageReference) -> PixelBuffer: ...


class Dispatcher(Protocol):
    def submit(self, ticket: Ticket, pixels: PixelBuffer, listener: OutcomeListener) -> asyncio.Task[None]: ...


def _log_message(message: str) -> None:
    logger.info("User message: %s", message)


class ClassificationSession:
    """Owns the in-flight classification request and its user messages."""

    def __init__(
        self,
        image_source: ImageResolver,
        client: Dispatcher,
        notifier: Notifier | None = None,
        *,
        notification_shown: bool = False,
    ) -> None:
        self._image_source = image_source
        self._client = client
        self._notifier: Notifier = notifier or _log_message
        self._lock = threading.Lock()
        self._state: SessionState = Idle()
        self._notification_shown = notification_shown
        self._permissions: dict[str, bool] = {}

    # -- Introspection ------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def notification_shown(self) -> bool:
        with self._lock:
            return self._notification_shown

    @property
    def permissions(self) -> dict[str, bool]:
        with self._lock:
            return dict(self._permissions)

    # -- User actions -------------------------------------------------------

    def select_image(self, ref: ImageReference | None) -> SessionState:
        """Apply a picker result. ``None`` means the picker was cancelled."""
        with self._lock:
            if ref is None:
                logger.debug("No image selected, keeping %s", self._state.status)
                return self._state
            if isinstance(self._state, Analyzing):
                logger.info("Superseding in-flight request %s", self._state.request_id)
            self._state = ImageSelected(image_reference=ref)
            return self._state

    async def analyze(self) -> asyncio.Task[None] | None:
        """Start classifying the selected image.

        Returns the dispatched task, or ``None`` when nothing was dispatched
        (no image, a request already in flight, or an undecodable image).
        """
        with self._lock:
            current = self._state
            if isinstance(current, Analyzing):
                logger.info("Analysis already in flight for %s", current.image_reference)
                return None
            self._notification_shown = False
            if isinstance(current, Idle):
                message = self._claim_message(NoImageSelectedError())
                ticket = None
            else:
                ticket = Ticket(image_reference=current.image_reference)
                self._state = Analyzing(image_reference=ticket.image_reference, request_id=ticket.request_id)
                message = None

        if ticket is None:
            self._emit(message)
            return None

        try:
            pixels = await asyncio.to_thread(self._image_source.resolve, ticket.image_reference)
        except DecodeError as exc:
            logger.warning("Cannot decode %s: %s", ticket.image_reference, exc)
            self._fail(ticket, exc)
            return None
        except Exception as exc:
            logger.exception("Unexpected error reading %r", ticket.image_reference)
            self._fail(ticket, DecodeError(f"Cannot read image: {str(exc) or type(exc).__name__}"))
            return None

        with self._lock:
            if not self._is_live(ticket):
                logger.info("Selection changed while decoding %s, not dispatching", ticket.image_reference)
                return None

        logger.info("Dispatching request %s for %s", ticket.request_id, ticket.image_reference)
        return self._client.submit(ticket, pixels, self.on_outcome)

    def on_outcome(self, ticket: Ticket, outcome: InferenceOutcome) -> None:
        """Receive the classifier outcome for ``ticket``."""
        if isinstance(outcome, Failure):
            self._fail(ticket, ClassifierFailure(outcome.message))
            return
        if isinstance(outcome, Empty) or not outcome.result:
            self._fail(ticket, EmptyResultError())
            return

        with self._lock:
            if not self._is_live(ticket):
                logger.info("Discarding stale outcome for request %s", ticket.request_id)
                return
            self._state = Completed(
                image_reference=ticket.image_reference,
                result=outcome.result,
                inference_time_ms=outcome.inference_time_ms,
            )
        logger.info("Request %s completed in %dms", ticket.request_id, outcome.inference_time_ms)

    def present(self) -> PresentationPayload | None:
        """Package the completed result, or show one message if not ready."""
        state = self.state
        try:
            return handoff.package(state)
        except (NotReadyError, EmptyResultError) as exc:
            logger.info("Presentation requested in state %s", state.status)
            self._show(exc)
            return None

    def on_permission_result(self, capability: str, granted: bool) -> None:
        """Record a permission outcome. Denial never blocks image selection."""
        logger.debug("Permission %s granted: %s", capability, granted)
        with self._lock:
            self._permissions[capability] = granted
            message = self._claim_text("Permission request granted" if granted else "Permission request denied")
        self._emit(message)

    # -- Persistence --------------------------------------------------------

    def snapshot(self) -> PersistedState:
        with self._lock:
            state = self._state
            shown = self._notification_shown

        if isinstance(state, Idle):
            return PersistedState(notification_shown=shown)
        if isinstance(state, Completed):
            summary = aggregate(state.result)
            return PersistedState(
                image_reference=state.image_reference,
                notification_shown=shown,
                result_text=render_lines(summary.ranked),
                inference_time_ms=state.inference_time_ms,
            )
        return PersistedState(image_reference=state.image_reference, notification_shown=shown)

    @classmethod
    def restore(
        cls,
        persisted: PersistedState,
        image_source: ImageResolver,
        client: Dispatcher,
        notifier: Notifier | None = None,
    ) -> ClassificationSession:
        """Rebuild a session after a teardown without re-running analysis.

        An analysis that was in flight restores as ``ImageSelected``.
        """
        session = cls(image_source, client, notifier, notification_shown=persisted.notification_shown)
        ref = persisted.image_reference
        if ref is None:
            return session

        session._state = ImageSelected(image_reference=ref)
        if persisted.result_text is not None and persisted.inference_time_ms is not None:
            try:
                ranked = parse_lines(persisted.result_text)
                result = tuple(
                    Category(label=entry.label, score=entry.raw_percentage / 100) for entry in ranked
                )
            except (MalformedPayloadError, ValueError):
                logger.warning("Discarding unreadable persisted result for %s", ref)
            else:
                session._state = Completed(
                    image_reference=ref,
                    result=result,
                    inference_time_ms=persisted.inference_time_ms,
                )
        logger.debug("Restored session in state %s", session._state.status)
        return session

    # -- Internal -----------------------------------------------------------

    def _is_live(self, ticket: Ticket) -> bool:
        state = self._state
        return isinstance(state, Analyzing) and state.request_id == ticket.request_id

    def _fail(self, ticket: Ticket, error: SnapClassError) -> None:
        with self._lock:
            if not self._is_live(ticket):
                logger.info("Discarding stale failure for request %s: %s", ticket.request_id, error)
                return
            self._state = Failed(image_reference=ticket.image_reference, message=str(error))
            message = self._claim_message(error)
        logger.warning("Request %s failed: %s", ticket.request_id, error)
        self._emit(message)

    def _show(self, error: SnapClassError) -> None:
        with self._lock:
            message = self._claim_message(error)
        self._emit(message)

    def _claim_message(self, error: SnapClassError) -> str | None:
        return self._claim_text(error.user_message)

    def _claim_text(self, text: str) -> str | None:
        # Caller holds the lock.
        if self._notification_shown:
            logger.debug("Suppressed message: %s", text)
            return None
        self._notification_shown = True
        return text

    def _emit(self, message: str | None) -> None:
        if message is not None:
            self._notifier(message)

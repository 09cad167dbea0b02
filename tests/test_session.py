"""Tests for the classification session state machine."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest

from snapclass.core.models import Category, Empty, Failure, Success, Ticket
from snapclass.core.session import ClassificationSession
from snapclass.core.state import Analyzing, Completed, Failed, Idle, ImageSelected, PersistedState
from snapclass.errors import DecodeError
from snapclass.ml.classifier_client import ClassifierClient
from snapclass.ml.image_source import ImageSource
from snapclass.ml.inference import InferencePool

from conftest import FakeClassifier

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from numpy.typing import NDArray

    from snapclass.core.models import ImageReference, InferenceOutcome

PETS = (Category("cat", 0.82), Category("dog", 0.95), Category("bird", 0.95))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class StubImageSource:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.resolved: list[ImageReference] = []
        self.on_resolve: Callable[[ImageReference], None] | None = None

    def resolve(self, ref: ImageReference) -> NDArray[np.uint8]:
        self.resolved.append(ref)
        if self.on_resolve is not None:
            self.on_resolve(ref)
        if self.error is not None:
            raise self.error
        return np.zeros((4, 4, 3), dtype=np.uint8)


class RecordingDispatcher:
    """Captures dispatched tickets; outcomes are delivered by the test."""

    def __init__(self) -> None:
        self.tickets: list[Ticket] = []
        self.listener: Callable[[Ticket, InferenceOutcome], None] | None = None

    def submit(self, ticket: Ticket, pixels: object, listener: Callable[[Ticket, InferenceOutcome], None]) -> MagicMock:
        self.tickets.append(ticket)
        self.listener = listener
        return MagicMock(name=f"task-{ticket.request_id}")

    def deliver(self, outcome: InferenceOutcome, index: int = -1) -> None:
        assert self.listener is not None
        self.listener(self.tickets[index], outcome)


class Harness:
    def __init__(self, source: StubImageSource | None = None, notification_shown: bool = False) -> None:
        self.source = source or StubImageSource()
        self.dispatcher = RecordingDispatcher()
        self.messages: list[str] = []
        self.session = ClassificationSession(
            self.source,
            self.dispatcher,
            self.messages.append,
            notification_shown=notification_shown,
        )

    def restore(self, persisted: PersistedState) -> Harness:
        restored = Harness(self.source)
        restored.session = ClassificationSession.restore(
            persisted, restored.source, restored.dispatcher, restored.messages.append
        )
        return restored


@pytest.fixture()
def harness() -> Harness:
    return Harness()


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelectImage:
    def test_starts_idle(self, harness: Harness) -> None:
        assert harness.session.state == Idle()
        assert harness.session.notification_shown is False

    def test_selection_moves_to_image_selected(self, harness: Harness) -> None:
        state = harness.session.select_image("/photos/a.jpg")
        assert state == ImageSelected("/photos/a.jpg")

    def test_cancelled_picker_keeps_idle(self, harness: Harness) -> None:
        harness.session.select_image(None)
        assert harness.session.state == Idle()

    async def test_cancelled_picker_keeps_completed(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()
        harness.dispatcher.deliver(Success(PETS, 120))
        before = harness.session.state

        harness.session.select_image(None)

        assert harness.session.state is before
        assert isinstance(before, Completed)

    async def test_new_selection_supersedes_completed(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()
        harness.dispatcher.deliver(Success(PETS, 120))

        harness.session.select_image("/photos/b.jpg")

        assert harness.session.state == ImageSelected("/photos/b.jpg")


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class TestAnalyze:
    async def test_analyze_without_image_shows_one_message(self, harness: Harness) -> None:
        task = await harness.session.analyze()

        assert task is None
        assert harness.session.state == Idle()
        assert harness.messages == ["Please select an image first"]
        assert harness.dispatcher.tickets == []

    async def test_analyze_dispatches_with_selected_reference(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")

        task = await harness.session.analyze()

        assert task is not None
        (ticket,) = harness.dispatcher.tickets
        assert ticket.image_reference == "/photos/a.jpg"
        assert harness.session.state == Analyzing("/photos/a.jpg", ticket.request_id)
        assert harness.source.resolved == ["/photos/a.jpg"]

    async def test_success_completes_with_matching_reference(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()

        harness.dispatcher.deliver(Success(PETS, 120))

        assert harness.session.state == Completed("/photos/a.jpg", PETS, 120)
        assert harness.messages == []

    async def test_only_one_request_in_flight(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()

        second = await harness.session.analyze()

        assert second is None
        assert len(harness.dispatcher.tickets) == 1

    async def test_reanalyze_after_completion(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()
        harness.dispatcher.deliver(Success(PETS, 120))

        await harness.session.analyze()

        assert len(harness.dispatcher.tickets) == 2
        assert isinstance(harness.session.state, Analyzing)

    async def test_decode_error_fails_with_one_message(self) -> None:
        harness = Harness(StubImageSource(error=DecodeError("Cannot decode image: truncated")))
        harness.session.select_image("/photos/broken.jpg")

        task = await harness.session.analyze()

        assert task is None
        assert harness.session.state == Failed("/photos/broken.jpg", "Cannot decode image: truncated")
        assert harness.messages == ["Cannot decode image: truncated"]
        assert harness.dispatcher.tickets == []

    async def test_unexpected_read_error_fails_and_allows_retry(self) -> None:
        source = StubImageSource(error=ValueError("embedded null byte"))
        harness = Harness(source)
        harness.session.select_image("/photos/a.jpg")

        assert await harness.session.analyze() is None
        assert harness.session.state == Failed("/photos/a.jpg", "Cannot read image: embedded null byte")
        assert harness.messages == ["Cannot read image: embedded null byte"]

        source.error = None
        assert await harness.session.analyze() is not None
        assert isinstance(harness.session.state, Analyzing)

    async def test_nul_in_reference_fails_with_real_image_source(self, tmp_path: Path) -> None:
        messages: list[str] = []
        session = ClassificationSession(ImageSource(max_pixels=1_000_000), RecordingDispatcher(), messages.append)
        session.select_image(f"{tmp_path}/a\x00b.png")

        assert await session.analyze() is None

        state = session.state
        assert isinstance(state, Failed)
        assert "Cannot open image" in state.message
        assert len(messages) == 1
        assert await session.analyze() is None
        assert isinstance(session.state, Failed)

    async def test_selection_during_decode_prevents_dispatch(self, harness: Harness) -> None:
        harness.source.on_resolve = lambda _ref: harness.session.select_image("/photos/b.jpg")
        harness.session.select_image("/photos/a.jpg")

        task = await harness.session.analyze()

        assert task is None
        assert harness.dispatcher.tickets == []
        assert harness.session.state == ImageSelected("/photos/b.jpg")


class TestOutcomes:
    async def test_empty_outcome_fails_with_one_message(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()

        harness.dispatcher.deliver(Empty())

        assert harness.session.state == Failed("/photos/a.jpg", "No results found")
        assert harness.messages == ["No results found"]

    async def test_success_with_no_categories_fails(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()

        harness.dispatcher.deliver(Success((), 12))

        assert isinstance(harness.session.state, Failed)
        assert harness.messages == ["No results found"]

    async def test_failure_outcome_fails_with_error_message(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()

        harness.dispatcher.deliver(Failure("bad input shape"))

        assert harness.session.state == Failed("/photos/a.jpg", "bad input shape")
        assert harness.messages == ["Error: bad input shape"]

    async def test_stale_outcome_after_new_selection_is_ignored(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()

        harness.session.select_image("/photos/b.jpg")
        harness.dispatcher.deliver(Success(PETS, 120))

        assert harness.session.state == ImageSelected("/photos/b.jpg")
        assert harness.messages == []

    async def test_stale_failure_is_ignored(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()

        harness.session.select_image("/photos/b.jpg")
        harness.dispatcher.deliver(Failure("late"))

        assert harness.session.state == ImageSelected("/photos/b.jpg")
        assert harness.messages == []

    async def test_outcome_for_reselected_same_reference_is_stale(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()

        harness.dispatcher.deliver(Success(PETS, 999), index=0)
        assert isinstance(harness.session.state, Analyzing)

        harness.dispatcher.deliver(Success(PETS, 80), index=1)
        assert harness.session.state == Completed("/photos/a.jpg", PETS, 80)


# ---------------------------------------------------------------------------
# One-shot notifications
# ---------------------------------------------------------------------------


class TestNotificationFlag:
    async def test_consecutive_failures_show_one_message(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()
        harness.dispatcher.deliver(Failure("backend down"))

        assert harness.session.present() is None

        assert harness.messages == ["Error: backend down"]
        assert harness.session.notification_shown is True

    async def test_new_attempt_resets_flag(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()
        harness.dispatcher.deliver(Empty())

        await harness.session.analyze()
        assert harness.session.notification_shown is False
        harness.dispatcher.deliver(Failure("again"))

        assert harness.messages == ["No results found", "Error: again"]

    async def test_attempt_after_restored_completion_can_show_again(self) -> None:
        persisted = PersistedState(
            image_reference="/photos/a.jpg",
            notification_shown=True,
            result_text="cat: 82.0%",
            inference_time_ms=10,
        )
        harness = Harness().restore(persisted)
        assert isinstance(harness.session.state, Completed)

        await harness.session.analyze()
        harness.dispatcher.deliver(Failure("boom"))

        assert harness.messages == ["Error: boom"]

    async def test_present_before_completion_shows_one_message(self, harness: Harness) -> None:
        assert harness.session.present() is None
        assert harness.session.present() is None
        assert harness.messages == ["The classification result is not ready yet"]

    async def test_present_after_completion(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()
        harness.dispatcher.deliver(Success(PETS, 120))

        payload = harness.session.present()

        assert payload is not None
        assert payload.summary_text == "cat: 82.0%\ndog: 95.0%\nbird: 95.0%"
        assert payload.image_reference == "/photos/a.jpg"
        assert payload.inference_time_ms == 120


class TestPermissions:
    def test_denied_permission_does_not_block_selection(self, harness: Harness) -> None:
        harness.session.on_permission_result("read_media_images", granted=False)
        harness.session.select_image("/photos/a.jpg")

        assert harness.session.permissions == {"read_media_images": False}
        assert harness.session.state == ImageSelected("/photos/a.jpg")
        assert harness.messages == ["Permission request denied"]

    def test_granted_permission_message(self, harness: Harness) -> None:
        harness.session.on_permission_result("read_media_images", granted=True)
        assert harness.messages == ["Permission request granted"]


# ---------------------------------------------------------------------------
# Snapshot / restore
# ---------------------------------------------------------------------------


class TestSnapshotRestore:
    def test_idle_snapshot(self, harness: Harness) -> None:
        assert harness.session.snapshot() == PersistedState()

    async def test_analyzing_restores_as_image_selected(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()

        restored = harness.restore(harness.session.snapshot())

        assert restored.session.state == ImageSelected("/photos/a.jpg")
        assert restored.dispatcher.tickets == []

    async def test_completed_restores_without_reanalysis(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()
        harness.dispatcher.deliver(Success(PETS, 120))

        snapshot = harness.session.snapshot()
        restored = harness.restore(snapshot)

        assert snapshot.result_text == "cat: 82.0%\ndog: 95.0%\nbird: 95.0%"
        state = restored.session.state
        assert isinstance(state, Completed)
        assert state.image_reference == "/photos/a.jpg"
        assert state.inference_time_ms == 120
        assert [c.label for c in state.result] == ["cat", "dog", "bird"]
        assert [c.score for c in state.result] == pytest.approx([0.82, 0.95, 0.95])
        assert restored.dispatcher.tickets == []
        assert restored.messages == []

    async def test_failed_restores_as_image_selected(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()
        harness.dispatcher.deliver(Empty())

        restored = harness.restore(harness.session.snapshot())

        assert restored.session.state == ImageSelected("/photos/a.jpg")

    async def test_flag_survives_round_trip(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        await harness.session.analyze()
        harness.dispatcher.deliver(Failure("boom"))

        restored = harness.restore(harness.session.snapshot())

        assert restored.session.notification_shown is True
        assert restored.session.present() is None
        assert restored.messages == []

    def test_unreadable_result_text_restores_selection(self, harness: Harness) -> None:
        persisted = PersistedState(image_reference="/photos/a.jpg", result_text="???", inference_time_ms=3)
        restored = harness.restore(persisted)
        assert restored.session.state == ImageSelected("/photos/a.jpg")

    def test_snapshot_is_flat(self, harness: Harness) -> None:
        harness.session.select_image("/photos/a.jpg")
        dumped = harness.session.snapshot().model_dump()
        assert all(isinstance(v, (str, bool, int, type(None))) for v in dumped.values())


# ---------------------------------------------------------------------------
# End to end with the real classifier client
# ---------------------------------------------------------------------------


class TestWithClassifierClient:
    async def test_pipeline_completes(self, image_path: Path) -> None:
        pool = InferencePool(max_concurrent=1)
        classifier = FakeClassifier(categories=list(PETS))
        client = ClassifierClient(classifier, pool, timeout=5)
        messages: list[str] = []
        session = ClassificationSession(ImageSource(max_pixels=1_000_000), client, messages.append)
        try:
            session.select_image(str(image_path))
            task = await session.analyze()
            assert task is not None
            await task
        finally:
            pool.shutdown()

        state = session.state
        assert isinstance(state, Completed)
        assert state.image_reference == str(image_path)
        assert state.result == PETS
        assert classifier.calls == [(6, 8, 3)]
        assert messages == []

    async def test_classifier_error_fails_session(self, image_path: Path) -> None:
        pool = InferencePool(max_concurrent=1)
        client = ClassifierClient(FakeClassifier(error=RuntimeError("bad input shape")), pool, timeout=5)
        messages: list[str] = []
        session = ClassificationSession(ImageSource(max_pixels=1_000_000), client, messages.append)
        try:
            session.select_image(str(image_path))
            task = await session.analyze()
            assert task is not None
            await task
        finally:
            pool.shutdown()

        assert session.state == Failed(str(image_path), "bad input shape")
        assert messages == ["Error: bad input shape"]

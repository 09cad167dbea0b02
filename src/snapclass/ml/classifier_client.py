"""Asynchronous classifier boundary.

The client runs an ``ImageClassifier`` on the inference pool and turns
every result, including errors and timeouts, into exactly one
``InferenceOutcome``. Nothing raised by the backend crosses this boundary.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from snapclass.core.models import Empty, Failure, Success
from snapclass.ml.inference import DeadlineExceededError, PoolSaturatedError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from snapclass.config import Settings
    from snapclass.core.models import Category, ClassificationResult, InferenceOutcome, PixelBuffer, Ticket
    from snapclass.ml.image_classifier import ImageClassifier
    from snapclass.ml.inference import InferencePool

    OutcomeListener = Callable[[Ticket, InferenceOutcome], None]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassifierOptions:
    """Filters applied to backend output before delivery."""

    max_results: int | None = None
    score_threshold: float = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> ClassifierOptions:
        return cls(max_results=settings.max_results, score_threshold=settings.score_threshold)

    def apply(self, categories: Sequence[Category]) -> ClassificationResult:
        """Drop categories under the threshold, then truncate. Order is preserved."""
        kept = tuple(c for c in categories if c.score >= self.score_threshold)
        if self.max_results is not None:
            kept = kept[: self.max_results]
        return kept


class ClassifierClient:
    """Non-blocking front end for an image classifier."""

    def __init__(
        self,
        classifier: ImageClassifier,
        pool: InferencePool,
        options: ClassifierOptions | None = None,
        timeout: float | None = None,
    ) -> None:
        self._classifier = classifier
        self._pool = pool
        self._options = options or ClassifierOptions()
        self._timeout = timeout
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def model_name(self) -> str:
        return self._classifier.model_name

    async def classify(self, pixels: PixelBuffer) -> InferenceOutcome:
        """Classify ``pixels`` and report the outcome. Never raises."""
        start = time.perf_counter()
        try:
            categories = await self._pool.run_with_deadline(
                self._classifier.classify, pixels, deadline=self._timeout
            )
        except DeadlineExceededError:
            logger.warning("Classification with %s timed out after %ss", self.model_name, self._timeout)
            return Failure(f"Classification timed out after {self._timeout:g}s")
        except PoolSaturatedError as exc:
            return Failure(str(exc))
        except Exception as exc:
            logger.exception("Classifier %s failed", self.model_name)
            return Failure(str(exc) or type(exc).__name__)

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        try:
            result = self._options.apply(categories)
        except (TypeError, AttributeError) as exc:
            logger.exception("Classifier %s returned malformed output", self.model_name)
            return Failure(f"Malformed classifier output: {exc}")

        if not result:
            logger.info("Classifier %s returned no categories", self.model_name)
            return Empty()

        logger.info("Classified image in %dms (%d categories)", elapsed_ms, len(result))
        return Success(result=result, inference_time_ms=elapsed_ms)

    def submit(self, ticket: Ticket, pixels: PixelBuffer, listener: OutcomeListener) -> asyncio.Task[None]:
        """Schedule a classification; ``listener`` receives exactly one outcome."""
        task = asyncio.create_task(self._deliver(ticket, pixels, listener), name=f"classify-{ticket.request_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, ticket: Ticket, pixels: PixelBuffer, listener: OutcomeListener) -> None:
        outcome = await self.classify(pixels)
        listener(ticket, outcome)

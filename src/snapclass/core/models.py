"""Value types shared by the classification pipeline."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeAlias

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    PixelBuffer: TypeAlias = NDArray[np.uint8]

ImageReference: TypeAlias = str


@dataclass(frozen=True)
class Category:
    """A single (label, confidence) pair emitted by the classifier."""

    label: str
    score: float

    def __post_init__(self) -> None:
        # Labels travel as one "label: pct%" line and are trimmed on the way back.
        if not self.label or self.label != self.label.strip() or len(self.label.splitlines()) != 1:
            raise ValueError(f"Category label must be a single trimmed line, got {self.label!r}")
        if not math.isfinite(self.score) or not 0.0 <= self.score <= 1.0:
            raise ValueError(f"Category score must be within [0, 1], got {self.score!r}")


# Classifier emission order, not necessarily sorted by score.
ClassificationResult: TypeAlias = tuple[Category, ...]


# ---------------------------------------------------------------------------
# Inference outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Success:
    result: ClassificationResult
    inference_time_ms: int

    def __post_init__(self) -> None:
        if self.inference_time_ms < 0:
            raise ValueError("inference_time_ms must be non-negative")


@dataclass(frozen=True)
class Empty:
    pass


@dataclass(frozen=True)
class Failure:
    message: str


InferenceOutcome: TypeAlias = Success | Empty | Failure


@dataclass(frozen=True)
class Ticket:
    """Identity of one dispatched classification request."""

    image_reference: ImageReference
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

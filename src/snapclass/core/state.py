"""Session states.

``Analyzing``, ``Completed`` and ``Failed`` always carry the image
reference that triggered them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, TypeAlias

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from snapclass.core.models import ClassificationResult, ImageReference


@dataclass(frozen=True)
class Idle:
    status: ClassVar[str] = "idle"


@dataclass(frozen=True)
class ImageSelected:
    status: ClassVar[str] = "image_selected"

    image_reference: ImageReference


@dataclass(frozen=True)
class Analyzing:
    status: ClassVar[str] = "analyzing"

    image_reference: ImageReference
    request_id: str


@dataclass(frozen=True)
class Completed:
    status: ClassVar[str] = "completed"

    image_reference: ImageReference
    result: ClassificationResult
    inference_time_ms: int


@dataclass(frozen=True)
class Failed:
    status: ClassVar[str] = "failed"

    image_reference: ImageReference
    message: str


SessionState: TypeAlias = Idle | ImageSelected | Analyzing | Completed | Failed


class PersistedState(BaseModel):
    """Transient state carried across a single teardown/recreate cycle.

    All fields are primitives so the record fits a flat key/value bundle.
    """

    image_reference: str | None = None
    notification_shown: bool = False
    result_text: str | None = Field(default=None, description="Completed result as 'label: pct%' lines")
    inference_time_ms: int | None = Field(default=None, ge=0)

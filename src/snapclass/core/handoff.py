"""Package completed sessions for the display stage."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from snapclass.core.aggregator import aggregate, render_lines
from snapclass.core.state import Completed
from snapclass.errors import MalformedPayloadError, NotReadyError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from snapclass.core.state import SessionState


class PresentationPayload(BaseModel):
    """The flat record handed to the display stage."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    summary_text: StrictStr = Field(description="Per-category 'label: pct%' lines")
    image_reference: StrictStr
    inference_time_ms: StrictInt = Field(ge=0)

    def to_transfer(self) -> dict[str, str | int]:
        return {
            "summary_text": self.summary_text,
            "image_reference": self.image_reference,
            "inference_time_ms": self.inference_time_ms,
        }

    @classmethod
    def from_transfer(cls, data: Mapping[str, object]) -> PresentationPayload:
        """Validate a flat transfer mapping.

        Raises:
            MalformedPayloadError: If a field is missing or has the wrong type.
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            raise MalformedPayloadError(f"Invalid presentation payload: {exc.error_count()} error(s)") from exc


def package(state: SessionState) -> PresentationPayload:
    """Build the payload for a completed session.

    Raises:
        NotReadyError: If ``state`` is not ``Completed``.
        EmptyResultError: If the completed result has no categories.
    """
    if not isinstance(state, Completed):
        raise NotReadyError()

    summary = aggregate(state.result)
    return PresentationPayload(
        summary_text=render_lines(summary.ranked),
        image_reference=state.image_reference,
        inference_time_ms=state.inference_time_ms,
    )

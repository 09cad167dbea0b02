"""Display stage: rebuild the human-readable report from a flat payload."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from snapclass.core.aggregator import format_report, parse_lines, summarize
from snapclass.core.handoff import PresentationPayload
from snapclass.errors import EmptyResultError, MalformedPayloadError

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = MalformedPayloadError.default_message


def render_result(transfer: Mapping[str, object] | PresentationPayload) -> str:
    """Return the report text, or the fallback message if it cannot be built."""
    try:
        payload = (
            transfer if isinstance(transfer, PresentationPayload) else PresentationPayload.from_transfer(transfer)
        )
        summary = summarize(parse_lines(payload.summary_text))
    except (MalformedPayloadError, EmptyResultError):
        logger.exception("Error displaying result")
        return FALLBACK_MESSAGE

    logger.debug("Displaying result for %s (%dms)", payload.image_reference, payload.inference_time_ms)
    return format_report(summary, payload.inference_time_ms)

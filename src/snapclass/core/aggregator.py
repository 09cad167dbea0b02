"""Canonicalize, rank, render, and re-parse classification results.

The ``"label: pct%"`` line format is only a transfer encoding: the
structured ``ClassificationResult`` stays the source of truth and
``parse_lines`` recovers ``render_lines`` output losslessly for any
label ``Category`` accepts that has no colon.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from snapclass.errors import EmptyResultError, MalformedPayloadError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from snapclass.core.models import ClassificationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankedCategory:
    label: str
    raw_percentage: float

    @property
    def percentage(self) -> int:
        """Whole-number percentage for display."""
        return round_percentage(self.raw_percentage)


@dataclass(frozen=True)
class Summary:
    ranked: tuple[RankedCategory, ...]
    top: RankedCategory


def round_percentage(value: float) -> int:
    """Round half away from zero (94.5 -> 95, 2.5 -> 3)."""
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def aggregate(result: ClassificationResult) -> Summary:
    """Convert scores to percentages and pick the top category.

    Ties keep the first category seen.

    Raises:
        EmptyResultError: If ``result`` has no categories.
    """
    return summarize(RankedCategory(label=c.label, raw_percentage=c.score * 100) for c in result)


def summarize(ranked: Iterable[RankedCategory]) -> Summary:
    entries = tuple(ranked)
    if not entries:
        raise EmptyResultError()

    top = entries[0]
    for entry in entries[1:]:
        if entry.raw_percentage > top.raw_percentage:
            top = entry
    return Summary(ranked=entries, top=top)


def render_lines(ranked: Iterable[RankedCategory]) -> str:
    return "\n".join(f"{entry.label}: {entry.raw_percentage!r}%" for entry in ranked)


def parse_lines(text: str) -> tuple[RankedCategory, ...]:
    """Parse ``render_lines`` output, skipping malformed lines.

    Raises:
        MalformedPayloadError: If no line could be parsed.
    """
    parsed: list[RankedCategory] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        entry = _parse_line(line)
        if entry is None:
            if line.strip():
                logger.debug("Skipping malformed result line %d: %r", lineno, line)
            continue
        parsed.append(entry)

    if not parsed:
        raise MalformedPayloadError()
    return tuple(parsed)


def _parse_line(line: str) -> RankedCategory | None:
    parts = line.split(":")
    if len(parts) != 2:
        return None

    label = parts[0].strip()
    value = parts[1].strip().removesuffix("%").strip()
    try:
        percentage = float(value)
    except ValueError:
        return None
    if not label or not math.isfinite(percentage):
        return None
    return RankedCategory(label=label, raw_percentage=percentage)


def format_report(summary: Summary, inference_time_ms: int) -> str:
    """Human-readable result: one line per category, then the verdict and latency."""
    return (
        f"{render_lines(summary.ranked)}\n"
        f"\nThe image most likely belongs to the category {summary.top.label}\n"
        f"\nConfidence: {summary.top.percentage}%\n"
        f"\nInference time: {inference_time_ms}ms"
    )

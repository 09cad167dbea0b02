"""Shared fixtures: fake classifier backends and on-disk test images."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from snapclass.core.models import Category

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray


class FakeClassifier:
    """ImageClassifier stand-in with scripted output."""

    def __init__(
        self,
        categories: list[Category] | None = None,
        error: Exception | None = None,
        gate: threading.Event | None = None,
    ) -> None:
        self.categories = categories if categories is not None else [Category("cat", 0.82)]
        self.error = error
        self.gate = gate
        self.calls: list[tuple[int, ...]] = []

    @property
    def model_name(self) -> str:
        return "fake"

    def classify(self, image: NDArray[np.uint8]) -> list[Category]:
        self.calls.append(image.shape)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return list(self.categories)


def write_image(path: Path, size: tuple[int, int] = (8, 6), fmt: str = "PNG") -> Path:
    Image.new("RGB", size, color=(200, 30, 40)).save(path, format=fmt)
    return path


@pytest.fixture()
def image_path(tmp_path: Path) -> Path:
    """A small red PNG on disk."""
    return write_image(tmp_path / "red.png")


@pytest.fixture()
def pixels() -> NDArray[np.uint8]:
    return np.zeros((6, 8, 3), dtype=np.uint8)

"""Resolve user-selected image references to decoded pixel buffers."""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

from snapclass.errors import DecodeError
from snapclass.ml.preprocessing import decode_stream

if TYPE_CHECKING:
    from snapclass.config import Settings
    from snapclass.core.models import ImageReference, PixelBuffer

logger = logging.getLogger(__name__)


class ImageSource:
    """Opens image references (paths or file:// URIs) and decodes them."""

    def __init__(self, max_pixels: int, root: Path | None = None) -> None:
        self._max_pixels = max_pixels
        self._root = root.resolve() if root is not None else None

    @classmethod
    def from_settings(cls, settings: Settings) -> ImageSource:
        root = Path(settings.image_root) if settings.image_root else None
        return cls(max_pixels=settings.max_image_pixels, root=root)

    def resolve(self, ref: ImageReference) -> PixelBuffer:
        """Read and decode the image behind ``ref``.

        Raises:
            DecodeError: If the reference cannot be opened or decoded.
        """
        try:
            path = self._to_path(ref)
            with path.open("rb") as stream:
                pixels = decode_stream(stream, self._max_pixels)
        except (OSError, ValueError) as exc:
            # ValueError covers paths the OS cannot represent, such as embedded NUL.
            raise DecodeError(f"Cannot open image: {ref!r}") from exc

        logger.debug("Decoded %s to %s", ref, pixels.shape)
        return pixels

    def decode(self, data: bytes) -> PixelBuffer:
        """Decode raw uploaded bytes."""
        if not data:
            raise DecodeError("Empty image upload")
        with io.BytesIO(data) as stream:
            return decode_stream(stream, self._max_pixels)

    def _to_path(self, ref: ImageReference) -> Path:
        if not ref:
            raise DecodeError("Empty image reference")

        parsed = urlparse(ref)
        if parsed.scheme == "file":
            path = Path(unquote(parsed.path))
        elif parsed.scheme and len(parsed.scheme) > 1:
            raise DecodeError(f"Unsupported image reference scheme: {parsed.scheme}")
        else:
            # Single-letter schemes are Windows drive letters.
            path = Path(ref)

        if self._root is not None:
            if not path.is_absolute():
                path = self._root / path
            resolved = path.resolve()
            if not resolved.is_relative_to(self._root):
                raise DecodeError(f"Image reference outside of image root: {ref}")
            return resolved
        return path

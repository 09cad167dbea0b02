"""Image preprocessing pipeline.

Handles decoding, EXIF orientation, color space conversion, size
validation, and conversion to the tensors expected by the classifier.
"""

from __future__ import annotations

import struct
from typing import IO, TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from snapclass.errors import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

# ImageNet statistics used by the bundled classification models.
IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


def decode_stream(stream: IO[bytes], max_pixels: int) -> NDArray[np.uint8]:
    """Decode an open binary stream into an RGB uint8 numpy array.

    The stream is read completely before returning; the caller owns it.

    Args:
        stream: Readable binary file object positioned at the image start.
        max_pixels: Largest accepted width x height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        DecodeError: If the bytes are not an image or exceed size limits.
    """
    try:
        with Image.open(stream) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise DecodeError(f"Image is too large ({width}x{height} pixels)")
            img.load()
            oriented = ImageOps.exif_transpose(img)
            return np.asarray(oriented.convert("RGB"), dtype=np.uint8)
    except (
        UnidentifiedImageError,
        OSError,
        SyntaxError,
        ValueError,
        struct.error,
        Image.DecompressionBombError,
    ) as exc:
        raise DecodeError(f"Cannot decode image: {exc}") from exc


def preprocess_for_classification(image: NDArray[np.uint8], input_size: int) -> NDArray[np.float32]:
    """Resize and normalize an image into a 1x3xSxS float32 tensor.

    Args:
        image: HxWx3 RGB uint8 array.
        input_size: Square model input edge in pixels.

    Raises:
        ValueError: If the array is not an HxWx3 image.
    """
    if image.ndim != 3 or image.shape[2] != 3:
        raise ValueError(f"Expected an HxWx3 image, got shape {image.shape}")

    resized = Image.fromarray(image).resize((input_size, input_size), Image.Resampling.BILINEAR)
    tensor = np.asarray(resized, dtype=np.float32) / 255.0
    tensor = (tensor - IMAGENET_MEAN) / IMAGENET_STD
    return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

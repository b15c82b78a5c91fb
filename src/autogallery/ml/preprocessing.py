"""Image decoding and tensor preparation.

Uploaded bytes are decoded with Pillow into RGB images, guarded against
oversized inputs, and converted to normalized NCHW float32 batches for the
classification model. ``staged_image`` scopes the decoded image so its
handles are closed whether classification succeeds or raises.
"""

from __future__ import annotations

import io
from contextlib import contextmanager
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from numpy.typing import NDArray


class ImageDecodeError(ValueError):
    """Raised when image bytes cannot be decoded or exceed the size limit."""


def decode_image(data: bytes, max_pixels: int) -> Image.Image:
    """Decode raw image bytes into a fully loaded RGB image.

    Args:
        data: Raw file bytes (any format Pillow understands).
        max_pixels: Upper bound on width * height.

    Returns:
        An RGB ``PIL.Image.Image`` detached from the input buffer.

    Raises:
        ImageDecodeError: If the bytes are not a readable image or the image is too large.
    """
    try:
        with Image.open(io.BytesIO(data)) as source:
            width, height = source.size
            if width * height > max_pixels:
                raise ImageDecodeError(f"Image is {width}x{height}, exceeds limit of {max_pixels} pixels")
            source.load()
            oriented = ImageOps.exif_transpose(source)
            try:
                return oriented.convert("RGB")
            finally:
                oriented.close()
    except ImageDecodeError:
        raise
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc


@contextmanager
def staged_image(data: bytes, max_pixels: int) -> Iterator[Image.Image]:
    """Decode ``data`` for the duration of the block, then release the image."""
    image = decode_image(data, max_pixels)
    try:
        yield image
    finally:
        image.close()


def to_model_input(
    image: Image.Image,
    size: int,
    mean: Sequence[float],
    std: Sequence[float],
) -> NDArray[np.float32]:
    """Resize and normalize an RGB image into a (1, 3, size, size) tensor."""
    resized = image.resize((size, size), Image.Resampling.BILINEAR)
    try:
        pixels = np.asarray(resized, dtype=np.float32) / 255.0
    finally:
        if resized is not image:
            resized.close()

    pixels = (pixels - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

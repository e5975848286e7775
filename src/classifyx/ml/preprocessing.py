"""Image preprocessing for the MobileNet backend.

Decodes uploaded bytes, converts any supported image source to an RGB
array, and resizes and scales it into the network's input tensor.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Literal

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from classifyx.errors import InvalidInputError
from classifyx.ml.sources import is_video_source, unwrap

if TYPE_CHECKING:
    from numpy.typing import NDArray

Layout = Literal["NHWC", "NCHW"]


def decode_image(image_bytes: bytes, max_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Raises:
        InvalidInputError: If the image cannot be decoded or exceeds ``max_pixels``.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise InvalidInputError(f"Image has {width * height} pixels, limit is {max_pixels}")
            img = ImageOps.exif_transpose(img)
            return np.asarray(img.convert("RGB"), dtype=np.uint8)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise InvalidInputError(f"Failed to decode image: {exc}") from None


def to_rgb_array(source: object) -> NDArray[np.uint8]:
    """Return an HxWx3 uint8 array for a still image or the current video frame."""
    source = unwrap(source)
    if is_video_source(source):
        source = source.read_frame()  # type: ignore[attr-defined]
    if isinstance(source, Image.Image):
        return np.asarray(source.convert("RGB"), dtype=np.uint8)
    if not isinstance(source, np.ndarray):
        raise InvalidInputError(f"Unsupported image type: {type(source).__name__}")

    arr = source
    if arr.ndim == 2:
        arr = np.stack([arr, arr, arr], axis=-1)
    if arr.ndim != 3 or arr.shape[2] not in (3, 4):
        raise InvalidInputError(f"Expected an HxWx3 image, got shape {arr.shape}")
    if arr.shape[2] == 4:
        arr = arr[:, :, :3]
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    return arr


def prepare_input(rgb: NDArray[np.uint8], size: int, layout: Layout = "NHWC") -> NDArray[np.float32]:
    """Resize to ``size`` x ``size`` and scale pixels to [-1, 1] as a batch of one."""
    resized = Image.fromarray(rgb).resize((size, size), resample=Image.Resampling.BILINEAR)
    tensor = np.asarray(resized, dtype=np.float32) / 127.5 - 1.0
    if layout == "NCHW":
        tensor = tensor.transpose(2, 0, 1)
    return tensor[np.newaxis, ...]

"""Image sources accepted by classification sessions.

A source is either a decoded still image (numpy array or Pillow image) or a
live video source. Third-party media wrappers that keep the underlying
element on an ``elt`` attribute are unwrapped.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, TypeAlias, runtime_checkable

import numpy as np
from PIL import Image

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray


@runtime_checkable
class VideoSource(Protocol):
    """Protocol for live video sources bound to a session."""

    def read_frame(self) -> NDArray[np.uint8]:
        """Return the current frame as an HxWx3 RGB uint8 array."""
        ...

    def on_ready(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` once the source starts producing frames.

        Sources that are already producing frames call it right away.
        """
        ...


StillImage: TypeAlias = "NDArray[np.uint8] | Image.Image"
ImageSource: TypeAlias = "StillImage | VideoSource"


def is_video_source(value: object) -> bool:
    return isinstance(value, VideoSource)


def is_still_image(value: object) -> bool:
    if isinstance(value, Image.Image):
        return True
    return isinstance(value, np.ndarray) and value.ndim in (2, 3)


def unwrap(value: object) -> object:
    """Return the element held by a media wrapper, or ``value`` itself."""
    inner = getattr(value, "elt", None)
    if inner is not None and (is_video_source(inner) or is_still_image(inner)):
        return inner
    return value

"""
Camera Interfaces
=================

Minimal capability contract shared by every device backend so that the
stereo demo can treat USB webcams, industrial cameras and stereo rigs
uniformly.

Lifecycle:
    1. Construct the backend with its device settings
    2. Call start() once to begin acquisition
    3. Poll capture_*() repeatedly with caller-allocated buffers
    4. Call stop() (or leave the ``with`` block) to release the device

All capture methods copy into buffers owned by the caller. A camera never
resizes or reallocates a buffer; a buffer of the wrong shape is rejected.
"""

from abc import ABC, abstractmethod
from typing import Tuple

import numpy as np

Size = Tuple[int, int]


class CameraError(RuntimeError):
    """Raised when a device cannot be started, is busy, or is not running."""


class Camera(ABC):
    """
    Abstract base for all cameras.

    Subclasses implement start() and stop(); everything else is provided by
    the capability subclasses (ColorCamera, DepthCamera).
    """

    @abstractmethod
    def start(self) -> None:
        """
        Begin device acquisition.

        Calling start() on a camera that is already running is a no-op.

        Raises:
            CameraError: If the device cannot be opened (not found, in use).
        """

    @abstractmethod
    def stop(self) -> None:
        """Stop acquisition and release the device. Safe to call repeatedly."""

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()


class ColorCamera(Camera):
    """Camera delivering 3-channel 8-bit (BGR) color frames."""

    @abstractmethod
    def color_size(self) -> Size:
        """Return the color frame size as (width, height)."""

    @abstractmethod
    def capture_color(self, buffer: np.ndarray) -> None:
        """
        Copy the latest color frame into ``buffer``.

        Args:
            buffer: Pre-allocated uint8 array of shape (height, width, 3)

        Raises:
            CameraError: If the camera has not been started
            ValueError: If the buffer does not match color_size()
        """


def check_buffer(buffer: np.ndarray, size: Size, channels: int, dtype) -> None:
    """
    Validate a caller-allocated image buffer against the camera geometry.

    Args:
        buffer: Buffer supplied to a capture call
        size: Expected (width, height)
        channels: 3 for color frames, 1 for depth/amplitude grids
        dtype: Expected numpy dtype
    """
    width, height = size
    expected = (height, width, channels) if channels > 1 else (height, width)
    if not isinstance(buffer, np.ndarray):
        raise ValueError(f"Capture buffer must be a numpy array, got {type(buffer).__name__}")
    if buffer.shape != expected or buffer.dtype != np.dtype(dtype):
        raise ValueError(
            f"Capture buffer must be {np.dtype(dtype).name} with shape {expected}, "
            f"got {buffer.dtype.name} with shape {buffer.shape}"
        )

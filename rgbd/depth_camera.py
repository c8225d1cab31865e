"""
Depth Camera Interface
======================

Depth-capable cameras add dense depth/amplitude grids and 3D point sets to
the color camera contract. Color is provided by composition: a DepthCamera
may hold a color camera and forwards every color call to it.

Buffer formats:
- depth, amplitude: float32 arrays of shape (height, width)
- vertex: caller-owned list, extended with PointXYZ items
- colored vertex: caller-owned list, extended with PointXYZRGB items
"""

from typing import List, NamedTuple, Optional

import numpy as np

from .camera import Camera, CameraError, ColorCamera, Size


class PointXYZ(NamedTuple):
    x: float
    y: float
    z: float


class PointXYZRGB(NamedTuple):
    x: float
    y: float
    z: float
    r: int
    g: int
    b: int


class DepthCamera(ColorCamera):
    """
    Base class for depth cameras.

    Args:
        camera: Optional color camera whose lifecycle and color frames are
            shared with this depth camera. Without one, the color operations
            raise CameraError.

    Backends override the depth operations; the defaults raise
    NotImplementedError.
    """

    def __init__(self, camera: Optional[Camera] = None):
        self._camera = camera

    @property
    def camera(self) -> Optional[Camera]:
        """The composed color camera, if any."""
        return self._camera

    def _color_camera(self) -> ColorCamera:
        if self._camera is None:
            raise CameraError(f"{type(self).__name__} has no color camera attached")
        if not isinstance(self._camera, ColorCamera):
            raise CameraError(
                f"Attached camera {type(self._camera).__name__} does not provide color frames"
            )
        return self._camera

    def start(self) -> None:
        if self._camera is not None:
            self._camera.start()

    def stop(self) -> None:
        if self._camera is not None:
            self._camera.stop()

    def color_size(self) -> Size:
        return self._color_camera().color_size()

    def capture_color(self, buffer: np.ndarray) -> None:
        self._color_camera().capture_color(buffer)

    def depth_size(self) -> Size:
        """Return the size of the depth image as (width, height)."""
        raise NotImplementedError(f"{type(self).__name__} does not provide depth images")

    def capture_depth(self, buffer: np.ndarray) -> None:
        """
        Copy the latest depth data to the buffer.
        Note that the buffer must be allocated in advance.

        Args:
            buffer: float32 array of shape (height, width)
        """
        raise NotImplementedError(f"{type(self).__name__} does not provide depth images")

    def capture_amplitude(self, buffer: np.ndarray) -> None:
        """
        Copy the latest amplitude data to the buffer.
        Note that the buffer must be allocated in advance.

        Args:
            buffer: float32 array of shape (height, width)
        """
        raise NotImplementedError(f"{type(self).__name__} does not provide amplitude images")

    def capture_vertex(self, buffer: List[PointXYZ]) -> None:
        """
        Append the latest 3D point cloud to the buffer.

        Args:
            buffer: List extended with PointXYZ items
        """
        raise NotImplementedError(f"{type(self).__name__} does not provide point clouds")

    def capture_colored_vertex(self, buffer: List[PointXYZRGB]) -> None:
        """
        Append the latest colored 3D point cloud to the buffer.

        Args:
            buffer: List extended with PointXYZRGB items
        """
        raise NotImplementedError(f"{type(self).__name__} does not provide point clouds")

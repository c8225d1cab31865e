"""
Stereo Rig Depth Camera
=======================

DepthCamera built from two color cameras. The left camera doubles as the
color source; depth, amplitude and point clouds come from rectifying the
pair, matching it and reprojecting the disparity.
"""

import logging
from typing import List, Optional

import cv2
import numpy as np

from .camera import CameraError, ColorCamera, Size, check_buffer
from .config import StereoCalibration
from .depth_camera import DepthCamera, PointXYZ, PointXYZRGB
from .pointcloud import disparity_to_points, reproject, valid_point_mask
from .rectification import StereoRectifier
from .stereo import StereoMatcher, StereoParams

logger = logging.getLogger(__name__)


class StereoCamera(DepthCamera):
    """
    Depth camera over a calibrated left/right color camera pair.

    Args:
        left: Left color camera, also used for color frames
        right: Right color camera, same frame size as the left one
        calibration: Stereo calibration. Without one the frames are assumed
            to be rectified already and only capture_amplitude() and the
            color operations are available.
        params: Matcher settings
        max_depth: Optional far limit applied to point clouds
    """

    def __init__(
        self,
        left: ColorCamera,
        right: ColorCamera,
        calibration: Optional[StereoCalibration] = None,
        params: Optional[StereoParams] = None,
        max_depth: Optional[float] = None,
    ):
        super().__init__(left)
        self.left = left
        self.right = right
        self.calibration = calibration
        self.params = params or StereoParams()
        self.max_depth = max_depth

        self.rectifier: Optional[StereoRectifier] = None
        self.matcher: Optional[StereoMatcher] = None
        self._left_frame: Optional[np.ndarray] = None
        self._right_frame: Optional[np.ndarray] = None

    def start(self) -> None:
        if self.matcher is not None:
            logger.warning("StereoCamera already started")
            return

        self.left.start()
        try:
            self.right.start()
        except CameraError:
            self.left.stop()
            raise

        size = self.left.color_size()
        if self.right.color_size() != size:
            self.stop()
            raise CameraError(
                f"Stereo cameras differ in size: {size} and {self.right.color_size()}"
            )

        width, height = size
        self._left_frame = np.zeros((height, width, 3), dtype=np.uint8)
        self._right_frame = np.zeros((height, width, 3), dtype=np.uint8)

        roi_left = roi_right = None
        if self.calibration is not None:
            self.rectifier = StereoRectifier(self.calibration, size)
            roi_left, roi_right = self.rectifier.roi_left, self.rectifier.roi_right
        self.matcher = StereoMatcher(self.params, size, roi_left, roi_right)

    def stop(self) -> None:
        self.left.stop()
        self.right.stop()
        self.matcher = None
        self.rectifier = None

    def depth_size(self) -> Size:
        return self.left.color_size()

    def _require_started(self) -> None:
        if self.matcher is None:
            raise CameraError("StereoCamera is not started")

    def _capture_pair(self):
        self.left.capture_color(self._left_frame)
        self.right.capture_color(self._right_frame)
        if self.rectifier is None:
            return self._left_frame, self._right_frame
        return self.rectifier.rectify(self._left_frame, self._right_frame)

    def _require_calibration(self) -> StereoRectifier:
        if self.rectifier is None:
            raise CameraError("StereoCamera needs a calibration to reproject depth")
        return self.rectifier

    def capture_depth(self, buffer: np.ndarray) -> None:
        self._require_started()
        rectifier = self._require_calibration()
        check_buffer(buffer, self.depth_size(), 1, np.float32)

        left, right = self._capture_pair()
        xyz = reproject(self.matcher.compute(left, right), rectifier.Q)
        mask = valid_point_mask(xyz, self.max_depth)
        np.copyto(buffer, np.where(mask, xyz[..., 2], 0.0).astype(np.float32))

    def capture_amplitude(self, buffer: np.ndarray) -> None:
        self._require_started()
        check_buffer(buffer, self.depth_size(), 1, np.float32)

        left, _ = self._capture_pair()
        np.copyto(buffer, cv2.cvtColor(left, cv2.COLOR_BGR2GRAY).astype(np.float32))

    def capture_vertex(self, buffer: List[PointXYZ]) -> None:
        self._require_started()
        rectifier = self._require_calibration()

        left, right = self._capture_pair()
        points, _ = disparity_to_points(
            self.matcher.compute(left, right), rectifier.Q, max_depth=self.max_depth
        )
        buffer.extend(PointXYZ._make(p) for p in points.tolist())

    def capture_colored_vertex(self, buffer: List[PointXYZRGB]) -> None:
        self._require_started()
        rectifier = self._require_calibration()

        left, right = self._capture_pair()
        points, colors = disparity_to_points(
            self.matcher.compute(left, right), rectifier.Q, image=left, max_depth=self.max_depth
        )
        buffer.extend(
            PointXYZRGB(*p, *c) for p, c in zip(points.tolist(), colors.tolist())
        )

"""
Stereo Rectification
====================

Computes the rectification maps of a calibrated stereo pair once and remaps
every incoming frame pair so that corresponding points share a scanline.

Reference: OpenCV stereoRectify documentation
https://docs.opencv.org/4.x/d9/d0c/group__calib3d.html#ga617b1685d4059c6040827800e72ad2b6
"""

from typing import Optional, Tuple

import cv2
import numpy as np

from .config import Rect, StereoCalibration


class StereoRectifier:
    """
    Rectification maps, reprojection matrix and valid regions of a stereo pair.

    Attributes:
        Q: 4x4 disparity-to-depth reprojection matrix
        roi_left: Valid rectangle of the rectified left image (V1 if the
            calibration provides one, else the one computed by stereoRectify)
        roi_right: Valid rectangle of the rectified right image
    """

    def __init__(self, calibration: StereoCalibration, image_size: Tuple[int, int]):
        self.calibration = calibration
        self.image_size = (int(image_size[0]), int(image_size[1]))

        R1, R2, P1, P2, Q, roi1, roi2 = cv2.stereoRectify(
            calibration.camera_matrix_left,
            calibration.dist_coeffs_left,
            calibration.camera_matrix_right,
            calibration.dist_coeffs_right,
            self.image_size,
            calibration.R,
            calibration.T,
            flags=cv2.CALIB_ZERO_DISPARITY,
            alpha=-1,
            newImageSize=self.image_size,
        )
        self.Q = Q
        self.roi_left: Rect = calibration.roi_left or tuple(int(v) for v in roi1)
        self.roi_right: Rect = calibration.roi_right or tuple(int(v) for v in roi2)

        # Fixed-point maps are the fastest to remap with
        self._maps_left = cv2.initUndistortRectifyMap(
            calibration.camera_matrix_left, calibration.dist_coeffs_left,
            R1, P1, self.image_size, cv2.CV_16SC2,
        )
        self._maps_right = cv2.initUndistortRectifyMap(
            calibration.camera_matrix_right, calibration.dist_coeffs_right,
            R2, P2, self.image_size, cv2.CV_16SC2,
        )

    def rectify(self, left: np.ndarray, right: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Remap a frame pair into the rectified geometry."""
        if left.shape[1::-1] != self.image_size or right.shape[1::-1] != self.image_size:
            raise ValueError(
                f"Frames must be {self.image_size[0]}x{self.image_size[1]}, "
                f"got {left.shape[1]}x{left.shape[0]} and {right.shape[1]}x{right.shape[0]}"
            )
        left_r = cv2.remap(left, self._maps_left[0], self._maps_left[1], cv2.INTER_LINEAR)
        right_r = cv2.remap(right, self._maps_right[0], self._maps_right[1], cv2.INTER_LINEAR)
        return left_r, right_r


def crop_to_roi(image: np.ndarray, roi: Optional[Rect]) -> np.ndarray:
    """Crop an image to a rectangle; an empty or missing rectangle keeps it whole."""
    if roi is None:
        return image
    x, y, w, h = roi
    if w <= 0 or h <= 0:
        return image
    return image[y:y + h, x:x + w]

"""
Shared fixtures: synthetic stereo pairs and in-memory cameras.
"""

import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from rgbd.camera import CameraError, ColorCamera, check_buffer
from rgbd.config import StereoCalibration

# Horizontal shift between the synthetic left and right images
SYNTHETIC_DISPARITY = 10


class StaticCamera(ColorCamera):
    """Color camera serving one fixed frame, with lifecycle bookkeeping."""

    def __init__(self, frame: np.ndarray, interrupt_after=None, fail_start=False):
        self.frame = frame
        self.interrupt_after = interrupt_after
        self.fail_start = fail_start
        self.started = False
        self.start_calls = 0
        self.stop_calls = 0
        self.captures = 0

    def start(self):
        self.start_calls += 1
        if self.fail_start:
            raise CameraError("device busy")
        self.started = True

    def stop(self):
        self.stop_calls += 1
        self.started = False

    def color_size(self):
        return (self.frame.shape[1], self.frame.shape[0])

    def capture_color(self, buffer):
        if not self.started:
            raise CameraError("not started")
        check_buffer(buffer, self.color_size(), 3, np.uint8)
        self.captures += 1
        if self.interrupt_after is not None and self.captures > self.interrupt_after:
            raise KeyboardInterrupt
        np.copyto(buffer, self.frame)


def make_stereo_pair(width=320, height=240, disparity=SYNTHETIC_DISPARITY, seed=0):
    """Textured left image and a right image shifted left by ``disparity`` pixels."""
    rng = np.random.default_rng(seed)
    noise = rng.integers(0, 256, (height, width), dtype=np.uint8)
    texture = cv2.GaussianBlur(noise, (0, 0), 1.2)
    texture = cv2.normalize(texture, None, 0, 255, cv2.NORM_MINMAX)
    left = cv2.cvtColor(texture, cv2.COLOR_GRAY2BGR)
    right = np.roll(left, -disparity, axis=1)
    return left, right


@pytest.fixture
def stereo_pair():
    """Synthetic 320x240 stereo pair with a constant disparity."""
    return make_stereo_pair()


@pytest.fixture
def static_camera():
    """Factory for StaticCamera instances."""
    return StaticCamera


def ideal_calibration(focal_length=300.0, principal_point=(160.0, 120.0), baseline=0.1):
    """Distortion-free calibration of two identical, parallel cameras."""
    camera_matrix = np.array([
        [focal_length, 0.0, principal_point[0]],
        [0.0, focal_length, principal_point[1]],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)

    return StereoCalibration(
        camera_matrix_left=camera_matrix.copy(),
        dist_coeffs_left=np.zeros(5, dtype=np.float64),
        camera_matrix_right=camera_matrix.copy(),
        dist_coeffs_right=np.zeros(5, dtype=np.float64),
        R=np.eye(3, dtype=np.float64),
        T=np.array([-baseline, 0.0, 0.0], dtype=np.float64),
    )


@pytest.fixture
def make_calibration():
    """Factory for ideal calibrations matching the 320x240 stereo_pair."""
    return ideal_calibration

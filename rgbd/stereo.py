"""
Stereo Matching Module
======================

Dense disparity estimation on rectified stereo pairs with the matchers
shipped by OpenCV:

- bm:   Block Matching (StereoBM), grayscale input
- sgbm: Semi-Global Block Matching (StereoSGBM), color input
- hh:   SGBM with the full-scale two-pass dynamic programming (MODE_HH)
- var:  Variational matching: DIS optical flow with variational refinement,
        horizontal flow converted to disparity

Every matcher returns a float32 disparity map in pixels.

References:
- OpenCV Stereo Matching: https://docs.opencv.org/4.x/dd/d53/tutorial_py_depthmap.html
- Semi-Global Block Matching: H. Hirschmuller, "Stereo Processing by Semiglobal Matching
  and Mutual Information," IEEE TPAMI, 2008
- DIS optical flow: T. Kroeger et al., "Fast Optical Flow using Dense Inverse Search," ECCV 2016
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import cv2
import numpy as np

from .config import Rect

logger = logging.getLogger(__name__)


class StereoAlgorithm(Enum):
    BM = "bm"
    SGBM = "sgbm"
    HH = "hh"
    VAR = "var"


# Block size used when none is given on the command line
DEFAULT_BLOCK_SIZE = {
    StereoAlgorithm.BM: 9,
    StereoAlgorithm.SGBM: 3,
    StereoAlgorithm.HH: 3,
    StereoAlgorithm.VAR: 3,
}


# Block sizes accepted by StereoBM
BM_BLOCK_SIZE_RANGE = (5, 255)


def default_num_disparities(width: int) -> int:
    """Disparity range derived from the image width, rounded up to a multiple of 16."""
    return ((width // 8) + 15) & -16


@dataclass
class StereoParams:
    """
    Matcher settings.

    Attributes:
        algorithm: Matching algorithm
        num_disparities: Disparity search range (positive multiple of 16),
            0 to derive it from the image width
        block_size: Matching block size (positive odd number), 0 for the
            algorithm default
    """
    algorithm: StereoAlgorithm = StereoAlgorithm.SGBM
    num_disparities: int = 0
    block_size: int = 0

    def __post_init__(self):
        if self.num_disparities < 0 or self.num_disparities % 16 != 0:
            raise ValueError(
                f"num_disparities must be a positive integer divisible by 16, got {self.num_disparities}"
            )
        if self.block_size < 0 or (self.block_size > 0 and self.block_size % 2 != 1):
            raise ValueError(f"block_size must be a positive odd number, got {self.block_size}")
        low, high = BM_BLOCK_SIZE_RANGE
        if self.algorithm == StereoAlgorithm.BM and self.block_size and not low <= self.block_size <= high:
            raise ValueError(
                f"The block size (--blocksize=<...>) must be within {low}..{high} for the bm algorithm, "
                f"got {self.block_size}"
            )


@dataclass
class MatchResult:
    """
    Attributes:
        disparity: float32 disparity map in pixels
        algorithm: Algorithm used
        computation_time_ms: Time taken by the matcher
    """
    disparity: np.ndarray
    algorithm: StereoAlgorithm
    computation_time_ms: float


class StereoMatcher:
    """
    Configured stereo matcher for a fixed image size.

    Args:
        params: Matcher settings
        image_size: (width, height) of the rectified frames
        roi_left: Valid region of the rectified left image (block matching only)
        roi_right: Valid region of the rectified right image (block matching only)
        channels: Number of color channels of the input frames
    """

    def __init__(
        self,
        params: StereoParams,
        image_size: Tuple[int, int],
        roi_left: Optional[Rect] = None,
        roi_right: Optional[Rect] = None,
        channels: int = 3,
    ):
        self.params = params
        self.algorithm = params.algorithm
        self.image_size = image_size
        self.num_disparities = params.num_disparities or default_num_disparities(image_size[0])
        self.block_size = params.block_size or DEFAULT_BLOCK_SIZE[params.algorithm]
        self.channels = channels

        if self.algorithm == StereoAlgorithm.BM:
            self._matcher = self._create_bm(roi_left, roi_right)
        elif self.algorithm in (StereoAlgorithm.SGBM, StereoAlgorithm.HH):
            self._matcher = self._create_sgbm()
        else:
            self._matcher = self._create_var()

        logger.debug(
            f"StereoMatcher: algorithm={self.algorithm.value}, "
            f"numDisparities={self.num_disparities}, blockSize={self.block_size}"
        )

    def _create_bm(self, roi_left: Optional[Rect], roi_right: Optional[Rect]):
        bm = cv2.StereoBM_create(numDisparities=self.num_disparities, blockSize=self.block_size)
        if roi_left is not None:
            bm.setROI1(tuple(roi_left))
        if roi_right is not None:
            bm.setROI2(tuple(roi_right))
        bm.setPreFilterCap(31)
        bm.setMinDisparity(0)
        bm.setTextureThreshold(10)
        bm.setUniquenessRatio(15)
        bm.setSpeckleWindowSize(100)
        bm.setSpeckleRange(32)
        bm.setDisp12MaxDiff(1)
        return bm

    def _create_sgbm(self):
        # P1 and P2 control smoothness penalty
        area = self.channels * self.block_size * self.block_size
        mode = (
            cv2.STEREO_SGBM_MODE_HH
            if self.algorithm == StereoAlgorithm.HH
            else cv2.STEREO_SGBM_MODE_SGBM
        )
        return cv2.StereoSGBM_create(
            minDisparity=0,
            numDisparities=self.num_disparities,
            blockSize=self.block_size,
            P1=8 * area,
            P2=32 * area,
            disp12MaxDiff=1,
            preFilterCap=63,
            uniquenessRatio=10,
            speckleWindowSize=100,
            speckleRange=32,
            mode=mode,
        )

    def _create_var(self):
        dis = cv2.DISOpticalFlow_create(cv2.DISOPTICAL_FLOW_PRESET_MEDIUM)
        dis.setVariationalRefinementIterations(25)
        dis.setVariationalRefinementAlpha(15.0)
        dis.setVariationalRefinementGamma(0.03)
        dis.setUseSpatialPropagation(True)
        return dis

    @staticmethod
    def _gray(image: np.ndarray) -> np.ndarray:
        if image.ndim == 3:
            return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        return image

    def compute(self, left: np.ndarray, right: np.ndarray) -> np.ndarray:
        """
        Compute the disparity of a rectified pair.

        Args:
            left: Left image (BGR or grayscale, uint8)
            right: Right image

        Returns:
            float32 disparity map in pixels. Block matchers mark unmatched
            pixels with a value below 0.
        """
        if self.algorithm == StereoAlgorithm.VAR:
            flow = self._matcher.calc(self._gray(left), self._gray(right), None)
            # The right match of a left pixel x sits at x - d
            disparity = np.clip(-flow[..., 0], 0, self.num_disparities).astype(np.float32)
            return cv2.medianBlur(disparity, 5)

        if self.algorithm == StereoAlgorithm.BM:
            raw = self._matcher.compute(self._gray(left), self._gray(right))
        else:
            raw = self._matcher.compute(left, right)

        # OpenCV returns 16-bit fixed point disparities with 4 fractional bits
        return raw.astype(np.float32) / 16.0

    def match(self, left: np.ndarray, right: np.ndarray) -> MatchResult:
        """Compute the disparity and time the matcher."""
        start_time = time.perf_counter()
        disparity = self.compute(left, right)
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        return MatchResult(
            disparity=disparity,
            algorithm=self.algorithm,
            computation_time_ms=elapsed_ms,
        )

    def to_preview(self, disparity: np.ndarray) -> np.ndarray:
        """Scale a disparity map to an 8-bit image covering the search range."""
        scaled = disparity * (255.0 / self.num_disparities)
        return np.clip(scaled, 0, 255).astype(np.uint8)

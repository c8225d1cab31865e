"""
Unit tests for the stereo matching module.
"""

import pytest
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from rgbd.stereo import (
    DEFAULT_BLOCK_SIZE,
    MatchResult,
    StereoAlgorithm,
    StereoMatcher,
    StereoParams,
    default_num_disparities,
)

# Shift used by the stereo_pair fixture
SYNTHETIC_DISPARITY = 10


def central_median(disparity):
    """Median disparity over the region every matcher covers."""
    region = disparity[20:220, 100:300]
    return float(np.median(region[region > 0]))


class TestStereoParams:
    """Tests for matcher parameter validation."""

    def test_defaults(self):
        params = StereoParams()
        assert params.algorithm == StereoAlgorithm.SGBM
        assert params.num_disparities == 0
        assert params.block_size == 0

    def test_num_disparities_must_be_multiple_of_16(self):
        with pytest.raises(ValueError):
            StereoParams(num_disparities=50)

    def test_block_size_must_be_odd(self):
        with pytest.raises(ValueError):
            StereoParams(block_size=8)

    @pytest.mark.parametrize("block_size", [3, 257])
    def test_bm_block_size_range(self, block_size):
        with pytest.raises(ValueError, match="5..255"):
            StereoParams(StereoAlgorithm.BM, block_size=block_size)

    def test_bm_block_size_limits_accepted(self):
        assert StereoParams(StereoAlgorithm.BM, block_size=5).block_size == 5
        assert StereoParams(StereoAlgorithm.BM, block_size=255).block_size == 255
        assert StereoParams(StereoAlgorithm.SGBM, block_size=1).block_size == 1

    def test_default_num_disparities(self):
        assert default_num_disparities(640) == 80
        assert default_num_disparities(320) == 48
        assert default_num_disparities(100) % 16 == 0

    def test_default_block_sizes(self):
        matcher = StereoMatcher(StereoParams(StereoAlgorithm.BM), (320, 240))
        assert matcher.block_size == DEFAULT_BLOCK_SIZE[StereoAlgorithm.BM] == 9

        matcher = StereoMatcher(StereoParams(StereoAlgorithm.SGBM), (320, 240))
        assert matcher.block_size == 3
        assert matcher.num_disparities == 48

    def test_explicit_settings_are_kept(self):
        params = StereoParams(StereoAlgorithm.SGBM, num_disparities=64, block_size=9)
        matcher = StereoMatcher(params, (640, 480))
        assert matcher.num_disparities == 64
        assert matcher.block_size == 9

    def test_algorithm_from_name(self):
        assert StereoAlgorithm("hh") == StereoAlgorithm.HH
        with pytest.raises(ValueError):
            StereoAlgorithm("census")


class TestBlockMatchers:
    """Tests for the BM/SGBM/HH matchers on a shifted synthetic pair."""

    @pytest.mark.parametrize("algorithm", [StereoAlgorithm.BM, StereoAlgorithm.SGBM, StereoAlgorithm.HH])
    def test_recovers_constant_disparity(self, algorithm, stereo_pair):
        left, right = stereo_pair
        matcher = StereoMatcher(StereoParams(algorithm), (320, 240))

        disparity = matcher.compute(left, right)

        assert disparity.shape == (240, 320)
        assert disparity.dtype == np.float32
        assert abs(central_median(disparity) - SYNTHETIC_DISPARITY) <= 1.0

    def test_bm_accepts_grayscale(self, stereo_pair):
        left, right = stereo_pair
        matcher = StereoMatcher(StereoParams(StereoAlgorithm.BM), (320, 240), channels=1)

        disparity = matcher.compute(left[..., 0], right[..., 0])

        assert abs(central_median(disparity) - SYNTHETIC_DISPARITY) <= 1.0

    def test_bm_with_valid_regions(self, stereo_pair):
        left, right = stereo_pair
        matcher = StereoMatcher(
            StereoParams(StereoAlgorithm.BM), (320, 240),
            roi_left=(0, 0, 320, 240), roi_right=(0, 0, 320, 240),
        )

        disparity = matcher.compute(left, right)

        assert disparity.shape == (240, 320)

    def test_match_reports_timing(self, stereo_pair):
        left, right = stereo_pair
        matcher = StereoMatcher(StereoParams(StereoAlgorithm.SGBM), (320, 240))

        result = matcher.match(left, right)

        assert isinstance(result, MatchResult)
        assert result.algorithm == StereoAlgorithm.SGBM
        assert result.computation_time_ms >= 0
        assert result.disparity.shape == (240, 320)


class TestVariationalMatcher:
    """Tests for the optical-flow based matcher."""

    def test_output_range(self, stereo_pair):
        left, right = stereo_pair
        matcher = StereoMatcher(StereoParams(StereoAlgorithm.VAR), (320, 240))

        disparity = matcher.compute(left, right)

        assert disparity.shape == (240, 320)
        assert disparity.dtype == np.float32
        assert disparity.min() >= 0
        assert disparity.max() <= matcher.num_disparities


class TestPreview:
    """Tests for the 8-bit disparity preview."""

    def test_scales_to_search_range(self):
        matcher = StereoMatcher(StereoParams(num_disparities=64), (320, 240))
        disparity = np.array([[-1.0, 0.0, 32.0, 64.0, 80.0]], dtype=np.float32)

        preview = matcher.to_preview(disparity)

        assert preview.dtype == np.uint8
        assert preview.tolist() == [[0, 0, 127, 255, 255]]

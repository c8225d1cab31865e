"""
Stereo Matching Demo
====================

Captures frames from two live cameras, rectifies them with a stereo
calibration, computes the disparity with the selected matcher, reprojects it
to 3D and shows the point cloud together with the left/right/disparity
previews. Press ESC in a preview window to quit.

Usage:
    python main.py --algorithm=sgbm --max-disparity=64 --blocksize=9 -i intrinsics.yml -e extrinsics.yml
    python main.py --camera=ueye --ueye-config=ueye.ini -i intrinsics.yml -e extrinsics.yml -p cloud.ply

References:
- OpenCV stereo_match sample: https://github.com/opencv/opencv/blob/4.x/samples/cpp/stereo_match.cpp
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .camera import CameraError, ColorCamera
from .config import CalibrationError, StereoCalibration, load_calibration
from .pointcloud import OPEN3D_AVAILABLE, CloudViewer, disparity_to_points, save_point_cloud_ply
from .rectification import StereoRectifier, crop_to_roi
from .stereo import StereoAlgorithm, StereoMatcher, StereoParams

logger = logging.getLogger(__name__)

ESCAPE_KEY = 0x1B

USAGE = (
    "\nDemo stereo matching converting L and R images into disparity and point clouds\n"
    "\nUsage: stereo_match <left_image> <right_image> [--algorithm=bm|sgbm|hh|var] [--blocksize=<block_size>]\n"
    "[--max-disparity=<max_disparity>] [--scale=scale_factor>] [-i <intrinsic_filename>] [-e <extrinsic_filename>]\n"
    "[--no-display] [-o <disparity_image>] [-p <point_cloud_file>]\n"
    "[--camera=uvc|ueye] [--left-device=<id>] [--right-device=<id>] [--ueye-config=<ini_file>]\n"
    "[--max-depth=<max_depth>] [--verbose]\n"
)


class ParameterError(ValueError):
    """Invalid command-line parameters."""


def print_help() -> None:
    print(USAGE)


@dataclass
class StereoMatchOptions:
    """
    Parsed command-line options.

    Attributes:
        images: Positional left/right image names (accepted, not used:
            frames come from the live cameras)
        scale: Parsed but not used by the demo
    """
    images: List[str] = field(default_factory=list)
    algorithm: StereoAlgorithm = StereoAlgorithm.SGBM
    max_disparity: int = 0
    block_size: int = 0
    scale: float = 1.0
    no_display: bool = False
    intrinsic_filename: Optional[str] = None
    extrinsic_filename: Optional[str] = None
    disparity_filename: Optional[str] = None
    point_cloud_filename: Optional[str] = None
    camera: str = "uvc"
    left_device: Optional[int] = None
    right_device: Optional[int] = None
    ueye_config: Optional[str] = None
    max_depth: Optional[float] = None
    verbose: bool = False
    show_help: bool = False

    @property
    def stereo_params(self) -> StereoParams:
        return StereoParams(
            algorithm=self.algorithm,
            num_disparities=self.max_disparity,
            block_size=self.block_size,
        )


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of exiting the process."""

    def error(self, message):
        raise ParameterError(message)


def _algorithm(value: str) -> StereoAlgorithm:
    try:
        return StereoAlgorithm(value)
    except ValueError:
        raise argparse.ArgumentTypeError("Unknown stereo algorithm") from None


def _max_disparity(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        number = 0
    if number < 1 or number % 16 != 0:
        raise argparse.ArgumentTypeError(
            "The max disparity (--max-disparity=<...>) must be a positive integer divisible by 16"
        )
    return number


def _block_size(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        number = 0
    if number < 1 or number % 2 != 1:
        raise argparse.ArgumentTypeError(
            "The block size (--blocksize=<...>) must be a positive odd number"
        )
    return number


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value}") from None
    if not number > 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="stereo_match", add_help=False, allow_abbrev=False)

    parser.add_argument("images", nargs="*")
    parser.add_argument("-h", "--help", dest="show_help", action="store_true")

    # Stereo matching
    parser.add_argument("--algorithm", type=_algorithm, default=StereoAlgorithm.SGBM)
    parser.add_argument("--max-disparity", dest="max_disparity", type=_max_disparity, default=0)
    parser.add_argument("--blocksize", dest="block_size", type=_block_size, default=0)
    parser.add_argument("--scale", type=float, default=1.0)

    # Calibration and outputs
    parser.add_argument("-i", dest="intrinsic_filename")
    parser.add_argument("-e", dest="extrinsic_filename")
    parser.add_argument("-o", dest="disparity_filename")
    parser.add_argument("-p", dest="point_cloud_filename")
    parser.add_argument("--no-display", dest="no_display", action="store_true")

    # Devices
    parser.add_argument("--camera", choices=["uvc", "ueye"], default="uvc")
    parser.add_argument("--left-device", dest="left_device", type=int)
    parser.add_argument("--right-device", dest="right_device", type=int)
    parser.add_argument("--ueye-config", dest="ueye_config")
    parser.add_argument("--max-depth", dest="max_depth", type=_positive_float)
    parser.add_argument("--verbose", action="store_true")

    return parser


def parse_args(argv: Sequence[str]) -> StereoMatchOptions:
    """
    Parse and validate the demo's command line.

    Raises:
        ParameterError: On any invalid, unknown or inconsistent parameter
    """
    namespace = build_parser().parse_intermixed_args(list(argv))
    options = StereoMatchOptions(**vars(namespace))
    if options.show_help:
        return options

    if len(options.images) > 2:
        raise ParameterError(f"unknown option {options.images[2]}")

    for flag, filename in (
        ("-i", options.intrinsic_filename),
        ("-e", options.extrinsic_filename),
        ("-o", options.disparity_filename),
        ("-p", options.point_cloud_filename),
    ):
        if filename is not None and not filename.strip():
            raise ParameterError(f"{flag} needs a non-empty file name")

    if (options.intrinsic_filename is None) != (options.extrinsic_filename is None):
        raise ParameterError(
            "either both intrinsic and extrinsic parameters must be specified, "
            "or none of them (when the stereo pair is already rectified)"
        )

    if options.extrinsic_filename is None and options.point_cloud_filename is not None:
        raise ParameterError(
            "extrinsic and intrinsic parameters must be specified to compute the point cloud"
        )

    # Limits that depend on the algorithm, e.g. the bm block size range
    try:
        options.stereo_params
    except ValueError as exc:
        raise ParameterError(str(exc)) from None

    return options


def create_cameras(options: StereoMatchOptions) -> Tuple[ColorCamera, ColorCamera]:
    """Construct (not start) the left and right cameras selected on the command line."""
    if options.camera == "ueye":
        from .ueye import UEye

        left_id = 1 if options.left_device is None else options.left_device
        right_id = 2 if options.right_device is None else options.right_device
        return UEye(left_id, options.ueye_config), UEye(right_id, options.ueye_config)

    from .uv_camera import UVCamera

    left_id = 0 if options.left_device is None else options.left_device
    right_id = 1 if options.right_device is None else options.right_device
    return UVCamera(left_id), UVCamera(right_id)


@dataclass
class FrameResult:
    """
    Output of one processed frame pair.

    Attributes:
        left: Rectified left image
        right: Rectified right image
        disparity: float32 disparity map in pixels
        preview: 8-bit disparity preview
        points: Nx3 filtered point cloud (None without calibration)
        computation_time_ms: Matcher time
    """
    left: np.ndarray
    right: np.ndarray
    disparity: np.ndarray
    preview: np.ndarray
    points: Optional[np.ndarray]
    computation_time_ms: float


class StereoMatchApp:
    """
    Capture -> rectify -> match -> reproject -> display loop.

    Args:
        left: Left color camera (not started)
        right: Right color camera (not started)
        options: Parsed command-line options
        calibration: Stereo calibration, or None for an already rectified pair
    """

    def __init__(
        self,
        left: ColorCamera,
        right: ColorCamera,
        options: StereoMatchOptions,
        calibration: Optional[StereoCalibration] = None,
    ):
        self.left_camera = left
        self.right_camera = right
        self.options = options
        self.calibration = calibration

        self.rectifier: Optional[StereoRectifier] = None
        self.matcher: Optional[StereoMatcher] = None
        self.viewer: Optional[CloudViewer] = None
        self.last_result: Optional[FrameResult] = None
        self._started: List[ColorCamera] = []
        self._img1: Optional[np.ndarray] = None
        self._img2: Optional[np.ndarray] = None

    def start(self) -> None:
        """
        Start both cameras and set up rectification and matching.

        Raises:
            CameraError: If a camera cannot be started or the cameras differ in size
        """
        for camera in (self.left_camera, self.right_camera):
            camera.start()
            self._started.append(camera)

        img_size = self.left_camera.color_size()
        if self.right_camera.color_size() != img_size:
            raise CameraError(
                f"Left and right cameras differ in size: {img_size} and "
                f"{self.right_camera.color_size()}"
            )
        width, height = img_size
        self._img1 = np.zeros((height, width, 3), dtype=np.uint8)
        self._img2 = np.zeros((height, width, 3), dtype=np.uint8)

        roi_left = roi_right = None
        if self.calibration is not None:
            self.rectifier = StereoRectifier(self.calibration, img_size)
            roi_left, roi_right = self.rectifier.roi_left, self.rectifier.roi_right

        self.matcher = StereoMatcher(self.options.stereo_params, img_size, roi_left, roi_right)
        logger.info(
            f"Stereo matching: algorithm={self.matcher.algorithm.value}, "
            f"numberOfDisparities={self.matcher.num_disparities}, "
            f"SADWindowSize={self.matcher.block_size}"
        )
        if self.options.scale != 1.0:
            logger.debug(f"--scale={self.options.scale} is ignored")

        if not self.options.no_display and self.rectifier is not None:
            if OPEN3D_AVAILABLE:
                self.viewer = CloudViewer("Vertex")
            else:
                print("Open3D not available. Install with: pip install open3d")

    def process(self, img1: np.ndarray, img2: np.ndarray) -> FrameResult:
        """Rectify, match and reproject one frame pair."""
        if self.rectifier is not None:
            img1, img2 = self.rectifier.rectify(img1, img2)

        match = self.matcher.match(img1, img2)
        print(f"Time elapsed: {match.computation_time_ms:f}ms")

        points = None
        if self.rectifier is not None:
            points, _ = disparity_to_points(
                match.disparity, self.rectifier.Q, max_depth=self.options.max_depth
            )

        result = FrameResult(
            left=img1,
            right=img2,
            disparity=match.disparity,
            preview=self.matcher.to_preview(match.disparity),
            points=points,
            computation_time_ms=match.computation_time_ms,
        )
        self.last_result = result
        return result

    def step(self) -> FrameResult:
        """Capture one frame pair from the cameras, process and display it."""
        self.left_camera.capture_color(self._img1)
        self.right_camera.capture_color(self._img2)
        result = self.process(self._img1, self._img2)
        if not self.options.no_display:
            self.display(result)
        return result

    def display(self, result: FrameResult) -> None:
        if self.viewer is not None and result.points is not None:
            self.viewer.show(result.points)

        roi_left = self.rectifier.roi_left if self.rectifier else None
        roi_right = self.rectifier.roi_right if self.rectifier else None
        cv2.namedWindow("left", cv2.WINDOW_AUTOSIZE)
        cv2.imshow("left", crop_to_roi(result.left, roi_left))
        cv2.namedWindow("right", cv2.WINDOW_AUTOSIZE)
        cv2.imshow("right", crop_to_roi(result.right, roi_right))
        cv2.namedWindow("disparity", cv2.WINDOW_NORMAL)
        cv2.imshow("disparity", result.preview)

    def run(self) -> None:
        """Process frames until ESC is pressed in a preview window."""
        while True:
            if not self.options.no_display:
                key = cv2.waitKey(10)
                if key != -1 and (key & 0xFF) == ESCAPE_KEY:
                    break
            self.step()

    def save_outputs(self) -> None:
        """Write the last disparity preview and point cloud, when requested."""
        result = self.last_result
        if result is None:
            return
        if self.options.disparity_filename:
            cv2.imwrite(self.options.disparity_filename, result.preview)
            print(f"Saved disparity to {self.options.disparity_filename}")
        if self.options.point_cloud_filename and result.points is not None:
            save_point_cloud_ply(self.options.point_cloud_filename, result.points)
            print(f"Saved point cloud to {self.options.point_cloud_filename}")

    def close(self) -> None:
        self.save_outputs()
        for camera in reversed(self._started):
            camera.stop()
        self._started = []
        if self.viewer is not None:
            self.viewer.close()
            self.viewer = None
        if not self.options.no_display:
            cv2.destroyAllWindows()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Run the demo.

    Returns:
        0 on help or normal exit, -1 on a parameter, calibration or camera error
    """
    if argv is None:
        argv = sys.argv[1:]
    if not argv:
        print_help()
        return 0

    try:
        options = parse_args(argv)
    except ParameterError as exc:
        print(f"Command-line parameter error: {exc}\n")
        print_help()
        return -1

    if options.show_help:
        print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if options.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    calibration = None
    if options.intrinsic_filename is not None:
        try:
            calibration = load_calibration(options.intrinsic_filename, options.extrinsic_filename)
        except (CalibrationError, ValueError) as exc:
            print(exc)
            return -1

    left, right = create_cameras(options)
    app = StereoMatchApp(left, right, options, calibration)
    try:
        app.start()
        app.run()
    except CameraError as exc:
        print(f"Camera error: {exc}")
        return -1
    except KeyboardInterrupt:
        print("\nInterrupted by user")
    finally:
        app.close()

    return 0

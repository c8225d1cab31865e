"""
Stereo Calibration Module
=========================

Loads and validates the intrinsic and extrinsic parameters of a stereo rig
from OpenCV FileStorage files (YAML/XML), as written by the OpenCV stereo
calibration sample: an intrinsics file with M1, D1, M2, D2 and an
extrinsics file with R, T and the valid rectangles V1, V2.

References:
- OpenCV Camera Calibration: https://docs.opencv.org/4.x/dc/dbb/tutorial_py_calibration.html
- OpenCV FileStorage: https://docs.opencv.org/4.x/da/d56/classcv_1_1FileStorage.html
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np

Rect = Tuple[int, int, int, int]


class CalibrationError(RuntimeError):
    """Raised when a calibration file cannot be opened or read."""


@dataclass
class StereoCalibration:
    """
    Calibration parameters of a stereo camera pair.

    Attributes:
        camera_matrix_left: 3x3 intrinsic matrix of the left camera (M1)
        dist_coeffs_left: Distortion coefficients of the left camera (D1)
        camera_matrix_right: 3x3 intrinsic matrix of the right camera (M2)
        dist_coeffs_right: Distortion coefficients of the right camera (D2)
        R: 3x3 rotation from the left to the right camera
        T: Translation from the left to the right camera (3 elements)
        roi_left: Valid rectangle (x, y, w, h) of the rectified left image (V1)
        roi_right: Valid rectangle of the rectified right image (V2)
    """
    camera_matrix_left: np.ndarray
    dist_coeffs_left: np.ndarray
    camera_matrix_right: np.ndarray
    dist_coeffs_right: np.ndarray
    R: np.ndarray
    T: np.ndarray
    roi_left: Optional[Rect] = None
    roi_right: Optional[Rect] = None

    def __post_init__(self):
        if self.camera_matrix_left.shape != (3, 3):
            raise ValueError("camera_matrix_left (M1) must be 3x3")
        if self.camera_matrix_right.shape != (3, 3):
            raise ValueError("camera_matrix_right (M2) must be 3x3")
        if self.R.shape != (3, 3):
            raise ValueError("R (rotation matrix) must be 3x3")
        self.T = self.T.reshape(-1)
        if self.T.shape != (3,):
            raise ValueError("T (translation vector) must have 3 elements")


def _open_storage(path: Union[str, Path]) -> cv2.FileStorage:
    path = Path(path)
    if not path.is_file():
        raise CalibrationError(f"Failed to open file {path}")
    try:
        fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    except cv2.error as exc:
        raise CalibrationError(f"Failed to open file {path}") from exc
    if not fs.isOpened():
        raise CalibrationError(f"Failed to open file {path}")
    return fs


def _read_matrix(fs: cv2.FileStorage, key: str, path: Union[str, Path]) -> np.ndarray:
    node = fs.getNode(key)
    matrix = None if node.empty() else node.mat()
    if matrix is None:
        raise CalibrationError(f"Missing matrix '{key}' in {path}")
    return np.asarray(matrix, dtype=np.float64)


def _read_roi(fs: cv2.FileStorage, key: str) -> Optional[Rect]:
    """Read a rectangle stored either as a sequence or as a 1x4 matrix."""
    node = fs.getNode(key)
    if node.empty():
        return None
    if node.isSeq():
        values = [node.at(i).real() for i in range(node.size())]
    else:
        matrix = node.mat()
        if matrix is None:
            return None
        values = np.asarray(matrix).reshape(-1).tolist()
    if len(values) != 4:
        raise ValueError(f"Rectangle '{key}' must have 4 values, got {len(values)}")
    x, y, w, h = (int(round(v)) for v in values)
    return (x, y, w, h)


def load_calibration(
    intrinsic_path: Union[str, Path],
    extrinsic_path: Union[str, Path],
) -> StereoCalibration:
    """
    Load a stereo calibration from OpenCV FileStorage files.

    Args:
        intrinsic_path: File with M1, D1, M2, D2
        extrinsic_path: File with R, T and optionally V1, V2

    Returns:
        StereoCalibration; the image size comes from the cameras

    Raises:
        CalibrationError: If a file cannot be opened or a matrix is missing
    """
    fs = _open_storage(intrinsic_path)
    try:
        M1 = _read_matrix(fs, "M1", intrinsic_path)
        D1 = _read_matrix(fs, "D1", intrinsic_path)
        M2 = _read_matrix(fs, "M2", intrinsic_path)
        D2 = _read_matrix(fs, "D2", intrinsic_path)
    finally:
        fs.release()

    fs = _open_storage(extrinsic_path)
    try:
        R = _read_matrix(fs, "R", extrinsic_path)
        T = _read_matrix(fs, "T", extrinsic_path)
        V1 = _read_roi(fs, "V1")
        V2 = _read_roi(fs, "V2")
    finally:
        fs.release()

    return StereoCalibration(
        camera_matrix_left=M1,
        dist_coeffs_left=D1.reshape(-1),
        camera_matrix_right=M2,
        dist_coeffs_right=D2.reshape(-1),
        R=R,
        T=T,
        roi_left=V1,
        roi_right=V2,
    )


def save_calibration(
    calibration: StereoCalibration,
    intrinsic_path: Union[str, Path],
    extrinsic_path: Union[str, Path],
) -> None:
    """Write a calibration as an intrinsics/extrinsics FileStorage pair."""
    fs = cv2.FileStorage(str(intrinsic_path), cv2.FILE_STORAGE_WRITE)
    fs.write("M1", calibration.camera_matrix_left)
    fs.write("D1", calibration.dist_coeffs_left.reshape(1, -1))
    fs.write("M2", calibration.camera_matrix_right)
    fs.write("D2", calibration.dist_coeffs_right.reshape(1, -1))
    fs.release()

    fs = cv2.FileStorage(str(extrinsic_path), cv2.FILE_STORAGE_WRITE)
    fs.write("R", calibration.R)
    fs.write("T", calibration.T.reshape(3, 1))
    if calibration.roi_left is not None:
        fs.write("V1", np.array([calibration.roi_left], dtype=np.int32))
    if calibration.roi_right is not None:
        fs.write("V2", np.array([calibration.roi_right], dtype=np.int32))
    fs.release()

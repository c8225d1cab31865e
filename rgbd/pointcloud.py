"""
Point Cloud Module
==================

Reprojects disparity maps to 3D, filters degenerate points, writes PLY
files and streams clouds to an Open3D viewer window.

References:
- OpenCV reprojectImageTo3D: https://docs.opencv.org/4.x/d9/d0c/group__calib3d.html#ga1bc1152bd57d63bc524204f21fde6e02
- Open3D Point Cloud: https://www.open3d.org/docs/release/tutorial/geometry/pointcloud.html
- PLY file format: https://en.wikipedia.org/wiki/PLY_(file_format)
"""

import logging
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np

# Open3D is only needed for the viewer window
try:
    import open3d as o3d
    OPEN3D_AVAILABLE = True
except ImportError:
    OPEN3D_AVAILABLE = False

logger = logging.getLogger(__name__)

# Depth assigned by reprojectImageTo3D to pixels without a disparity
MISSING_Z = 10000.0
_EPSILON = float(np.finfo(np.float32).eps)


def reproject(disparity: np.ndarray, Q: np.ndarray) -> np.ndarray:
    """
    Reproject a disparity map (pixels) to an (H, W, 3) float32 XYZ image.

    Pixels holding the minimum disparity of the map (unmatched) are sent to
    z = MISSING_Z.
    """
    return cv2.reprojectImageTo3D(disparity.astype(np.float32), Q, handleMissingValues=True)


def valid_point_mask(xyz: np.ndarray, max_depth: Optional[float] = None) -> np.ndarray:
    """
    Boolean (H, W) mask of usable points.

    Drops non-finite points, points at the missing-value depth, points at or
    beyond |z| = MISSING_Z and, when max_depth is given, points farther than it.
    """
    z = xyz[..., 2]
    mask = np.all(np.isfinite(xyz), axis=-1)
    mask &= np.abs(z - MISSING_Z) >= _EPSILON
    mask &= np.abs(z) < MISSING_Z
    if max_depth is not None:
        mask &= z <= max_depth
    return mask


def disparity_to_points(
    disparity: np.ndarray,
    Q: np.ndarray,
    image: Optional[np.ndarray] = None,
    max_depth: Optional[float] = None,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Convert a disparity map to a filtered point cloud.

    Args:
        disparity: Disparity map in pixels
        Q: 4x4 reprojection matrix from rectification
        image: Optional rectified BGR image providing point colors
        max_depth: Optional far limit

    Returns:
        (points, colors): Nx3 float32 points in row-major pixel order and,
        if an image was given, Nx3 uint8 RGB colors (else None)
    """
    xyz = reproject(disparity, Q)
    mask = valid_point_mask(xyz, max_depth)
    points = xyz[mask]

    colors = None
    if image is not None:
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        colors = image[mask][:, ::-1].copy()

    return points, colors


def save_point_cloud_ply(
    output_path: Union[str, Path],
    points: np.ndarray,
    colors: Optional[np.ndarray] = None,
) -> None:
    """
    Save a point cloud to an ASCII PLY file.

    Written through Open3D when it is installed, by hand otherwise.

    Args:
        output_path: Output file path (.ply)
        points: Nx3 points
        colors: Optional Nx3 uint8 RGB colors

    Raises:
        ValueError: If points and colors differ in length
        OSError: If Open3D fails to write the file
    """
    points = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    if colors is not None and len(colors) != len(points):
        raise ValueError("points and colors must have the same length")

    # Open3D refuses to write an empty cloud
    if OPEN3D_AVAILABLE and len(points) > 0:
        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(points.astype(np.float64))
        if colors is not None:
            pcd.colors = o3d.utility.Vector3dVector(np.asarray(colors, dtype=np.float64) / 255.0)
        if not o3d.io.write_point_cloud(str(output_path), pcd, write_ascii=True):
            raise OSError(f"Failed to write point cloud to {output_path}")
        return

    _write_ply_ascii(output_path, points, colors)


def _write_ply_ascii(
    output_path: Union[str, Path],
    points: np.ndarray,
    colors: Optional[np.ndarray],
) -> None:
    header = [
        "ply",
        "format ascii 1.0",
        f"element vertex {len(points)}",
        "property float x",
        "property float y",
        "property float z",
    ]
    if colors is not None:
        header += ["property uchar red", "property uchar green", "property uchar blue"]
    header.append("end_header")

    with open(output_path, "w") as f:
        f.write("\n".join(header) + "\n")
        if colors is None:
            np.savetxt(f, points, fmt="%.6f")
        else:
            rows = np.hstack([points.astype(object), np.asarray(colors, dtype=np.uint8).astype(object)])
            np.savetxt(f, rows, fmt=["%.6f", "%.6f", "%.6f", "%d", "%d", "%d"])


class CloudViewer:
    """
    Non-blocking Open3D window that displays the latest point cloud.

    Call show() once per frame; the window is refreshed without stealing
    the caller's loop.

    Example:
        viewer = CloudViewer("Vertex")
        viewer.show(points)
        viewer.close()
    """

    def __init__(self, window_name: str = "Vertex", point_size: float = 1.0):
        if not OPEN3D_AVAILABLE:
            raise RuntimeError("Open3D not available. Install with: pip install open3d")

        self.window_name = window_name
        self._vis = o3d.visualization.Visualizer()
        self._vis.create_window(window_name=window_name)
        render_option = self._vis.get_render_option()
        if render_option is not None:
            render_option.point_size = point_size
        self._pcd = o3d.geometry.PointCloud()
        self._has_geometry = False

    def show(self, points: np.ndarray, colors: Optional[np.ndarray] = None) -> bool:
        """
        Replace the displayed cloud.

        Args:
            points: Nx3 points
            colors: Optional Nx3 uint8 RGB colors

        Returns:
            False once the window has been closed by the user
        """
        self._pcd.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64))
        if colors is not None:
            self._pcd.colors = o3d.utility.Vector3dVector(np.asarray(colors, dtype=np.float64) / 255.0)

        if not self._has_geometry:
            self._vis.add_geometry(self._pcd)
            self._has_geometry = True
        else:
            self._vis.update_geometry(self._pcd)

        alive = self._vis.poll_events()
        self._vis.update_renderer()
        return alive

    def close(self) -> None:
        self._vis.destroy_window()

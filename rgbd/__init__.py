"""
RGB-D Camera Abstraction Layer
==============================

Polymorphic color/depth camera interfaces with backends for UVC webcams,
IDS uEye industrial cameras and calibrated stereo rigs, plus a stereo
matching demo that streams the reconstructed point cloud to a viewer.

References:
- OpenCV Stereo Vision: https://docs.opencv.org/4.x/dd/d53/tutorial_py_depthmap.html
- Open3D Point Cloud: https://www.open3d.org/docs/release/tutorial/geometry/pointcloud.html
"""

from .camera import Camera, CameraError, ColorCamera
from .depth_camera import DepthCamera, PointXYZ, PointXYZRGB

__version__ = "1.0.0"

__all__ = [
    "Camera",
    "CameraError",
    "ColorCamera",
    "DepthCamera",
    "PointXYZ",
    "PointXYZRGB",
]

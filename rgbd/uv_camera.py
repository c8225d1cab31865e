"""
UVC Webcam Backend
==================

Color camera backed by cv2.VideoCapture. A background thread keeps polling
the device and stores the most recent frame in a lock-protected buffer, so
capture_color() is a snapshot read that never waits on device I/O.

References:
- OpenCV VideoCapture: https://docs.opencv.org/4.x/d8/dfe/classcv_1_1VideoCapture.html
"""

import logging
import threading
from typing import Optional

import cv2
import numpy as np

from .camera import CameraError, ColorCamera, Size, check_buffer

logger = logging.getLogger(__name__)

# Consecutive read failures between two warnings
_FAILURE_WARN_INTERVAL = 30


class UVCamera(ColorCamera):
    """
    USB Video Class camera with background polling.

    The polling thread is the only writer of the internal frame buffer;
    capture_color() copies it out under the same lock, so a frame is never
    torn, although it may be stale if the device is slower than ``fps``.

    A failed device read leaves the previous frame in place. Reads are not
    retried and the device is not reopened.

    The device is released by the polling thread itself when it exits. If
    stop() times out waiting for a blocked read, the camera cannot be
    restarted until a later stop() has seen the thread finish.

    Example:
        with UVCamera(0, size=(640, 480), fps=30.0) as camera:
            frame = np.zeros((480, 640, 3), dtype=np.uint8)
            camera.capture_color(frame)
    """

    def __init__(self, device_no: int, size: Size = (640, 480), fps: float = 60.0):
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")
        width, height = size
        if width <= 0 or height <= 0:
            raise ValueError(f"Frame size must be positive, got {size}")

        self.device_no = device_no
        self.fps = fps
        self._size: Size = (int(width), int(height))
        self._period = 1.0 / fps

        self._buffer = np.zeros((self._size[1], self._size[0], 3), dtype=np.uint8)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._consecutive_failures = 0

    @property
    def is_running(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and not self._stop_event.is_set()
        )

    @property
    def consecutive_failures(self) -> int:
        """Number of failed device reads since the last good frame."""
        return self._consecutive_failures

    def color_size(self) -> Size:
        return self._size

    def start(self) -> None:
        if self._thread is not None:
            if not self._thread.is_alive():
                # Poller exited on its own; it has already released the device
                self._thread = None
            elif not self._stop_event.is_set():
                logger.warning(f"UVCamera {self.device_no} already started")
                return
            else:
                raise CameraError(
                    f"UVCamera {self.device_no} is still stopping; call stop() again before restarting"
                )

        capture = cv2.VideoCapture(self.device_no)
        if not capture.isOpened():
            capture.release()
            raise CameraError(
                f"Failed to open UVC device {self.device_no} (not connected or in use)"
            )

        width, height = self._size
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        capture.set(cv2.CAP_PROP_FPS, self.fps)
        logger.info(
            f"UVCamera {self.device_no} opened: requested {width}x{height}@{self.fps:g}, "
            f"actual {capture.get(cv2.CAP_PROP_FRAME_WIDTH):g}x"
            f"{capture.get(cv2.CAP_PROP_FRAME_HEIGHT):g}@{capture.get(cv2.CAP_PROP_FPS):g}"
        )

        # Each poller gets its own stop event so a late one never sees a restart
        stop_event = threading.Event()
        self._stop_event = stop_event
        self._consecutive_failures = 0
        self._thread = threading.Thread(
            target=self._update,
            args=(capture, stop_event),
            name=f"uvcamera-{self.device_no}",
            daemon=True,
        )
        self._thread.start()

    def _update(self, capture: cv2.VideoCapture, stop_event: threading.Event) -> None:
        """Polling loop: read, store under the lock, wait one frame period."""
        width, height = self._size
        try:
            while not stop_event.is_set():
                ok, frame = capture.read()
                if ok and frame is not None:
                    self._store(frame, width, height)
                    self._consecutive_failures = 0
                else:
                    self._consecutive_failures += 1
                    if self._consecutive_failures % _FAILURE_WARN_INTERVAL == 0:
                        logger.warning(
                            f"UVCamera {self.device_no}: {self._consecutive_failures} "
                            f"consecutive read failures"
                        )
                    else:
                        logger.debug(f"UVCamera {self.device_no}: frame read failed, skipped")
                stop_event.wait(self._period)
        finally:
            # The device is only released once no read can be in flight
            capture.release()
            logger.info(f"UVCamera {self.device_no} released")

    def _store(self, frame: np.ndarray, width: int, height: int) -> None:
        if frame.shape[:2] != (height, width):
            frame = cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA)
        if frame.ndim == 2:
            frame = cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
        elif frame.shape[2] == 4:
            frame = cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
        with self._lock:
            np.copyto(self._buffer, frame)

    def capture_color(self, buffer: np.ndarray) -> None:
        if self._thread is None or self._stop_event.is_set():
            raise CameraError(f"UVCamera {self.device_no} is not started")
        check_buffer(buffer, self._size, 3, np.uint8)
        with self._lock:
            np.copyto(buffer, self._buffer)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=max(1.0, 5 * self._period))
        if self._thread.is_alive():
            # Keep the thread: it releases the device when its read returns
            logger.warning(f"UVCamera {self.device_no}: polling thread did not stop in time")
            return
        self._thread = None

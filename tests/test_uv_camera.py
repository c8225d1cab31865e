"""
Unit tests for the UVC webcam backend.

cv2.VideoCapture is replaced by an in-memory device so the polling thread
can be exercised without hardware.
"""

import time

import pytest
import cv2
import numpy as np
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from rgbd.camera import CameraError
from rgbd.uv_camera import UVCamera


class FakeVideoCapture:
    """
    In-memory capture device.

    Every successful read returns a frame filled with a single value that is
    incremented on each read, so a torn frame shows up as mixed values.
    """

    instances = []

    def __init__(self, device, frame_shape=(48, 64, 3), opened=True, good_reads=None, read_delay=0.0):
        self.device = device
        self.frame_shape = frame_shape
        self.opened = opened
        self.good_reads = good_reads
        self.read_delay = read_delay
        self.reads = 0
        self.reads_after_release = 0
        self.released = False
        self.properties = {}
        FakeVideoCapture.instances.append(self)

    def isOpened(self):
        return self.opened

    def set(self, prop, value):
        self.properties[prop] = value
        return True

    def get(self, prop):
        return float(self.properties.get(prop, 0.0))

    def read(self):
        self.reads += 1
        if self.released:
            self.reads_after_release += 1
        if self.read_delay:
            time.sleep(self.read_delay)
        if self.good_reads is not None and self.reads > self.good_reads:
            return False, None
        value = 1 + (self.reads % 250)
        return True, np.full(self.frame_shape, value, dtype=np.uint8)

    def release(self):
        self.released = True


@pytest.fixture
def fake_capture(monkeypatch):
    """Install FakeVideoCapture; returns a function to configure new devices."""
    FakeVideoCapture.instances = []
    settings = {}

    def factory(device):
        return FakeVideoCapture(device, **settings)

    monkeypatch.setattr(cv2, "VideoCapture", factory)

    def configure(**kwargs):
        settings.update(kwargs)

    return configure


def wait_for_frame(camera, buffer, timeout=2.0):
    """Poll capture_color until the background thread has stored a frame."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        camera.capture_color(buffer)
        if buffer.any():
            return True
        time.sleep(0.005)
    return False


class TestUVCameraLifecycle:
    """Tests for start/stop behavior."""

    def test_initialization(self):
        camera = UVCamera(2, size=(320, 240), fps=30.0)

        assert camera.device_no == 2
        assert camera.color_size() == (320, 240)
        assert not camera.is_running

    def test_invalid_settings(self):
        with pytest.raises(ValueError):
            UVCamera(0, fps=0)
        with pytest.raises(ValueError):
            UVCamera(0, size=(0, 480))

    def test_start_failure_raises_camera_error(self, fake_capture):
        """A device that does not open fails start() without a thread."""
        fake_capture(opened=False)
        camera = UVCamera(0, size=(64, 48))

        with pytest.raises(CameraError):
            camera.start()

        assert not camera.is_running
        assert FakeVideoCapture.instances[0].released

    def test_capture_before_start(self):
        camera = UVCamera(0, size=(64, 48))

        with pytest.raises(CameraError):
            camera.capture_color(np.zeros((48, 64, 3), dtype=np.uint8))

    def test_start_requests_size_and_fps(self, fake_capture):
        camera = UVCamera(0, size=(64, 48), fps=120.0)

        with camera:
            device = FakeVideoCapture.instances[0]
            assert device.properties[cv2.CAP_PROP_FRAME_WIDTH] == 64
            assert device.properties[cv2.CAP_PROP_FRAME_HEIGHT] == 48
            assert device.properties[cv2.CAP_PROP_FPS] == 120.0
            assert camera.is_running

    def test_second_start_is_noop(self, fake_capture):
        camera = UVCamera(0, size=(64, 48))

        with camera:
            camera.start()
            assert len(FakeVideoCapture.instances) == 1

    def test_stop_joins_thread_and_releases_device(self, fake_capture):
        camera = UVCamera(0, size=(64, 48), fps=200.0)
        camera.start()
        thread = camera._thread

        camera.stop()

        assert not thread.is_alive()
        assert not camera.is_running
        assert FakeVideoCapture.instances[0].released

        # Stopping twice is harmless
        camera.stop()

    def test_capture_after_stop(self, fake_capture):
        camera = UVCamera(0, size=(64, 48), fps=200.0)
        camera.start()
        camera.stop()

        with pytest.raises(CameraError):
            camera.capture_color(np.zeros((48, 64, 3), dtype=np.uint8))

    def test_restart_after_slow_shutdown(self, fake_capture):
        """A poller stuck in read() keeps the device until it exits; restart waits for it."""
        fake_capture(read_delay=1.5)
        camera = UVCamera(0, size=(64, 48), fps=200.0)
        camera.start()
        old_thread = camera._thread
        device = FakeVideoCapture.instances[0]
        while device.reads == 0:
            time.sleep(0.005)

        # join gives up after 1 s while read() is still blocked
        camera.stop()
        assert old_thread.is_alive()
        assert not device.released
        assert not camera.is_running

        with pytest.raises(CameraError, match="still stopping"):
            camera.start()
        assert len(FakeVideoCapture.instances) == 1

        old_thread.join(timeout=3.0)
        assert not old_thread.is_alive()
        assert device.released
        assert device.reads_after_release == 0

        fake_capture(read_delay=0.0)
        camera.stop()
        camera.start()
        try:
            assert camera.is_running
            assert camera._thread is not old_thread
            assert len(FakeVideoCapture.instances) == 2
        finally:
            camera.stop()
        assert FakeVideoCapture.instances[1].released


class TestUVCameraCapture:
    """Tests for the polled frame buffer."""

    def test_capture_keeps_construction_size(self, fake_capture):
        """Frames of another size are resized to the configured size."""
        fake_capture(frame_shape=(24, 32, 3))
        camera = UVCamera(0, size=(64, 48), fps=200.0)

        with camera:
            buffer = np.zeros((48, 64, 3), dtype=np.uint8)
            assert wait_for_frame(camera, buffer)

        assert buffer.shape == (48, 64, 3)
        assert np.all(buffer == buffer[0, 0, 0])

    def test_mismatched_buffer_rejected(self, fake_capture):
        camera = UVCamera(0, size=(64, 48), fps=200.0)

        with camera:
            with pytest.raises(ValueError):
                camera.capture_color(np.zeros((240, 320, 3), dtype=np.uint8))

    def test_grayscale_frames_are_expanded(self, fake_capture):
        fake_capture(frame_shape=(48, 64))
        camera = UVCamera(0, size=(64, 48), fps=200.0)

        with camera:
            buffer = np.zeros((48, 64, 3), dtype=np.uint8)
            assert wait_for_frame(camera, buffer)

    def test_bgra_frames_are_converted(self, fake_capture):
        fake_capture(frame_shape=(48, 64, 4))
        camera = UVCamera(0, size=(64, 48), fps=200.0)

        with camera:
            buffer = np.zeros((48, 64, 3), dtype=np.uint8)
            assert wait_for_frame(camera, buffer)
            time.sleep(0.05)
            # The poller survives 4-channel frames and keeps updating
            assert camera.is_running
            assert camera.consecutive_failures == 0

        assert np.all(buffer == buffer[0, 0, 0])

    def test_failed_reads_keep_previous_frame(self, fake_capture):
        """After the device stops delivering, the last good frame stays readable."""
        fake_capture(good_reads=3)
        camera = UVCamera(0, size=(64, 48), fps=500.0)

        with camera:
            buffer = np.zeros((48, 64, 3), dtype=np.uint8)
            assert wait_for_frame(camera, buffer)

            deadline = time.monotonic() + 2.0
            while camera.consecutive_failures < 5 and time.monotonic() < deadline:
                time.sleep(0.005)
            assert camera.consecutive_failures >= 5

            camera.capture_color(buffer)
            assert np.all(buffer == 4)

    def test_concurrent_reads_never_tear(self, fake_capture):
        """Reads racing the polling thread always see one whole frame."""
        fake_capture(frame_shape=(120, 160, 3))
        camera = UVCamera(0, size=(160, 120), fps=10000.0)

        with camera:
            buffer = np.zeros((120, 160, 3), dtype=np.uint8)
            assert wait_for_frame(camera, buffer)

            seen = set()
            for _ in range(300):
                camera.capture_color(buffer)
                first = buffer[0, 0, 0]
                assert np.all(buffer == first)
                seen.add(int(first))
                time.sleep(0.001)

        # The poller kept writing while we read
        assert len(seen) > 1

    def test_capture_does_not_wait_for_device(self, fake_capture):
        """capture_color returns while the poller sleeps for a slow frame rate."""
        camera = UVCamera(0, size=(64, 48), fps=0.5)

        with camera:
            buffer = np.zeros((48, 64, 3), dtype=np.uint8)
            assert wait_for_frame(camera, buffer)

            start = time.monotonic()
            for _ in range(10):
                camera.capture_color(buffer)
            assert time.monotonic() - start < 0.5

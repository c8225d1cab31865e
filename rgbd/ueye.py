"""
IDS uEye Backend
================

Color camera backed by the IDS uEye SDK through its Python binding
``pyueye``. The camera runs in live (free-run) mode; capture_color() copies
the SDK image memory into the caller's buffer.

The binding is imported when start() runs, so machines without the vendor
SDK can still use every other backend.

References:
- pyueye: https://pypi.org/project/pyueye/
- IDS uEye SDK manual, "is_CaptureVideo", "is_ParameterSet"
"""

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np

from .camera import CameraError, ColorCamera, Size, check_buffer

logger = logging.getLogger(__name__)

_BITS_PER_PIXEL = 24


class UEye(ColorCamera):
    """
    IDS uEye industrial camera.

    Args:
        device_id: uEye camera id (1-254, 0 selects the first free camera)
        config_file: Optional uEye parameter file (.ini) loaded on start
        size: Optional expected (width, height). When omitted, the size is
            read from the camera's area of interest during start().
    """

    def __init__(
        self,
        device_id: int,
        config_file: Optional[Union[str, Path]] = None,
        size: Optional[Size] = None,
    ):
        self.device_id = device_id
        self.config_file = Path(config_file) if config_file is not None else None
        self._size = size

        self._ueye = None
        self._h_cam = None
        self._mem_ptr = None
        self._mem_id = None
        self._pitch = None
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    def color_size(self) -> Size:
        if self._size is None:
            raise CameraError(
                f"uEye {self.device_id}: frame size is unknown until the camera is started"
            )
        return self._size

    def _check(self, ret: int, call: str) -> None:
        if ret != self._ueye.IS_SUCCESS:
            raise CameraError(f"uEye {self.device_id}: {call} failed with status {ret}")

    def start(self) -> None:
        if self._started:
            logger.warning(f"uEye {self.device_id} already started")
            return

        if self.config_file is not None and not self.config_file.exists():
            raise CameraError(f"uEye parameter file not found: {self.config_file}")

        try:
            from pyueye import ueye
        except (ImportError, OSError) as exc:
            raise CameraError(f"uEye SDK is not available: {exc}") from exc
        self._ueye = ueye

        h_cam = ueye.HIDS(self.device_id)
        self._check(ueye.is_InitCamera(h_cam, None), "is_InitCamera")
        self._h_cam = h_cam

        try:
            self._configure()
        except CameraError:
            ueye.is_ExitCamera(h_cam)
            self._h_cam = None
            raise

        self._started = True
        logger.info(f"uEye {self.device_id} started: {self._size[0]}x{self._size[1]}")

    def _configure(self) -> None:
        ueye = self._ueye
        h_cam = self._h_cam

        if self.config_file is not None:
            path = ueye.wchar_p(str(self.config_file))
            self._check(
                ueye.is_ParameterSet(h_cam, ueye.IS_PARAMETERSET_CMD_LOAD_FILE, path, 0),
                "is_ParameterSet",
            )

        self._check(ueye.is_SetColorMode(h_cam, ueye.IS_CM_BGR8_PACKED), "is_SetColorMode")

        rect_aoi = ueye.IS_RECT()
        self._check(
            ueye.is_AOI(h_cam, ueye.IS_AOI_IMAGE_GET_AOI, rect_aoi, ueye.sizeof(rect_aoi)),
            "is_AOI",
        )
        width = int(rect_aoi.s32Width)
        height = int(rect_aoi.s32Height)
        if self._size is not None and self._size != (width, height):
            raise CameraError(
                f"uEye {self.device_id}: configured AOI {width}x{height} does not match "
                f"requested size {self._size[0]}x{self._size[1]}"
            )
        self._size = (width, height)

        self._mem_ptr = ueye.c_mem_p()
        self._mem_id = ueye.int()
        self._check(
            ueye.is_AllocImageMem(
                h_cam, rect_aoi.s32Width, rect_aoi.s32Height, _BITS_PER_PIXEL,
                self._mem_ptr, self._mem_id,
            ),
            "is_AllocImageMem",
        )
        self._check(ueye.is_SetImageMem(h_cam, self._mem_ptr, self._mem_id), "is_SetImageMem")

        self._pitch = ueye.INT()
        self._check(
            ueye.is_InquireImageMem(
                h_cam, self._mem_ptr, self._mem_id,
                rect_aoi.s32Width, rect_aoi.s32Height, ueye.INT(_BITS_PER_PIXEL), self._pitch,
            ),
            "is_InquireImageMem",
        )
        self._check(ueye.is_CaptureVideo(h_cam, ueye.IS_DONT_WAIT), "is_CaptureVideo")

    def capture_color(self, buffer: np.ndarray) -> None:
        if not self._started:
            raise CameraError(f"uEye {self.device_id} is not started")
        check_buffer(buffer, self._size, 3, np.uint8)

        width, height = self._size
        data = self._ueye.get_data(
            self._mem_ptr, width, height, _BITS_PER_PIXEL, self._pitch, copy=True
        )
        # Rows may be padded to the SDK pitch
        rows = np.reshape(data, (height, self._pitch.value))
        np.copyto(buffer, rows[:, : width * 3].reshape(height, width, 3))

    def stop(self) -> None:
        if not self._started:
            return
        ueye = self._ueye
        ueye.is_StopLiveVideo(self._h_cam, ueye.IS_FORCE_VIDEO_STOP)
        ueye.is_FreeImageMem(self._h_cam, self._mem_ptr, self._mem_id)
        ueye.is_ExitCamera(self._h_cam)
        self._h_cam = None
        self._started = False
        logger.info(f"uEye {self.device_id} released")

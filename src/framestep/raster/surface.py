"""离屏光栅：固定尺寸的 BGR 像素缓冲，每次 draw 原地覆盖。"""

from __future__ import annotations

from typing import Optional

import cv2
import numpy as np
from numpy.typing import NDArray


class RasterSurface:
    """单个可变光栅帧，整个流水线同一时刻只存在一个。

    编码器接入后几何尺寸被锁定，此时 `resize` 会被拒绝。
    """

    def __init__(self, width: int, height: int) -> None:
        self._pixels: Optional[NDArray[np.uint8]] = None
        self._locked = False
        self.resize(width, height)

    @property
    def width(self) -> int:
        return int(self._require().shape[1])

    @property
    def height(self) -> int:
        return int(self._require().shape[0])

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def pixels(self) -> NDArray[np.uint8]:
        return self._require()

    @property
    def is_released(self) -> bool:
        return self._pixels is None

    @property
    def geometry_locked(self) -> bool:
        return self._locked

    def lock_geometry(self) -> None:
        self._locked = True

    def unlock_geometry(self) -> None:
        self._locked = False

    def resize(self, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"invalid surface size {width}x{height}")
        if self._locked:
            raise RuntimeError("surface geometry is locked by an active encoder feed")
        self._pixels = np.zeros((int(height), int(width), 3), dtype=np.uint8)

    def draw(self, raster: NDArray[np.uint8]) -> None:
        """把源帧缩放进画布：保持宽高比居中，宽高比不同的部分留黑。"""

        pixels = self._require()
        frame = _as_bgr(raster)
        src_h, src_w = frame.shape[:2]
        dst_h, dst_w = pixels.shape[:2]

        scale = min(dst_w / src_w, dst_h / src_h)
        fit_w = max(1, min(dst_w, int(round(src_w * scale))))
        fit_h = max(1, min(dst_h, int(round(src_h * scale))))
        if (fit_w, fit_h) != (src_w, src_h):
            frame = cv2.resize(frame, (fit_w, fit_h), interpolation=cv2.INTER_AREA)

        x0 = (dst_w - fit_w) // 2
        y0 = (dst_h - fit_h) // 2
        if (fit_w, fit_h) != (dst_w, dst_h):
            pixels.fill(0)
        pixels[y0 : y0 + fit_h, x0 : x0 + fit_w] = frame

    def snapshot(self) -> bytes:
        """把当前内容编码为 PNG 字节。"""

        ok, buffer = cv2.imencode(".png", self._require())
        if not ok:
            raise RuntimeError("PNG encoding failed")
        return buffer.tobytes()

    def copy_pixels(self) -> NDArray[np.uint8]:
        return self._require().copy()

    def release(self) -> None:
        self._pixels = None
        self._locked = False

    def _require(self) -> NDArray[np.uint8]:
        if self._pixels is None:
            raise RuntimeError("surface has been released")
        return self._pixels


def _as_bgr(raster: NDArray[np.uint8]) -> NDArray[np.uint8]:
    if raster.ndim == 2:
        return cv2.cvtColor(raster, cv2.COLOR_GRAY2BGR)
    if raster.shape[2] == 4:
        return cv2.cvtColor(raster, cv2.COLOR_BGRA2BGR)
    return raster

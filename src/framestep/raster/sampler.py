"""抽帧采样器：把光栅快照固化为独立的 FrameSample。"""

from __future__ import annotations

from framestep.core import FrameSample

from .surface import RasterSurface


class FrameSampler:
    """同步、无副作用，仅分配 PNG 字节。"""

    def sample(self, surface: RasterSurface, timestamp: float) -> FrameSample:
        return FrameSample(
            timestamp_seconds=float(timestamp),
            image_bytes=surface.snapshot(),
            width=surface.width,
            height=surface.height,
        )

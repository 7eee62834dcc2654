"""SeekStepper：按时间戳序列驱动 SourceHandle，逐个 seek -> draw -> 交付。"""

from __future__ import annotations

import asyncio
import math
from typing import Awaitable, Callable, List, Optional

from framestep.core import CaptureCancelledError, get_logger
from framestep.raster import RasterSurface
from framestep.source import SourceHandle

logger = get_logger(__name__)

FrameHandler = Callable[[float], Awaitable[None]]

_EPSILON = 1e-9


def build_timestamps(duration: float, interval: float) -> List[float]:
    """生成 0, Δ, 2Δ, ... 且 < D 的序列，末尾保证追加 D，确保最后一帧不丢。

    用 i*Δ 而非累加，避免浮点漂移；长度为 ceil(D/Δ) 或再多 1。
    """

    if interval <= 0 or not math.isfinite(interval):
        raise ValueError("interval must be a positive finite number")
    if duration < 0 or not math.isfinite(duration):
        raise ValueError("duration must be a non-negative finite number")

    count = math.ceil(duration / interval)
    timestamps = [index * interval for index in range(count)]
    # 浮点误差可能让 ceil 多出一个紧贴 D 的点
    while len(timestamps) > 1 and timestamps[-1] >= duration - _EPSILON:
        timestamps.pop()
    if not timestamps or timestamps[-1] != duration:
        timestamps.append(duration)
    return timestamps


class CancellationToken:
    """协作式取消令牌，stepper 在每次 seek 之前检查。"""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self._cancelled = True
        self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CaptureCancelledError(self._reason)


class SeekStepper:
    """把一个 SourceHandle 按固定间隔走完，并把每帧画进共享的 RasterSurface。

    - on_frame：每次 draw 之后调用（抽帧或推入编码通道），下次 seek 前必须消费完光栅；
    - pacing_delay：draw 后的固定等待，仅 paced 模式下给编码器的采样窗口；
    - 任何 seek 失败直接向上抛出，由编排器终止整次操作。
    """

    def __init__(
        self,
        handle: SourceHandle,
        surface: RasterSurface,
        *,
        interval: float,
        pacing_delay: float = 0.0,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> None:
        if pacing_delay < 0:
            raise ValueError("pacing_delay must be non-negative")
        self._handle = handle
        self._surface = surface
        self._interval = interval
        self._pacing_delay = pacing_delay
        self._cancel_token = cancel_token
        self._progress_callback = progress_callback
        self._timestamps = build_timestamps(handle.descriptor.duration_seconds, interval)

    @property
    def timestamps(self) -> List[float]:
        return list(self._timestamps)

    async def run(self, on_frame: Optional[FrameHandler] = None) -> int:
        total = len(self._timestamps)
        logger.debug(
            "Stepping %s: %d timestamps, interval=%.4fs",
            self._handle.origin_ref,
            total,
            self._interval,
        )
        processed = 0
        for timestamp in self._timestamps:
            if self._cancel_token is not None:
                self._cancel_token.raise_if_cancelled()
            await self._handle.seek_to(timestamp)
            self._surface.draw(self._handle.current_raster())
            if on_frame is not None:
                await on_frame(timestamp)
            if self._pacing_delay > 0:
                await asyncio.sleep(self._pacing_delay)
            processed += 1
            if self._progress_callback is not None:
                self._progress_callback(processed, total)
        return processed

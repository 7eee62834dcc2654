"""SourceHandle：包装单个输入源，负责元数据解析、带超时的 seek 与当前帧读取。"""

from __future__ import annotations

import asyncio
import math
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from framestep.core import (
    DecodeInterruptedError,
    SeekTimeoutError,
    SourceDescriptor,
    UnsupportedFormatError,
    get_logger,
)

from .decoders import DecodeBackend, DecoderOpenError, DecoderSeekError

DEFAULT_SEEK_TIMEOUT = 15.0

logger = get_logger(__name__)


class SourceHandle:
    """单个媒体源的句柄，独占其 SourceDescriptor 与解码后端。

    - `open` 成功后描述符不可变；
    - `seek_to` 允许任意顺序（包括重复）的时间戳，超时抛 SeekTimeoutError；
    - `release` 幂等，所有退出路径都必须调用。
    """

    def __init__(
        self,
        backend: DecodeBackend,
        *,
        origin_ref: str,
        seek_timeout: float = DEFAULT_SEEK_TIMEOUT,
    ) -> None:
        if seek_timeout <= 0:
            raise ValueError("seek_timeout must be positive")
        self._backend = backend
        self._origin_ref = origin_ref
        self._seek_timeout = seek_timeout
        self._descriptor: Optional[SourceDescriptor] = None
        self._position: Optional[float] = None
        self._released = False

    @property
    def origin_ref(self) -> str:
        return self._origin_ref

    @property
    def descriptor(self) -> SourceDescriptor:
        if self._descriptor is None:
            raise RuntimeError(f"source {self._origin_ref} has not been opened")
        return self._descriptor

    @property
    def is_open(self) -> bool:
        return self._descriptor is not None and not self._released

    @property
    def position(self) -> Optional[float]:
        return self._position

    async def open(self, data: bytes) -> SourceDescriptor:
        """打开输入字节并解析元数据；任何打开失败或退化元数据都视为 UnsupportedFormat。"""

        if self._released:
            raise RuntimeError(f"source {self._origin_ref} was released")
        if self._descriptor is not None:
            return self._descriptor
        opening = asyncio.ensure_future(asyncio.to_thread(self._backend.open, data))
        try:
            metadata = await asyncio.shield(opening)
        except asyncio.CancelledError:
            # 线程里的 open 无法中断，等它结束后再让 release 关闭后端
            await asyncio.gather(opening, return_exceptions=True)
            raise
        except DecoderOpenError as exc:
            raise UnsupportedFormatError(f"{self._origin_ref}: {exc}") from exc

        if metadata.width <= 0 or metadata.height <= 0:
            raise UnsupportedFormatError(f"{self._origin_ref}: 分辨率无效 {metadata.width}x{metadata.height}")
        if not math.isfinite(metadata.duration) or metadata.duration < 0:
            raise UnsupportedFormatError(f"{self._origin_ref}: 时长无效 {metadata.duration}")

        self._descriptor = SourceDescriptor(
            origin_ref=self._origin_ref,
            native_width=int(metadata.width),
            native_height=int(metadata.height),
            duration_seconds=float(metadata.duration),
        )
        logger.info(
            "Resolved %s: %dx%d, %.3fs",
            self._origin_ref,
            metadata.width,
            metadata.height,
            metadata.duration,
        )
        return self._descriptor

    async def seek_to(self, timestamp: float, *, timeout: Optional[float] = None) -> None:
        if not self.is_open:
            raise RuntimeError(f"source {self._origin_ref} is not open")
        limit = self._seek_timeout if timeout is None else timeout
        logger.debug("Seek %s -> %.4fs", self._origin_ref, timestamp)
        try:
            await asyncio.wait_for(self._backend.seek(timestamp), timeout=limit)
        except asyncio.TimeoutError as exc:
            raise SeekTimeoutError(
                f"{self._origin_ref}: seek 到 {timestamp:.3f}s 在 {limit:.1f}s 内未完成"
            ) from exc
        except DecoderSeekError as exc:
            raise DecodeInterruptedError(f"{self._origin_ref}: {exc}") from exc
        self._position = timestamp

    def current_raster(self) -> NDArray[np.uint8]:
        """返回最近一次 seek 完成后的原生分辨率帧（BGR）。"""

        if self._position is None:
            raise RuntimeError("current_raster() called before any completed seek")
        return self._backend.current_frame()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._position = None
        self._backend.close()

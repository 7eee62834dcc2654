"""解码后端：约定解码服务需要提供的能力，并给出基于 OpenCV 的默认实现。"""

from __future__ import annotations

import asyncio
import math
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import cv2
import numpy as np
from numpy.typing import NDArray

from framestep.core import get_logger

logger = get_logger(__name__)


class DecoderOpenError(RuntimeError):
    """后端无法打开输入字节时抛出，由 SourceHandle 转换为 UnsupportedFormatError。"""


class DecoderSeekError(RuntimeError):
    """seek 后读帧失败时抛出，由 SourceHandle 转换为 DecodeInterruptedError。"""


@dataclass(frozen=True, slots=True)
class DecoderMetadata:
    width: int
    height: int
    duration: float
    fps: float
    frame_count: int


class DecodeBackend(Protocol):
    """解码服务接口：打开、按时间戳 seek、读取当前帧、关闭。

    `seek` 在目标帧可读时返回；某些源永远不会返回，超时由调用方负责。
    """

    def open(self, data: bytes) -> DecoderMetadata:
        ...

    async def seek(self, timestamp: float) -> None:
        ...

    def current_frame(self) -> NDArray[np.uint8]:
        ...

    def close(self) -> None:
        ...


class OpenCVDecoder:
    """基于 cv2.VideoCapture 的解码后端。

    OpenCV 只能从路径打开视频，因此输入字节先落到临时文件，`close()` 时删除。
    阻塞的读帧调用放到线程里执行，让事件循环上的 seek 超时可以生效；
    open 与读帧共用同一把锁，同一时刻只有一个原生调用在进行。
    """

    def __init__(self, *, suffix: str = ".mp4", close_wait_seconds: float = 1.0) -> None:
        self._suffix = suffix
        self._close_wait = close_wait_seconds
        self._capture: Optional[cv2.VideoCapture] = None
        self._path: Optional[Path] = None
        self._metadata: Optional[DecoderMetadata] = None
        self._frame: Optional[NDArray[np.uint8]] = None
        self._lock = threading.RLock()

    def open(self, data: bytes) -> DecoderMetadata:
        # 持锁打开，close() 不会与仍在线程中的 open 交错
        with self._lock:
            return self._open_locked(data)

    def _open_locked(self, data: bytes) -> DecoderMetadata:
        if self._capture is not None:
            raise RuntimeError("decoder already open")
        if not data:
            raise DecoderOpenError("输入为空")

        with tempfile.NamedTemporaryFile(prefix="framestep_src_", suffix=self._suffix, delete=False) as handle:
            handle.write(data)
            self._path = Path(handle.name)

        capture = cv2.VideoCapture(str(self._path))
        if not capture.isOpened():
            capture.release()
            self._discard_file()
            raise DecoderOpenError("无法打开视频流")
        self._capture = capture

        try:
            metadata = self._probe(capture)
        except DecoderOpenError:
            self.close()
            raise
        self._metadata = metadata
        logger.debug(
            "Opened source %dx%d fps=%.3f frames=%d duration=%.3fs",
            metadata.width,
            metadata.height,
            metadata.fps,
            metadata.frame_count,
            metadata.duration,
        )
        return metadata

    async def seek(self, timestamp: float) -> None:
        self._frame = await asyncio.to_thread(self._read_at, timestamp)

    def current_frame(self) -> NDArray[np.uint8]:
        if self._frame is None:
            raise RuntimeError("no frame decoded yet")
        return self._frame

    def close(self) -> None:
        acquired = self._lock.acquire(timeout=self._close_wait)
        try:
            if self._capture is not None:
                if acquired:
                    self._capture.release()
                else:
                    # 读帧线程卡死在原生调用里，只能交给 GC
                    logger.warning("Decoder thread still busy on close, capture left to GC")
                self._capture = None
        finally:
            if acquired:
                self._lock.release()
        self._frame = None
        self._discard_file()

    def _probe(self, capture: cv2.VideoCapture) -> DecoderMetadata:
        width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        if width <= 0 or height <= 0:
            raise DecoderOpenError("未找到视频流")
        fps = float(capture.get(cv2.CAP_PROP_FPS) or 0.0)
        if fps <= 0 or not math.isfinite(fps):
            raise DecoderOpenError("无法确定帧率")
        frame_count = int(capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        if frame_count <= 0:
            # 部分容器（如无索引的 webm）不报帧数，只能完整扫一遍
            frame_count = self._count_frames(capture)
        return DecoderMetadata(
            width=width,
            height=height,
            duration=frame_count / fps,
            fps=fps,
            frame_count=frame_count,
        )

    @staticmethod
    def _count_frames(capture: cv2.VideoCapture) -> int:
        count = 0
        while capture.grab():
            count += 1
        capture.set(cv2.CAP_PROP_POS_FRAMES, 0)
        return count

    def _read_at(self, timestamp: float) -> NDArray[np.uint8]:
        with self._lock:
            if self._capture is None or self._metadata is None:
                raise DecoderSeekError("decoder is closed")
            capture = self._capture
            metadata = self._metadata
            try:
                capture.set(cv2.CAP_PROP_POS_MSEC, max(0.0, timestamp) * 1000.0)
                ok, frame = capture.read()
                near_end = timestamp >= metadata.duration - 1.0 / metadata.fps
                if not ok and near_end and metadata.frame_count > 0:
                    # seek 到时长处通常读不到帧，回退到最后一帧
                    capture.set(cv2.CAP_PROP_POS_FRAMES, metadata.frame_count - 1)
                    ok, frame = capture.read()
            except cv2.error as exc:
                raise DecoderSeekError(f"t={timestamp:.3f}s 解码出错: {exc}") from exc
            if not ok or frame is None:
                raise DecoderSeekError(f"无法解码 t={timestamp:.3f}s 处的帧")
            return frame

    def _discard_file(self) -> None:
        if self._path is not None:
            self._path.unlink(missing_ok=True)
            self._path = None

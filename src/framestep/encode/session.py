"""EncoderSession：长生命周期的编码会话，把光栅馈送变成有序的 EncodedChunk 序列。"""

from __future__ import annotations

import asyncio
from typing import List, Literal, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from framestep.core import CodecUnavailableError, EncodedChunk, get_logger
from framestep.raster import RasterSurface

from .backend import EncoderBackend, EncoderConstructionError, EncoderSink
from .codecs import CodecDescriptor

logger = get_logger(__name__)

FeedMode = Literal["channel", "paced"]

_Slot = Tuple[int, NDArray[np.uint8]]


class EncoderSession:
    """编码会话，支持两种馈送方式：

    - channel：stepper 每次 draw 后推入帧拷贝到有界队列，消费者按输出时间槽
      `round((offset + t) * fps)` 写入编码器；同槽后到者替换，跨槽则重复上一帧补齐。
      输出为恒定帧率且与调度时序无关。
    - paced：会话以自身节奏（1/fps）从挂接的 RasterSurface 采样，与 draw 解耦，
      依赖 stepper 的 pacing delay 给出采样窗口。

    codec 按给定顺序尝试，全部失败抛 CodecUnavailableError。
    """

    def __init__(
        self,
        backend: EncoderBackend,
        codecs: Sequence[CodecDescriptor],
        *,
        frame_rate: float,
        feed_mode: FeedMode = "channel",
        channel_capacity: int = 8,
        flush_timeout: float = 30.0,
    ) -> None:
        if frame_rate <= 0:
            raise ValueError("frame_rate must be positive")
        if feed_mode not in ("channel", "paced"):
            raise ValueError(f"unknown feed mode: {feed_mode}")
        self._backend = backend
        self._codecs = list(codecs)
        self._frame_rate = float(frame_rate)
        self._feed_mode: FeedMode = feed_mode
        self._channel_capacity = channel_capacity
        self._flush_timeout = flush_timeout

        self._sink: Optional[EncoderSink] = None
        self._codec: Optional[CodecDescriptor] = None
        self._size: Optional[Tuple[int, int]] = None
        self._surface: Optional[RasterSurface] = None
        self._queue: Optional[asyncio.Queue[Optional[_Slot]]] = None
        self._feeder: Optional[asyncio.Task[None]] = None
        self._stopping = False
        self._closed = False
        self._offset = 0.0
        self._frames_written = 0
        self._chunks: List[EncodedChunk] = []

    @property
    def codec(self) -> Optional[CodecDescriptor]:
        return self._codec

    @property
    def feed_mode(self) -> FeedMode:
        return self._feed_mode

    @property
    def frame_rate(self) -> float:
        return self._frame_rate

    @property
    def frames_written(self) -> int:
        return self._frames_written

    @property
    def duration_seconds(self) -> float:
        return self._frames_written / self._frame_rate

    @property
    def is_active(self) -> bool:
        return self._sink is not None and not self._closed

    @property
    def timeline_offset(self) -> float:
        return self._offset

    def attach_surface(self, surface: RasterSurface) -> None:
        """paced 模式下会话直接从该画布采样。"""

        self._surface = surface

    async def start(self, width: int, height: int) -> CodecDescriptor:
        if self._sink is not None or self._closed:
            raise RuntimeError("encoder session already started")
        if self._feed_mode == "paced" and self._surface is None:
            raise RuntimeError("paced feed mode requires attach_surface() before start()")

        failures: List[str] = []
        for codec in self._codecs:
            # 首次探测会阻塞地运行 `ffmpeg -encoders`，放到线程里
            if not await asyncio.to_thread(self._backend.supports, codec):
                failures.append(f"{codec.name}: not supported")
                logger.warning("Codec %s not supported by encoder backend, trying next", codec.name)
                continue
            try:
                sink = await self._backend.open(
                    codec,
                    width=width,
                    height=height,
                    frame_rate=self._frame_rate,
                    on_chunk=self._collect,
                )
            except EncoderConstructionError as exc:
                failures.append(f"{codec.name}: {exc}")
                logger.warning("Codec %s construction failed (%s), trying next", codec.name, exc)
                continue
            self._sink = sink
            self._codec = codec
            break
        else:
            detail = "; ".join(failures) or "no codec configured"
            raise CodecUnavailableError(f"没有可用的编码器 ({detail})")

        self._size = (width, height)
        if self._feed_mode == "channel":
            self._queue = asyncio.Queue(maxsize=self._channel_capacity)
            self._feeder = asyncio.create_task(self._consume_channel())
        else:
            self._feeder = asyncio.create_task(self._sample_surface())
        logger.info(
            "Encoder session started: codec=%s %dx%d @ %.3f fps (%s)",
            self._codec.name,
            width,
            height,
            self._frame_rate,
            self._feed_mode,
        )
        return self._codec

    def advance_timeline(self, seconds: float) -> None:
        """合并时切换到下一个源：后续帧的时间戳整体后移。"""

        if seconds < 0:
            raise ValueError("timeline can only move forward")
        self._offset += seconds

    async def submit(self, frame: NDArray[np.uint8], timestamp: float) -> None:
        """channel 模式：推入当前光栅的拷贝；队列满时等待消费者。"""

        if self._feed_mode != "channel":
            raise RuntimeError("submit() is only used in channel feed mode")
        if not self.is_active or self._queue is None:
            raise RuntimeError("encoder session is not active")
        width, height = self._size or (0, 0)
        if frame.shape[:2] != (height, width):
            raise ValueError(f"frame {frame.shape[1]}x{frame.shape[0]} does not match session {width}x{height}")
        slot = int(round((self._offset + timestamp) * self._frame_rate))
        await self._put((slot, frame.copy()))

    async def stop(self) -> List[EncodedChunk]:
        """结束馈送并等待 flush，返回按序的全部 chunk；失败时丢弃所有输出。"""

        if self._sink is None:
            raise RuntimeError("encoder session not started")
        if self._closed:
            raise RuntimeError("encoder session already closed")
        try:
            await self._drain_feed()
            await self._sink.finish(self._flush_timeout)
        except Exception:
            await self.abort()
            raise
        self._closed = True
        logger.info(
            "Encoder session stopped: %d frames, %d chunks, %d bytes",
            self._frames_written,
            len(self._chunks),
            sum(len(chunk.data) for chunk in self._chunks),
        )
        return list(self._chunks)

    async def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._feeder is not None and not self._feeder.done():
            self._feeder.cancel()
        if self._feeder is not None:
            await asyncio.gather(self._feeder, return_exceptions=True)
        if self._sink is not None:
            await self._sink.abort()
        self._chunks.clear()
        self._queue = None

    async def _drain_feed(self) -> None:
        if self._feed_mode == "channel":
            await self._put(None)
        else:
            self._stopping = True
        if self._feeder is not None:
            await self._feeder

    async def _put(self, item: Optional[_Slot]) -> None:
        if self._queue is None or self._feeder is None:
            raise RuntimeError("encoder channel is not running")
        # 消费者若已异常退出，队列满时 put 会永远挂起，因此同时等待两者
        put = asyncio.ensure_future(self._queue.put(item))
        done, _ = await asyncio.wait({put, self._feeder}, return_when=asyncio.FIRST_COMPLETED)
        if put in done:
            return
        put.cancel()
        await asyncio.gather(put, return_exceptions=True)
        # 取出消费者异常；正常结束却仍在 put 说明调用顺序有误
        self._feeder.result()
        raise RuntimeError("encoder feed already finished")

    async def _consume_channel(self) -> None:
        if self._queue is None:
            raise RuntimeError("encoder channel is not running")
        pending: Optional[_Slot] = None
        while True:
            item = await self._queue.get()
            if item is None:
                break
            slot, frame = item
            if pending is None:
                pending = (slot, frame)
            elif slot <= pending[0]:
                pending = (pending[0], frame)
            else:
                for _ in range(slot - pending[0]):
                    await self._write(pending[1])
                pending = (slot, frame)
        if pending is not None:
            await self._write(pending[1])

    async def _sample_surface(self) -> None:
        if self._surface is None:
            raise RuntimeError("paced feed has no surface attached")
        loop = asyncio.get_running_loop()
        interval = 1.0 / self._frame_rate
        next_tick = loop.time()
        while not self._stopping:
            await self._write(self._surface.copy_pixels())
            next_tick += interval
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    async def _write(self, frame: NDArray[np.uint8]) -> None:
        if self._sink is None:
            raise RuntimeError("encoder session not started")
        await self._sink.write_frame(frame)
        self._frames_written += 1

    def _collect(self, data: bytes) -> None:
        if self._closed:
            return
        self._chunks.append(
            EncodedChunk(
                sequence=len(self._chunks),
                timestamp_seconds=self._frames_written / self._frame_rate,
                data=bytes(data),
            )
        )

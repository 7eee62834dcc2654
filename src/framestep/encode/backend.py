"""编码服务接口：后端负责把原始 BGR 帧变成编码字节流。"""

from __future__ import annotations

from typing import Callable, Protocol

import numpy as np
from numpy.typing import NDArray

from .codecs import CodecDescriptor

ChunkCallback = Callable[[bytes], None]


class EncoderConstructionError(RuntimeError):
    """指定 codec 的编码器无法构造；会话会接着尝试链上的下一个。"""


class EncoderSink(Protocol):
    """一个已启动的编码流。"""

    async def write_frame(self, frame: NDArray[np.uint8]) -> None:
        ...

    async def finish(self, timeout: float) -> None:
        """关闭输入并等待全部输出刷新，失败抛 EncodeFlushError。"""

    async def abort(self) -> None:
        ...


class EncoderBackend(Protocol):
    def supports(self, codec: CodecDescriptor) -> bool:
        ...

    async def open(
        self,
        codec: CodecDescriptor,
        *,
        width: int,
        height: int,
        frame_rate: float,
        on_chunk: ChunkCallback,
    ) -> EncoderSink:
        ...

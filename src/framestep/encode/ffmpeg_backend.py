from __future__ import annotations

# 本模块用 ffmpeg-python 构建编码命令，并以异步子进程运行：
# 1) stdin 接收 rawvideo/bgr24 帧，尺寸与帧率在启动时固定
# 2) 奇数宽高自动 pad 到偶数，保证 yuv420p 可用
# 3) stdout 按 chunk_size 读取，逐块回调给会话，保持顺序
# 4) stderr 只保留末尾若干行，用于报错信息

import asyncio
import shutil
import subprocess
from collections import deque
from functools import lru_cache
from typing import Deque, FrozenSet, List, Optional

import ffmpeg
import numpy as np
from numpy.typing import NDArray

from framestep.core import EncodeFlushError, EncoderConfig, get_logger

from .backend import ChunkCallback, EncoderConstructionError
from .codecs import CodecDescriptor

logger = get_logger(__name__)


@lru_cache(maxsize=8)
def list_encoders(binary: str) -> FrozenSet[str]:
    """解析 `ffmpeg -encoders` 输出，返回可用编码器名集合；找不到 ffmpeg 时为空。"""

    path = shutil.which(binary)
    if path is None:
        return frozenset()
    result = subprocess.run([path, "-hide_banner", "-encoders"], capture_output=True, text=True)
    if result.returncode != 0:
        return frozenset()
    names = set()
    for line in result.stdout.splitlines():
        parts = line.split()
        # 形如 " V....D libvpx-vp9  libvpx VP9"，第一列是 6 位能力标记
        if len(parts) >= 2 and len(parts[0]) == 6 and parts[0][0] in "VAS" and parts[1] != "=":
            names.add(parts[1])
    return frozenset(names)


class FFmpegEncoderBackend:
    """ffmpeg 子进程编码后端。"""

    def __init__(self, *, binary: str = "ffmpeg", video_bitrate: str = "2M", chunk_size: int = 65536) -> None:
        self._binary = binary
        self._video_bitrate = video_bitrate
        self._chunk_size = chunk_size

    @classmethod
    def from_config(cls, cfg: EncoderConfig) -> "FFmpegEncoderBackend":
        return cls(binary=cfg.ffmpeg_binary, video_bitrate=cfg.video_bitrate, chunk_size=cfg.chunk_size)

    def supports(self, codec: CodecDescriptor) -> bool:
        return codec.encoder in list_encoders(self._binary)

    def build_command(self, codec: CodecDescriptor, *, width: int, height: int, frame_rate: float) -> List[str]:
        stream = ffmpeg.input(
            "pipe:",
            format="rawvideo",
            pix_fmt="bgr24",
            s=f"{width}x{height}",
            framerate=frame_rate,
        )
        if width % 2 or height % 2:
            stream = stream.filter("pad", "ceil(iw/2)*2", "ceil(ih/2)*2")
        output = ffmpeg.output(
            stream,
            "pipe:",
            format=codec.muxer,
            vcodec=codec.encoder,
            pix_fmt="yuv420p",
            video_bitrate=self._video_bitrate,
            **codec.options,
        )
        output = output.global_args("-hide_banner", "-loglevel", "error")
        return output.compile(cmd=self._binary)

    async def open(
        self,
        codec: CodecDescriptor,
        *,
        width: int,
        height: int,
        frame_rate: float,
        on_chunk: ChunkCallback,
    ) -> "FFmpegSink":
        if not await asyncio.to_thread(self.supports, codec):
            raise EncoderConstructionError(f"ffmpeg encoder '{codec.encoder}' is not available")
        args = self.build_command(codec, width=width, height=height, frame_rate=frame_rate)
        logger.debug("Starting encoder: %s", " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EncoderConstructionError(f"无法启动 ffmpeg: {exc}") from exc
        return FFmpegSink(process, on_chunk=on_chunk, chunk_size=self._chunk_size)


class FFmpegSink:
    """单个 ffmpeg 进程的写入端与输出泵。"""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        on_chunk: ChunkCallback,
        chunk_size: int,
    ) -> None:
        self._process = process
        self._on_chunk = on_chunk
        self._chunk_size = chunk_size
        self._stderr_tail: Deque[str] = deque(maxlen=20)
        self._stdout_task = asyncio.create_task(self._pump_stdout())
        self._stderr_task = asyncio.create_task(self._pump_stderr())

    async def write_frame(self, frame: NDArray[np.uint8]) -> None:
        stdin = self._require_stdin()
        try:
            stdin.write(np.ascontiguousarray(frame).tobytes())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise EncodeFlushError(f"ffmpeg 提前退出: {self._stderr_text()}") from exc

    async def finish(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._close_and_drain(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            await self.abort()
            raise EncodeFlushError(f"ffmpeg 在 {timeout:.1f}s 内未完成 flush") from exc
        if self._process.returncode != 0:
            raise EncodeFlushError(f"ffmpeg 退出码 {self._process.returncode}: {self._stderr_text()}")

    async def abort(self) -> None:
        if self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            await self._process.wait()
        for task in (self._stdout_task, self._stderr_task):
            task.cancel()
        await asyncio.gather(self._stdout_task, self._stderr_task, return_exceptions=True)

    async def _close_and_drain(self) -> None:
        stdin = self._require_stdin()
        stdin.close()
        try:
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            # 进程已退出，退出码会在下面暴露
            pass
        await self._stdout_task
        await self._stderr_task
        await self._process.wait()

    async def _pump_stdout(self) -> None:
        stdout = self._process.stdout
        if stdout is None:
            raise RuntimeError("ffmpeg stdout is not piped")
        while True:
            data = await stdout.read(self._chunk_size)
            if not data:
                break
            self._on_chunk(data)

    async def _pump_stderr(self) -> None:
        stderr = self._process.stderr
        if stderr is None:
            raise RuntimeError("ffmpeg stderr is not piped")
        async for line in stderr:
            self._stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())

    def _require_stdin(self) -> asyncio.StreamWriter:
        stdin: Optional[asyncio.StreamWriter] = self._process.stdin
        if stdin is None:
            raise RuntimeError("ffmpeg stdin is not piped")
        return stdin

    def _stderr_text(self) -> str:
        return "\n".join(self._stderr_tail) or "(no stderr)"

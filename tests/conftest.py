"""共享测试替身：假解码后端（JSON 描述的合成视频）与假编码后端。"""

from __future__ import annotations

import asyncio
import json
from typing import Iterable, List, Optional, Tuple

import numpy as np
import pytest

from framestep.core import CaptureConfig, EncodeFlushError, PipelineConfig, TimingConfig
from framestep.encode import CodecDescriptor, EncoderConstructionError
from framestep.source import DecoderMetadata, DecoderOpenError, DecoderSeekError


def make_source(
    duration: float,
    *,
    width: int = 64,
    height: int = 36,
    marker: int = 10,
    hang_at: Optional[float] = None,
    fail_at: Optional[float] = None,
) -> bytes:
    """合成一个“视频”：每帧都是填满 marker 值的纯色图。"""

    return json.dumps(
        {
            "duration": duration,
            "width": width,
            "height": height,
            "marker": marker,
            "hang_at": hang_at,
            "fail_at": fail_at,
        }
    ).encode("utf-8")


class FakeDecoder:
    def __init__(self) -> None:
        self.layout: dict = {}
        self.seeks: List[float] = []
        self.closed = False
        self._frame: Optional[np.ndarray] = None

    def open(self, data: bytes) -> DecoderMetadata:
        try:
            self.layout = json.loads(data)
        except ValueError as exc:
            raise DecoderOpenError("not a synthetic source") from exc
        return DecoderMetadata(
            width=self.layout["width"],
            height=self.layout["height"],
            duration=self.layout["duration"],
            fps=24.0,
            frame_count=int(self.layout["duration"] * 24),
        )

    async def seek(self, timestamp: float) -> None:
        self.seeks.append(timestamp)
        hang_at = self.layout.get("hang_at")
        fail_at = self.layout.get("fail_at")
        if hang_at is not None and timestamp >= hang_at:
            await asyncio.Event().wait()
        if fail_at is not None and timestamp >= fail_at:
            raise DecoderSeekError(f"corrupt frame at {timestamp}")
        await asyncio.sleep(0)
        self._frame = np.full((self.layout["height"], self.layout["width"], 3), self.layout["marker"], dtype=np.uint8)

    def current_frame(self) -> np.ndarray:
        assert self._frame is not None
        return self._frame

    def close(self) -> None:
        self.closed = True


class DecoderFactory:
    def __init__(self) -> None:
        self.created: List[FakeDecoder] = []

    def __call__(self) -> FakeDecoder:
        decoder = FakeDecoder()
        self.created.append(decoder)
        return decoder


class FakeSink:
    """每写一帧产出一个 1 字节 chunk：画面中心像素的 B 通道值。"""

    def __init__(self, on_chunk, *, fail_flush: bool = False) -> None:
        self._on_chunk = on_chunk
        self._fail_flush = fail_flush
        self.frames: List[np.ndarray] = []
        self.finished = False
        self.aborted = False

    async def write_frame(self, frame: np.ndarray) -> None:
        self.frames.append(frame)
        h, w = frame.shape[:2]
        self._on_chunk(bytes([int(frame[h // 2, w // 2, 0])]))
        await asyncio.sleep(0)

    async def finish(self, timeout: float) -> None:
        if self._fail_flush:
            raise EncodeFlushError("muxer refused to finalize")
        self.finished = True

    async def abort(self) -> None:
        self.aborted = True


class FakeEncoderBackend:
    def __init__(
        self,
        *,
        supported: Iterable[str] = ("vp9", "vp8"),
        broken: Iterable[str] = (),
        fail_flush: bool = False,
    ) -> None:
        self.supported = set(supported)
        self.broken = set(broken)
        self.fail_flush = fail_flush
        self.opened: List[Tuple[str, int, int, float]] = []
        self.sinks: List[FakeSink] = []

    def supports(self, codec: CodecDescriptor) -> bool:
        return codec.name in self.supported

    async def open(self, codec, *, width, height, frame_rate, on_chunk) -> FakeSink:
        if codec.name in self.broken:
            raise EncoderConstructionError(f"{codec.name} failed to initialise")
        self.opened.append((codec.name, width, height, frame_rate))
        sink = FakeSink(on_chunk, fail_flush=self.fail_flush)
        self.sinks.append(sink)
        return sink


@pytest.fixture
def decoders() -> DecoderFactory:
    return DecoderFactory()


@pytest.fixture
def encoder_backend() -> FakeEncoderBackend:
    return FakeEncoderBackend()


@pytest.fixture
def fast_config(tmp_path) -> PipelineConfig:
    return PipelineConfig(
        capture=CaptureConfig(target_width=720, target_frame_rate=10.0, sampling_interval_seconds=1.0),
        timing=TimingConfig(seek_timeout_seconds=0.5, settle_delay_seconds=0.2, extraction_delay_seconds=0.0),
        output_root=tmp_path / "output",
    )

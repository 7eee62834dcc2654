"""编排器：把 SourceHandle / RasterSurface / SeekStepper / EncoderSession / FrameSampler
组合成压缩、抽帧、合并三种操作，负责状态机与所有中间资源的生命周期。"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from framestep.capture import CancellationToken, SeekStepper, build_timestamps
from framestep.core import (
    CaptureError,
    EncodeFlushError,
    FailureReason,
    FrameSample,
    OutputArtifact,
    PipelineConfig,
    PipelineState,
    SourceDescriptor,
    get_logger,
)
from framestep.encode import EncoderBackend, EncoderSession, FFmpegEncoderBackend, resolve_codec_chain
from framestep.raster import FrameSampler, RasterSurface
from framestep.source import DecodeBackend, OpenCVDecoder, SourceHandle

from .state import PipelineStateMachine

logger = get_logger(__name__)

ProgressCallback = Callable[[str, int, int], None]
DecoderFactory = Callable[[], DecodeBackend]

T = TypeVar("T")


class PipelineOrchestrator:
    """单次运行的编排器：一个实例只执行一次操作，状态只能前进。

    参数：
    - config: 流水线配置，缺省使用默认值。
    - decoder_factory: 每个输入源创建一个解码后端，默认 OpenCVDecoder。
    - encoder_backend: 编码后端，默认按配置构建 FFmpegEncoderBackend。
    - cancel_token: 协作式取消，stepper 每次 seek 前检查。
    - progress_callback: callback(stage, current, total)，stage 为 compress/extract/merge。

    任何失败都会进入 FAILED(reason)、释放全部资源并把异常抛给调用方，不返回部分产物。
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        decoder_factory: Optional[DecoderFactory] = None,
        encoder_backend: Optional[EncoderBackend] = None,
        sampler: Optional[FrameSampler] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self._decoder_factory: DecoderFactory = decoder_factory or OpenCVDecoder
        self._encoder_backend: EncoderBackend = encoder_backend or FFmpegEncoderBackend.from_config(self.config.encoder)
        self._sampler = sampler or FrameSampler()
        self._cancel_token = cancel_token
        self._progress_callback = progress_callback
        self._machine = PipelineStateMachine()
        self._handles: List[SourceHandle] = []
        self._surface: Optional[RasterSurface] = None
        self._session: Optional[EncoderSession] = None
        self._used = False
        self.report: Dict[str, Any] = {}

    @property
    def state(self) -> PipelineState:
        return self._machine.state

    @property
    def failure(self) -> Optional[FailureReason]:
        return self._machine.failure

    @property
    def state_history(self) -> List[PipelineState]:
        return self._machine.history

    @property
    def held_resources(self) -> int:
        """当前仍被持有的源句柄、光栅与编码会话数量，运行结束后应为 0。"""

        return len(self._handles) + int(self._surface is not None) + int(self._session is not None)

    async def compress(self, data: bytes, *, origin_ref: str = "source-0") -> OutputArtifact:
        return await self._run("compress", partial(self._compress, data, origin_ref))

    async def extract_frames(self, data: bytes, *, origin_ref: str = "source-0") -> List[FrameSample]:
        return await self._run("extract", partial(self._extract_frames, data, origin_ref))

    async def merge(self, sources: Sequence[bytes], *, origin_refs: Optional[Sequence[str]] = None) -> OutputArtifact:
        refs = list(origin_refs) if origin_refs is not None else [f"source-{idx}" for idx in range(len(sources))]
        if not sources:
            raise ValueError("merge needs at least one source")
        if len(refs) != len(sources):
            raise ValueError("origin_refs must match sources one to one")
        return await self._run("merge", partial(self._merge, list(sources), refs))

    async def _run(self, operation: str, body: Callable[[], Awaitable[T]]) -> T:
        if self._used:
            raise RuntimeError("a PipelineOrchestrator runs exactly one operation")
        self._used = True
        self.report["operation"] = operation
        logger.info("Starting %s", operation)
        try:
            result = await body()
        except CaptureError as exc:
            self._fail(exc.reason)
            logger.error("%s failed: %s", operation, exc.reason)
            raise
        except asyncio.CancelledError:
            self._fail(FailureReason(kind="Cancelled", message="task cancelled"))
            raise
        except Exception as exc:
            self._fail(FailureReason(kind="InternalError", message=str(exc)))
            logger.exception("%s failed unexpectedly", operation)
            raise
        finally:
            await self._release_all()
        logger.info("%s complete", operation)
        return result

    async def _compress(self, data: bytes, origin_ref: str) -> OutputArtifact:
        cap = self.config.capture
        handle = await self._open_source(data, origin_ref)
        descriptor = handle.descriptor
        width, height = descriptor.derived_size(cap.target_width)
        surface = self._allocate_surface(width, height)
        stepper = self._build_stepper(handle, surface, cap.frame_interval, stage="compress")
        self._machine.advance(PipelineState.METADATA_RESOLVED)
        self._describe_sources([descriptor], width, height)

        session = await self._start_session(surface, width, height)
        self._machine.advance(PipelineState.CAPTURING)
        await stepper.run(partial(self._feed_encoder, surface, session))
        return await self._finalize(session, width, height, name="compressed")

    async def _extract_frames(self, data: bytes, origin_ref: str) -> List[FrameSample]:
        cap = self.config.capture
        handle = await self._open_source(data, origin_ref)
        descriptor = handle.descriptor
        width, height = descriptor.derived_size(cap.max_extract_width)
        surface = self._allocate_surface(width, height)
        stepper = self._build_stepper(
            handle,
            surface,
            cap.sampling_interval_seconds,
            stage="extract",
            pacing_delay=self.config.timing.extraction_delay_seconds,
        )
        self._machine.advance(PipelineState.METADATA_RESOLVED)
        self._describe_sources([descriptor], width, height)

        samples: List[FrameSample] = []

        async def collect(timestamp: float) -> None:
            self._machine.advance(PipelineState.CAPTURING)
            samples.append(self._sampler.sample(surface, timestamp))

        self._machine.advance(PipelineState.CAPTURING)
        await stepper.run(collect)
        self._machine.advance(PipelineState.FINALIZING)
        self._machine.advance(PipelineState.COMPLETE)
        self.report["frames"] = len(samples)
        return samples

    async def _merge(self, sources: List[bytes], origin_refs: List[str]) -> OutputArtifact:
        cap = self.config.capture
        handles = [await self._open_source(data, ref) for data, ref in zip(sources, origin_refs)]
        descriptors = [handle.descriptor for handle in handles]
        # 画布在会话开始前一次性确定，之后各源 letterbox 进同一尺寸
        width, height = self._canvas_size([d.derived_size(cap.max_merge_width) for d in descriptors])
        surface = self._allocate_surface(width, height)

        steppers: List[SeekStepper] = []
        base = 0
        total = sum(len(build_timestamps(d.duration_seconds, cap.frame_interval)) for d in descriptors)
        for handle in handles:
            stepper = self._build_stepper(handle, surface, cap.frame_interval, stage="merge", base=base, total=total)
            base += len(stepper.timestamps)
            steppers.append(stepper)
        self._machine.advance(PipelineState.METADATA_RESOLVED)
        self._describe_sources(descriptors, width, height)

        session = await self._start_session(surface, width, height)
        self._machine.advance(PipelineState.CAPTURING)
        for handle, stepper in zip(handles, steppers):
            logger.info("Merging %s (%.3fs)", handle.origin_ref, handle.descriptor.duration_seconds)
            await stepper.run(partial(self._feed_encoder, surface, session))
            session.advance_timeline(handle.descriptor.duration_seconds)
        return await self._finalize(session, width, height, name="merged")

    async def _open_source(self, data: bytes, origin_ref: str) -> SourceHandle:
        handle = SourceHandle(
            self._decoder_factory(),
            origin_ref=origin_ref,
            seek_timeout=self.config.timing.seek_timeout_seconds,
        )
        self._handles.append(handle)
        await handle.open(data)
        return handle

    def _allocate_surface(self, width: int, height: int) -> RasterSurface:
        if self._surface is not None:
            raise RuntimeError("only one raster surface per run")
        self._surface = RasterSurface(width, height)
        return self._surface

    def _build_stepper(
        self,
        handle: SourceHandle,
        surface: RasterSurface,
        interval: float,
        *,
        stage: str,
        pacing_delay: Optional[float] = None,
        base: int = 0,
        total: Optional[int] = None,
    ) -> SeekStepper:
        if pacing_delay is None:
            paced = self.config.encoder.feed_mode == "paced"
            pacing_delay = self.config.timing.pacing_ratio * interval if paced else 0.0
        progress = None
        if self._progress_callback is not None:
            callback = self._progress_callback

            def progress(done: int, count: int) -> None:
                callback(stage, base + done, total if total is not None else count)

        return SeekStepper(
            handle,
            surface,
            interval=interval,
            pacing_delay=pacing_delay,
            cancel_token=self._cancel_token,
            progress_callback=progress,
        )

    async def _start_session(self, surface: RasterSurface, width: int, height: int) -> EncoderSession:
        cap = self.config.capture
        enc = self.config.encoder
        session = EncoderSession(
            self._encoder_backend,
            resolve_codec_chain(cap.preferred_codec, cap.fallback_codec),
            frame_rate=cap.target_frame_rate,
            feed_mode=enc.feed_mode,
            channel_capacity=enc.channel_capacity,
            flush_timeout=self.config.timing.flush_timeout_seconds,
        )
        self._session = session
        if enc.feed_mode == "paced":
            session.attach_surface(surface)
        await session.start(width, height)
        surface.lock_geometry()
        return session

    async def _feed_encoder(self, surface: RasterSurface, session: EncoderSession, timestamp: float) -> None:
        self._machine.advance(PipelineState.CAPTURING)
        if session.feed_mode == "channel":
            await session.submit(surface.pixels, timestamp)

    async def _finalize(self, session: EncoderSession, width: int, height: int, *, name: str) -> OutputArtifact:
        self._machine.advance(PipelineState.FINALIZING)
        # 最后一次 draw 之后留出 settle 时间再停止，避免截断末尾帧
        await asyncio.sleep(self.config.timing.settle_delay_seconds)
        chunks = await session.stop()
        codec = session.codec
        if codec is None:
            raise RuntimeError("encoder session stopped without a codec")
        payload = b"".join(chunk.data for chunk in chunks)
        if not payload:
            raise EncodeFlushError("编码器没有产出任何数据")
        artifact = OutputArtifact(
            data=payload,
            mime_type=codec.mime_type,
            suggested_name=f"{name}.{codec.extension}",
            duration_seconds=session.duration_seconds,
            frame_count=session.frames_written,
            width=width,
            height=height,
            codec=codec.name,
        )
        self._machine.advance(PipelineState.COMPLETE)
        self.report.update(artifact.summary())
        return artifact

    def _canvas_size(self, sizes: Sequence[Tuple[int, int]]) -> Tuple[int, int]:
        if self.config.capture.merge_canvas == "max":
            return max(w for w, _ in sizes), max(h for _, h in sizes)
        return sizes[0]

    def _describe_sources(self, descriptors: Sequence[SourceDescriptor], width: int, height: int) -> None:
        self.report["sources"] = [d.to_dict() for d in descriptors]
        self.report["output_size"] = f"{width}x{height}"

    def _fail(self, reason: FailureReason) -> None:
        if not self._machine.is_terminal:
            self._machine.fail(reason)

    async def _release_all(self) -> None:
        try:
            if self._session is not None:
                await self._session.abort()
        finally:
            self._session = None
            if self._surface is not None:
                self._surface.release()
                self._surface = None
            while self._handles:
                self._handles.pop().release()


async def compress_video(data: bytes, config: Optional[PipelineConfig] = None, **kwargs: Any) -> OutputArtifact:
    """主入口：压缩单个视频，每次调用使用新的编排器。"""

    return await PipelineOrchestrator(config, **kwargs).compress(data)


async def extract_video_frames(data: bytes, config: Optional[PipelineConfig] = None, **kwargs: Any) -> List[FrameSample]:
    return await PipelineOrchestrator(config, **kwargs).extract_frames(data)


async def merge_videos(sources: Sequence[bytes], config: Optional[PipelineConfig] = None, **kwargs: Any) -> OutputArtifact:
    return await PipelineOrchestrator(config, **kwargs).merge(sources)

"""编排器端到端测试：使用假解码/编码后端验证三种操作与失败路径。"""

import asyncio

import pytest
from conftest import DecoderFactory, FakeEncoderBackend, make_source

from framestep.capture import CancellationToken
from framestep.core import (
    CaptureCancelledError,
    CodecUnavailableError,
    DecodeInterruptedError,
    EncodeFlushError,
    PipelineState,
    SeekTimeoutError,
    UnsupportedFormatError,
)
from framestep.pipeline import PipelineOrchestrator, compress_video

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
SUCCESS_HISTORY = [
    PipelineState.IDLE,
    PipelineState.METADATA_RESOLVED,
    PipelineState.CAPTURING,
    PipelineState.FINALIZING,
    PipelineState.COMPLETE,
]


def _orchestrator(config, decoders, backend, **kwargs) -> PipelineOrchestrator:
    return PipelineOrchestrator(config, decoder_factory=decoders, encoder_backend=backend, **kwargs)


def _tolerance(config) -> float:
    return 1.0 / config.capture.target_frame_rate + 1e-9


def test_extract_frames_includes_last_frame(fast_config, decoders, encoder_backend) -> None:
    orchestrator = _orchestrator(fast_config, decoders, encoder_backend)

    samples = asyncio.run(orchestrator.extract_frames(make_source(10.0), origin_ref="clip.mp4"))

    assert [sample.timestamp_seconds for sample in samples] == [float(i) for i in range(11)]
    assert all(sample.image_bytes.startswith(PNG_MAGIC) for sample in samples)
    assert (samples[0].width, samples[0].height) == (64, 36)
    assert orchestrator.state is PipelineState.COMPLETE
    assert orchestrator.state_history == SUCCESS_HISTORY
    assert orchestrator.held_resources == 0
    assert decoders.created[0].closed
    assert encoder_backend.opened == []


def test_extract_frames_caps_width(fast_config, decoders, encoder_backend) -> None:
    cfg = fast_config.with_capture(max_extract_width=32)
    orchestrator = _orchestrator(cfg, decoders, encoder_backend)

    samples = asyncio.run(orchestrator.extract_frames(make_source(1.0, width=64, height=36)))

    assert (samples[0].width, samples[0].height) == (32, 18)


def test_compress_never_upscales(fast_config, decoders, encoder_backend) -> None:
    orchestrator = _orchestrator(fast_config, decoders, encoder_backend)

    artifact = asyncio.run(orchestrator.compress(make_source(2.0, width=48, height=27)))

    assert (artifact.width, artifact.height) == (48, 27)
    assert encoder_backend.opened == [("vp9", 48, 27, 10.0)]
    assert artifact.frame_count == 21
    assert abs(artifact.duration_seconds - 2.0) <= _tolerance(fast_config)
    assert artifact.mime_type == "video/webm"
    assert artifact.suggested_name == "compressed.webm"
    assert artifact.codec == "vp9"
    assert orchestrator.state_history == SUCCESS_HISTORY
    assert orchestrator.held_resources == 0
    assert encoder_backend.sinks[0].finished
    assert orchestrator.report["sources"][0]["native_width"] == 48


def test_compress_scales_to_target_width(fast_config, decoders, encoder_backend) -> None:
    cfg = fast_config.with_capture(target_width=32)
    orchestrator = _orchestrator(cfg, decoders, encoder_backend)

    artifact = asyncio.run(orchestrator.compress(make_source(1.0, width=64, height=36)))

    assert (artifact.width, artifact.height) == (32, 18)


def test_compress_uses_fallback_codec(fast_config, decoders) -> None:
    backend = FakeEncoderBackend(supported=["vp8"])
    orchestrator = _orchestrator(fast_config, decoders, backend)

    artifact = asyncio.run(orchestrator.compress(make_source(1.0)))

    assert artifact.codec == "vp8"


def test_compress_is_idempotent(fast_config, encoder_backend) -> None:
    data = make_source(3.0, marker=33)
    first = asyncio.run(_orchestrator(fast_config, DecoderFactory(), encoder_backend).compress(data))
    second = asyncio.run(_orchestrator(fast_config, DecoderFactory(), encoder_backend).compress(data))

    assert first.frame_count == second.frame_count
    assert first.duration_seconds == second.duration_seconds
    assert first.data == second.data


def test_compress_in_paced_mode(fast_config, decoders, encoder_backend) -> None:
    encoder = fast_config.encoder.model_copy(update={"feed_mode": "paced"})
    cfg = fast_config.model_copy(update={"encoder": encoder})
    orchestrator = _orchestrator(cfg, decoders, encoder_backend)

    artifact = asyncio.run(orchestrator.compress(make_source(0.5, marker=90)))

    assert artifact.frame_count > 0
    assert set(artifact.data) <= {0, 90}
    assert orchestrator.state is PipelineState.COMPLETE
    assert orchestrator.held_resources == 0


def test_merge_concatenates_in_order(fast_config, decoders, encoder_backend) -> None:
    orchestrator = _orchestrator(fast_config, decoders, encoder_backend)
    sources = [make_source(5.0, marker=10), make_source(3.0, marker=200)]

    artifact = asyncio.run(orchestrator.merge(sources, origin_refs=["a.mp4", "b.mp4"]))

    assert abs(artifact.duration_seconds - 8.0) <= _tolerance(fast_config)
    payload = list(artifact.data)
    assert payload == [10] * 50 + [200] * 31
    assert artifact.suggested_name == "merged.webm"
    assert len(encoder_backend.opened) == 1
    assert orchestrator.held_resources == 0
    assert all(decoder.closed for decoder in decoders.created)
    assert [s["origin_ref"] for s in orchestrator.report["sources"]] == ["a.mp4", "b.mp4"]


def test_merge_first_canvas_letterboxes_later_sources(fast_config, decoders, encoder_backend) -> None:
    orchestrator = _orchestrator(fast_config, decoders, encoder_backend)
    sources = [make_source(1.0, width=64, height=36, marker=10), make_source(1.0, width=40, height=48, marker=200)]

    artifact = asyncio.run(orchestrator.merge(sources))

    assert (artifact.width, artifact.height) == (64, 36)
    assert encoder_backend.opened[0][1:3] == (64, 36)
    assert encoder_backend.sinks[0].frames[-1][0, 0, 0] == 0
    assert encoder_backend.sinks[0].frames[-1][18, 32, 0] == 200


def test_merge_max_canvas(fast_config, decoders, encoder_backend) -> None:
    cfg = fast_config.with_capture(merge_canvas="max")
    orchestrator = _orchestrator(cfg, decoders, encoder_backend)
    sources = [make_source(1.0, width=64, height=36), make_source(1.0, width=40, height=48)]

    artifact = asyncio.run(orchestrator.merge(sources))

    assert (artifact.width, artifact.height) == (64, 48)


def test_merge_requires_sources(fast_config, decoders, encoder_backend) -> None:
    orchestrator = _orchestrator(fast_config, decoders, encoder_backend)

    with pytest.raises(ValueError):
        asyncio.run(orchestrator.merge([]))
    with pytest.raises(ValueError):
        asyncio.run(orchestrator.merge([make_source(1.0)], origin_refs=["a", "b"]))
    assert orchestrator.state is PipelineState.IDLE


def test_merge_progress_spans_all_sources(fast_config, decoders, encoder_backend) -> None:
    events = []
    orchestrator = _orchestrator(
        fast_config, decoders, encoder_backend, progress_callback=lambda *event: events.append(event)
    )

    asyncio.run(orchestrator.merge([make_source(1.0), make_source(2.0)]))

    assert {stage for stage, _, _ in events} == {"merge"}
    assert [current for _, current, _ in events] == list(range(1, len(events) + 1))
    assert events[-1][1] == events[-1][2] == len(events)


def test_seek_timeout_fails_and_releases(fast_config, decoders, encoder_backend) -> None:
    cfg = fast_config.model_copy(
        update={"timing": fast_config.timing.model_copy(update={"seek_timeout_seconds": 0.05})}
    )
    orchestrator = _orchestrator(cfg, decoders, encoder_backend)

    with pytest.raises(SeekTimeoutError):
        asyncio.run(orchestrator.compress(make_source(5.0, hang_at=1.0)))

    assert orchestrator.state is PipelineState.FAILED
    assert orchestrator.failure.kind == "SeekTimeout"
    assert orchestrator.held_resources == 0
    assert decoders.created[0].closed
    assert encoder_backend.sinks[0].aborted
    assert not encoder_backend.sinks[0].finished


def test_decode_error_fails_extraction(fast_config, decoders, encoder_backend) -> None:
    orchestrator = _orchestrator(fast_config, decoders, encoder_backend)

    with pytest.raises(DecodeInterruptedError):
        asyncio.run(orchestrator.extract_frames(make_source(5.0, fail_at=3.0)))

    assert orchestrator.failure.kind == "DecodeInterrupted"
    assert orchestrator.held_resources == 0


def test_codec_unavailable_before_capture(fast_config, decoders) -> None:
    orchestrator = _orchestrator(fast_config, decoders, FakeEncoderBackend(supported=[]))

    with pytest.raises(CodecUnavailableError):
        asyncio.run(orchestrator.compress(make_source(2.0)))

    assert decoders.created[0].seeks == []
    assert orchestrator.state_history == [
        PipelineState.IDLE,
        PipelineState.METADATA_RESOLVED,
        PipelineState.FAILED,
    ]
    assert orchestrator.failure.kind == "CodecUnavailable"


def test_flush_failure_returns_nothing(fast_config, decoders) -> None:
    orchestrator = _orchestrator(fast_config, decoders, FakeEncoderBackend(fail_flush=True))

    with pytest.raises(EncodeFlushError):
        asyncio.run(orchestrator.compress(make_source(1.0)))

    assert orchestrator.failure.kind == "EncodeFlushFailed"
    assert PipelineState.FINALIZING in orchestrator.state_history
    assert orchestrator.held_resources == 0


def test_unsupported_input(fast_config, decoders, encoder_backend) -> None:
    orchestrator = _orchestrator(fast_config, decoders, encoder_backend)

    with pytest.raises(UnsupportedFormatError):
        asyncio.run(orchestrator.compress(b"\x00\x01not-a-video"))

    assert orchestrator.state_history == [PipelineState.IDLE, PipelineState.FAILED]
    assert orchestrator.failure.kind == "UnsupportedFormat"
    assert orchestrator.held_resources == 0


def test_merge_with_unsupported_second_source(fast_config, decoders, encoder_backend) -> None:
    orchestrator = _orchestrator(fast_config, decoders, encoder_backend)

    with pytest.raises(UnsupportedFormatError):
        asyncio.run(orchestrator.merge([make_source(1.0), b"garbage"]))

    assert all(decoder.closed for decoder in decoders.created)
    assert encoder_backend.opened == []


def test_cancellation_between_seeks(fast_config, decoders, encoder_backend) -> None:
    token = CancellationToken()

    def on_progress(stage: str, current: int, total: int) -> None:
        if current == 3:
            token.cancel("stopped by user")

    orchestrator = _orchestrator(
        fast_config, decoders, encoder_backend, cancel_token=token, progress_callback=on_progress
    )

    with pytest.raises(CaptureCancelledError):
        asyncio.run(orchestrator.compress(make_source(5.0)))

    assert len(decoders.created[0].seeks) == 3
    assert orchestrator.failure.kind == "Cancelled"
    assert orchestrator.held_resources == 0


def test_orchestrator_runs_once(fast_config, decoders, encoder_backend) -> None:
    orchestrator = _orchestrator(fast_config, decoders, encoder_backend)
    asyncio.run(orchestrator.extract_frames(make_source(1.0)))

    with pytest.raises(RuntimeError):
        asyncio.run(orchestrator.extract_frames(make_source(1.0)))
    assert orchestrator.state is PipelineState.COMPLETE


def test_compress_video_helper(fast_config, decoders, encoder_backend) -> None:
    artifact = asyncio.run(
        compress_video(make_source(1.0), fast_config, decoder_factory=decoders, encoder_backend=encoder_backend)
    )

    assert artifact.frame_count == 11


def test_extract_height_rounds_half_up(fast_config, decoders, encoder_backend) -> None:
    cfg = fast_config.with_capture(max_extract_width=2)
    orchestrator = _orchestrator(cfg, decoders, encoder_backend)

    samples = asyncio.run(orchestrator.extract_frames(make_source(1.0, width=4, height=5)))

    assert (samples[0].width, samples[0].height) == (2, 3)

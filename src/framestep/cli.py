"""framestep Typer CLI，便于在命令行触发压缩、抽帧与合并。"""

from __future__ import annotations

import asyncio
import json
import mimetypes
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import typer
from pydantic import ValidationError

from framestep.core import CaptureError, PipelineConfig, load_config, setup_logging
from framestep.pipeline import PipelineOrchestrator
from framestep.source import OpenCVDecoder, SourceHandle

app = typer.Typer(help="framestep 开发 CLI")

VIDEO_SUFFIXES = {".mp4", ".m4v", ".mov", ".webm", ".mkv", ".avi", ".ogv"}


@app.callback()
def main() -> None:
    """framestep 顶层 CLI，占位以展示子命令列表。"""

    return None


def _resolve_config(config_path: Optional[Path]) -> PipelineConfig:
    return load_config(config_path) if config_path else load_config()


def _apply_capture_overrides(cfg: PipelineConfig, **updates) -> PipelineConfig:
    try:
        return cfg.with_capture(**updates)
    except ValidationError as exc:
        fields = ", ".join(str(err["loc"][-1]) for err in exc.errors())
        raise typer.BadParameter(f"参数取值无效：{fields}") from exc


def _decoder_factory(paths: Sequence[Path]) -> Callable[[], OpenCVDecoder]:
    """按输入顺序为每个源创建解码器，临时文件沿用原始后缀。"""

    suffixes = iter([path.suffix or ".mp4" for path in paths])
    return lambda: OpenCVDecoder(suffix=next(suffixes))


def _apply_encoder_overrides(cfg: PipelineConfig, *, feed_mode: Optional[str]) -> PipelineConfig:
    if not feed_mode:
        return cfg
    if feed_mode not in ("channel", "paced"):
        raise typer.BadParameter("--feed-mode 仅支持 channel/paced", param_hint="--feed-mode")
    encoder = cfg.encoder.model_copy(update={"feed_mode": feed_mode})
    return cfg.model_copy(update={"encoder": encoder})


def _read_video(path: Path) -> bytes:
    mime, _ = mimetypes.guess_type(path.name)
    if path.suffix.lower() not in VIDEO_SUFFIXES and not (mime or "").startswith("video/"):
        raise typer.BadParameter(f"{path.name} 不是视频文件", param_hint="video")
    return path.read_bytes()


def _exit_on_failure(exc: CaptureError) -> typer.Exit:
    typer.echo(f"处理失败：{exc.reason}", err=True)
    return typer.Exit(code=1)


def _format_sources(report: dict) -> str:
    sources = report.get("sources") or []
    parts = [f"{s['native_width']}x{s['native_height']} {s['duration_seconds']:.2f}s" for s in sources]
    return ", ".join(parts)


@app.command("probe")
def probe_cmd(
    video: Path = typer.Argument(..., exists=True, resolve_path=True, help="待检查的视频路径"),
    log_level: str = typer.Option("INFO", "--log-level", help="日志级别"),
) -> None:
    """打印视频元数据（分辨率与时长）。"""

    setup_logging(log_level)
    data = _read_video(video)

    async def _probe() -> dict:
        handle = SourceHandle(OpenCVDecoder(suffix=video.suffix or ".mp4"), origin_ref=video.name)
        try:
            return (await handle.open(data)).to_dict()
        finally:
            handle.release()

    try:
        payload = asyncio.run(_probe())
    except CaptureError as exc:
        raise _exit_on_failure(exc) from exc
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@app.command("compress")
def compress_cmd(
    video: Path = typer.Argument(..., exists=True, resolve_path=True, help="待压缩视频路径"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="输出文件或目录，默认写入 output_root"),
    width: Optional[int] = typer.Option(None, "--width", help="目标宽度（不会超过原始宽度）"),
    fps: Optional[float] = typer.Option(None, "--fps", help="目标帧率"),
    codec: Optional[str] = typer.Option(None, "--codec", help="首选 codec，如 vp9/vp8/h264"),
    fallback_codec: Optional[str] = typer.Option(None, "--fallback-codec", help="回退 codec"),
    feed_mode: Optional[str] = typer.Option(None, "--feed-mode", help="channel 或 paced"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="自定义配置文件"),
    log_level: str = typer.Option("INFO", "--log-level", help="日志级别"),
) -> None:
    """按目标宽度/帧率重新采样并编码单个视频。"""

    setup_logging(log_level)
    cfg = _resolve_config(config_path)
    cfg = _apply_capture_overrides(
        cfg,
        target_width=width,
        target_frame_rate=fps,
        preferred_codec=codec,
        fallback_codec=fallback_codec,
    )
    cfg = _apply_encoder_overrides(cfg, feed_mode=feed_mode)
    data = _read_video(video)

    orchestrator = PipelineOrchestrator(cfg, decoder_factory=_decoder_factory([video]))
    try:
        artifact = asyncio.run(orchestrator.compress(data, origin_ref=video.name))
    except CaptureError as exc:
        raise _exit_on_failure(exc) from exc

    target = artifact.write_to(output or cfg.output_root / artifact.suggested_name)
    typer.echo(
        f"原始：{_format_sources(orchestrator.report)}，输出：{artifact.width}x{artifact.height} "
        f"{artifact.duration_seconds:.2f}s（{artifact.frame_count} 帧，{artifact.codec}）"
    )
    typer.echo(f"压缩完成：{target}")


@app.command("extract-frames")
def extract_frames_cmd(
    video: Path = typer.Argument(..., exists=True, resolve_path=True, help="待抽帧视频路径"),
    output_dir: Optional[Path] = typer.Option(None, "--output", "-o", help="PNG 输出目录"),
    interval: Optional[float] = typer.Option(None, "--interval", help="抽帧间隔（秒）"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="自定义配置文件"),
    log_level: str = typer.Option("INFO", "--log-level", help="日志级别"),
) -> None:
    """按固定间隔抽取 PNG 帧，末帧总会被包含。"""

    setup_logging(log_level)
    cfg = _resolve_config(config_path)
    cfg = _apply_capture_overrides(cfg, sampling_interval_seconds=interval)
    data = _read_video(video)

    orchestrator = PipelineOrchestrator(cfg, decoder_factory=_decoder_factory([video]))
    try:
        samples = asyncio.run(orchestrator.extract_frames(data, origin_ref=video.name))
    except CaptureError as exc:
        raise _exit_on_failure(exc) from exc

    target_dir = output_dir or cfg.output_root / f"frames_{video.stem}"
    target_dir.mkdir(parents=True, exist_ok=True)
    for index, sample in enumerate(samples):
        (target_dir / sample.suggested_name(index)).write_bytes(sample.image_bytes)
    typer.echo(f"间隔：{cfg.capture.sampling_interval_seconds}s，原始：{_format_sources(orchestrator.report)}")
    typer.echo(f"抽取 {len(samples)} 帧，输出到 {target_dir}")


@app.command("merge")
def merge_cmd(
    videos: List[Path] = typer.Argument(..., exists=True, resolve_path=True, help="按顺序合并的视频"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="输出文件或目录"),
    fps: Optional[float] = typer.Option(None, "--fps", help="输出帧率"),
    canvas: Optional[str] = typer.Option(None, "--canvas", help="画布尺寸策略：first 或 max"),
    codec: Optional[str] = typer.Option(None, "--codec", help="首选 codec"),
    feed_mode: Optional[str] = typer.Option(None, "--feed-mode", help="channel 或 paced"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="自定义配置文件"),
    log_level: str = typer.Option("INFO", "--log-level", help="日志级别"),
) -> None:
    """把多个视频按给定顺序拼接为一个输出，共用同一个编码会话。"""

    setup_logging(log_level)
    cfg = _resolve_config(config_path)
    if canvas is not None and canvas not in ("first", "max"):
        raise typer.BadParameter("--canvas 仅支持 first/max", param_hint="--canvas")
    cfg = _apply_capture_overrides(cfg, target_frame_rate=fps, merge_canvas=canvas, preferred_codec=codec)
    cfg = _apply_encoder_overrides(cfg, feed_mode=feed_mode)
    payloads = [_read_video(path) for path in videos]

    orchestrator = PipelineOrchestrator(cfg, decoder_factory=_decoder_factory(videos))
    try:
        artifact = asyncio.run(orchestrator.merge(payloads, origin_refs=[path.name for path in videos]))
    except CaptureError as exc:
        raise _exit_on_failure(exc) from exc

    target = artifact.write_to(output or cfg.output_root / artifact.suggested_name)
    typer.echo(
        f"合并 {len(videos)} 个视频：{artifact.width}x{artifact.height} "
        f"{artifact.duration_seconds:.2f}s（{artifact.frame_count} 帧）"
    )
    typer.echo(f"合并完成：{target}")


if __name__ == "__main__":  # pragma: no cover
    app()

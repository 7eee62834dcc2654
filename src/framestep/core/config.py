"""配置加载工具，集中管理仓内/环境参数。"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Dict, Literal, Mapping, MutableMapping, Optional, Sequence, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .paths import OUTPUT_ENV_KEY, resolve_output_root

CONFIG_ENV_KEY = "FRAMESTEP_CONFIG_PATH"


class CaptureConfig(BaseModel):
    """调用方提供的采集参数，默认值与原网页工具保持一致。"""

    target_width: int = Field(720, gt=0)
    target_frame_rate: float = Field(24.0, gt=0)
    sampling_interval_seconds: float = Field(1.0, gt=0)
    preferred_codec: str = "vp9"
    fallback_codec: Optional[str] = None
    max_extract_width: int = Field(1280, gt=0)
    max_merge_width: int = Field(1280, gt=0)
    merge_canvas: Literal["first", "max"] = "first"

    @property
    def frame_interval(self) -> float:
        return 1.0 / self.target_frame_rate


class TimingConfig(BaseModel):
    """各类等待与超时；settle 至少 200ms，避免截断最后几帧。"""

    seek_timeout_seconds: float = Field(15.0, gt=0)
    pacing_ratio: float = Field(0.9, ge=0, le=1)
    settle_delay_seconds: float = Field(0.2, ge=0.2)
    extraction_delay_seconds: float = Field(0.04, ge=0)
    flush_timeout_seconds: float = Field(30.0, gt=0)


class EncoderConfig(BaseModel):
    """编码阶段参数，feed_mode 决定光栅如何送入编码器。"""

    feed_mode: Literal["channel", "paced"] = "channel"
    channel_capacity: int = Field(8, ge=1)
    ffmpeg_binary: str = "ffmpeg"
    video_bitrate: str = "2M"
    chunk_size: int = Field(65536, gt=0)


class PipelineConfig(BaseModel):
    """聚合各阶段配置，并包含共享路径。"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    output_root: Path = Field(default_factory=resolve_output_root)
    raw: Dict[str, Any] = Field(default_factory=dict, description="原始配置字典，便于调试。")

    def model_post_init(self, __context: Any) -> None:  # type: ignore[override]
        # 保留原始配置便于后续 diff/日志输出
        if not self.raw:
            self.raw = self.to_raw_dict()

    def to_raw_dict(self) -> Dict[str, Any]:
        """导出基础 dict，供日志输出使用。"""

        return {
            "capture": self.capture.model_dump(),
            "timing": self.timing.model_dump(),
            "encoder": self.encoder.model_dump(),
            "output_root": str(self.output_root),
        }

    def with_capture(self, **updates: Any) -> "PipelineConfig":
        """返回覆盖了部分 capture 字段的新配置，None 值忽略（供 CLI 使用）。"""

        changes = {key: value for key, value in updates.items() if value is not None}
        if not changes:
            return self
        capture = CaptureConfig.model_validate({**self.capture.model_dump(), **changes})
        return self.model_copy(update={"capture": capture})


def _default_config_path() -> Path:
    return Path(__file__).resolve().parents[3] / "configs" / "baseline.yaml"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"配置文件 {path} 内容需为字典")
        return data


ENV_OVERRIDE_MAP: Dict[str, Tuple[Sequence[str], Callable[[str], Any]]] = {
    "FRAMESTEP_TARGET_WIDTH": (("capture", "target_width"), int),
    "FRAMESTEP_TARGET_FPS": (("capture", "target_frame_rate"), float),
    "FRAMESTEP_SAMPLING_INTERVAL": (("capture", "sampling_interval_seconds"), float),
    "FRAMESTEP_SEEK_TIMEOUT": (("timing", "seek_timeout_seconds"), float),
    "FRAMESTEP_FEED_MODE": (("encoder", "feed_mode"), str),
    "FRAMESTEP_FFMPEG_BINARY": (("encoder", "ffmpeg_binary"), str),
}


def _apply_env_overrides(data: MutableMapping[str, Any], env: Mapping[str, str]) -> None:
    for env_key, (path, caster) in ENV_OVERRIDE_MAP.items():
        if env_key in env:
            _set_nested_value(data, path, caster(env[env_key]))


def _set_nested_value(target: MutableMapping[str, Any], path: Sequence[str], value: Any) -> None:
    cursor: MutableMapping[str, Any] = target
    *parents, last = path
    for key in parents:
        if key not in cursor or not isinstance(cursor[key], MutableMapping):
            cursor[key] = {}
        cursor = cursor[key]  # type: ignore[assignment]
    cursor[last] = value


def load_config(path: str | Path | None = None, *, env: Mapping[str, str] | None = None) -> PipelineConfig:
    """加载配置：优先显式路径，其次环境变量，最后回退默认 baseline。"""

    env_map = env if env is not None else os.environ
    config_path = path or env_map.get(CONFIG_ENV_KEY)
    target_path = Path(config_path).expanduser() if config_path else _default_config_path()
    data = _load_yaml(target_path)
    _apply_env_overrides(data, env_map)

    output_override = env_map.get(OUTPUT_ENV_KEY)
    if output_override:
        data["output_root"] = str(Path(output_override).expanduser().resolve())

    cfg = PipelineConfig.model_validate({**data, "raw": data})
    return cfg

"""Codec 描述与有序回退链。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from framestep.core import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CodecDescriptor:
    """单个可尝试的编码方案。

    - name: 对外标识（配置里写的名字，如 vp9）。
    - encoder: ffmpeg 编码器名。
    - muxer/container/extension: 输出封装，container 决定 `video/<container>`。
    - options: 额外的 ffmpeg 输出参数。
    """

    name: str
    encoder: str
    muxer: str
    container: str
    extension: str
    options: Dict[str, str] = field(default_factory=dict)

    @property
    def mime_type(self) -> str:
        return f"video/{self.container}"


CODECS: Dict[str, CodecDescriptor] = {
    "vp9": CodecDescriptor(
        name="vp9",
        encoder="libvpx-vp9",
        muxer="webm",
        container="webm",
        extension="webm",
        options={"deadline": "realtime", "cpu-used": "8"},
    ),
    "vp8": CodecDescriptor(
        name="vp8",
        encoder="libvpx",
        muxer="webm",
        container="webm",
        extension="webm",
        options={"deadline": "realtime"},
    ),
    "av1": CodecDescriptor(
        name="av1",
        encoder="libaom-av1",
        muxer="webm",
        container="webm",
        extension="webm",
        options={"cpu-used": "8"},
    ),
    "h264": CodecDescriptor(
        name="h264",
        encoder="libx264",
        muxer="matroska",
        container="x-matroska",
        extension="mkv",
        options={"preset": "veryfast"},
    ),
}

# 未指定 fallback 时使用的实现默认值
DEFAULT_CODEC = "vp8"


def get_codec(name: str) -> Optional[CodecDescriptor]:
    return CODECS.get(name.strip().lower())


def resolve_codec_chain(preferred: str, fallback: Optional[str] = None) -> List[CodecDescriptor]:
    """按 preferred -> fallback（缺省为实现默认）构建去重后的尝试顺序。

    未知名字会被跳过并记录警告；返回空列表时由会话抛出 CodecUnavailableError。
    """

    chain: List[CodecDescriptor] = []
    for name in (preferred, fallback or DEFAULT_CODEC):
        descriptor = get_codec(name)
        if descriptor is None:
            logger.warning("Unknown codec '%s', skipped", name)
            continue
        if descriptor not in chain:
            chain.append(descriptor)
    return chain

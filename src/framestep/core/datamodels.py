"""核心数据结构定义，覆盖源描述、帧样本、编码块与最终产物。"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict


@dataclass(frozen=True, slots=True)
class SourceDescriptor:
    """单个输入源解析后的元数据，元数据确定后不可变。

    - origin_ref: 不透明的来源标识（文件名或 `source-<n>`）。
    - native_width/native_height: 原始分辨率。
    - duration_seconds: 时长（秒）。
    """

    origin_ref: str
    native_width: int
    native_height: int
    duration_seconds: float

    @property
    def aspect(self) -> float:
        return self.native_height / self.native_width

    def derived_size(self, target_width: int) -> tuple[int, int]:
        """按目标宽度计算输出尺寸：宽度不超过原生宽度，高度保持宽高比。"""

        width = max(1, min(int(target_width), self.native_width))
        # .5 一律向上取整，不用 round() 的银行家舍入
        height = max(1, int(math.floor(width * self.native_height / self.native_width + 0.5)))
        return width, height

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class FrameSample:
    """抽帧结果：时间戳 + PNG 字节，彼此独立。"""

    timestamp_seconds: float
    image_bytes: bytes
    width: int
    height: int

    def suggested_name(self, index: int) -> str:
        return f"frame-{index + 1}-t{self.timestamp_seconds:.2f}.png"


@dataclass(frozen=True, slots=True)
class EncodedChunk:
    """编码会话按顺序产出的字节片段，只允许追加，不允许重排。"""

    sequence: int
    timestamp_seconds: float
    data: bytes


@dataclass(frozen=True, slots=True)
class OutputArtifact:
    """压缩/合并的最终产物，组装后不再修改。"""

    data: bytes
    mime_type: str
    suggested_name: str
    duration_seconds: float
    frame_count: int
    width: int
    height: int
    codec: str

    @property
    def size(self) -> int:
        return len(self.data)

    def write_to(self, path: str | Path) -> Path:
        """写入磁盘；传入目录时使用 suggested_name。"""

        target = Path(path)
        if target.is_dir():
            target = target / self.suggested_name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.data)
        return target

    def summary(self) -> Dict[str, Any]:
        return {
            "mime_type": self.mime_type,
            "suggested_name": self.suggested_name,
            "duration_seconds": self.duration_seconds,
            "frame_count": self.frame_count,
            "width": self.width,
            "height": self.height,
            "codec": self.codec,
            "bytes": self.size,
        }


class PipelineState(str, Enum):
    IDLE = "idle"
    METADATA_RESOLVED = "metadata_resolved"
    CAPTURING = "capturing"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class FailureReason:
    """FAILED 状态附带的结构化原因，交给调用方展示。"""

    kind: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}" if self.message else self.kind

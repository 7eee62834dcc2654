"""核心模块入口，聚合数据模型、错误类型与配置加载工具供各组件复用。"""

from .datamodels import (
    EncodedChunk,
    FailureReason,
    FrameSample,
    OutputArtifact,
    PipelineState,
    SourceDescriptor,
)
from .config import CaptureConfig, EncoderConfig, PipelineConfig, TimingConfig, load_config
from .errors import (
    CaptureCancelledError,
    CaptureError,
    CodecUnavailableError,
    DecodeInterruptedError,
    EncodeFlushError,
    SeekTimeoutError,
    UnsupportedFormatError,
)
from .logging_utils import get_logger, setup_logging
from .paths import resolve_output_root

__all__ = [
    "EncodedChunk",
    "FailureReason",
    "FrameSample",
    "OutputArtifact",
    "PipelineState",
    "SourceDescriptor",
    "CaptureConfig",
    "EncoderConfig",
    "PipelineConfig",
    "TimingConfig",
    "load_config",
    "CaptureCancelledError",
    "CaptureError",
    "CodecUnavailableError",
    "DecodeInterruptedError",
    "EncodeFlushError",
    "SeekTimeoutError",
    "UnsupportedFormatError",
    "get_logger",
    "setup_logging",
    "resolve_output_root",
]

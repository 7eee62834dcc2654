"""编排层：状态机与三种操作（压缩、抽帧、合并）。"""

from .orchestrator import (
    DecoderFactory,
    PipelineOrchestrator,
    ProgressCallback,
    compress_video,
    extract_video_frames,
    merge_videos,
)
from .state import TERMINAL_STATES, PipelineStateMachine

__all__ = [
    "DecoderFactory",
    "PipelineOrchestrator",
    "ProgressCallback",
    "compress_video",
    "extract_video_frames",
    "merge_videos",
    "TERMINAL_STATES",
    "PipelineStateMachine",
]

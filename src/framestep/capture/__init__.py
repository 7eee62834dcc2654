"""时间戳步进与协作式取消。"""

from .stepper import CancellationToken, FrameHandler, SeekStepper, build_timestamps

__all__ = ["CancellationToken", "FrameHandler", "SeekStepper", "build_timestamps"]

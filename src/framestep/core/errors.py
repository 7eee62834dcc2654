"""采集流水线的错误分类，所有失败最终都以这些异常冒泡到编排器。"""

from __future__ import annotations

from .datamodels import FailureReason


class CaptureError(RuntimeError):
    """流水线失败基类，`kind` 对应对外暴露的失败原因名称。"""

    kind = "CaptureError"

    @property
    def reason(self) -> FailureReason:
        return FailureReason(kind=self.kind, message=str(self))


class UnsupportedFormatError(CaptureError):
    """源无法打开或元数据退化（宽高为 0、时长非法），不重试。"""

    kind = "UnsupportedFormat"


class SeekTimeoutError(CaptureError):
    """单次 seek 在超时内没有完成信号，整次操作失败。"""

    kind = "SeekTimeout"


class DecodeInterruptedError(CaptureError):
    """解码器报告了错误而不是超时。"""

    kind = "DecodeInterrupted"


class CodecUnavailableError(CaptureError):
    """编码链上的所有 codec 都无法构造，发生在采集任何帧之前。"""

    kind = "CodecUnavailable"


class EncodeFlushError(CaptureError):
    """stop/flush 未完成或编码进程异常退出，已产生的字节全部丢弃。"""

    kind = "EncodeFlushFailed"


class CaptureCancelledError(CaptureError):
    """调用方通过 CancellationToken 主动取消。"""

    kind = "Cancelled"

"""输入源：解码后端协议、OpenCV 实现与 SourceHandle。"""

from .decoders import DecodeBackend, DecoderMetadata, DecoderOpenError, DecoderSeekError, OpenCVDecoder
from .handle import DEFAULT_SEEK_TIMEOUT, SourceHandle

__all__ = [
    "DecodeBackend",
    "DecoderMetadata",
    "DecoderOpenError",
    "DecoderSeekError",
    "OpenCVDecoder",
    "DEFAULT_SEEK_TIMEOUT",
    "SourceHandle",
]

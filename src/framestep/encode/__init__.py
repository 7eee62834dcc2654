"""编码层：codec 回退链、编码后端接口、ffmpeg 实现与编码会话。"""

from .backend import ChunkCallback, EncoderBackend, EncoderConstructionError, EncoderSink
from .codecs import CODECS, DEFAULT_CODEC, CodecDescriptor, get_codec, resolve_codec_chain
from .ffmpeg_backend import FFmpegEncoderBackend, list_encoders
from .session import EncoderSession, FeedMode

__all__ = [
    "ChunkCallback",
    "EncoderBackend",
    "EncoderConstructionError",
    "EncoderSink",
    "CODECS",
    "DEFAULT_CODEC",
    "CodecDescriptor",
    "get_codec",
    "resolve_codec_chain",
    "FFmpegEncoderBackend",
    "list_encoders",
    "EncoderSession",
    "FeedMode",
]

"""framestep：逐帧 seek 的视频采集流水线（压缩、抽帧、合并）。"""

__version__ = "0.1.0"

"""光栅层：离屏画布与抽帧采样器。"""

from .sampler import FrameSampler
from .surface import RasterSurface

__all__ = ["FrameSampler", "RasterSurface"]

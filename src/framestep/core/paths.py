"""路径工具：集中处理输出目录，方便未来迁移。"""

from __future__ import annotations

import os
from pathlib import Path


OUTPUT_ENV_KEY = "FRAMESTEP_OUTPUT_ROOT"


def resolve_output_root(default: Path | None = None) -> Path:
    """根据环境变量或默认值确定产物输出目录。"""

    env_value = os.getenv(OUTPUT_ENV_KEY)
    if env_value:
        return Path(env_value).expanduser().resolve()
    if default is not None:
        return default.expanduser().resolve()
    # 默认回退到当前工作目录下的 output，保持简单可用
    return (Path.cwd() / "output").resolve()

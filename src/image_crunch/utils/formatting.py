"""展示用的格式化工具。"""

from __future__ import annotations

import re

_SEPARATORS = re.compile(r"[\\/]")
_UNITS = ("B", "KB", "MB", "GB")


def display_name(path: str) -> str:
    """返回路径的最后一段，兼容 / 与 \\ 两种分隔符。"""

    parts = [part for part in _SEPARATORS.split(path) if part]
    return parts[-1] if parts else path


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 B"
    value = float(size)
    index = 0
    while value >= 1024 and index < len(_UNITS) - 1:
        value /= 1024
        index += 1
    text = f"{value:.1f}".rstrip("0").rstrip(".")
    return f"{text} {_UNITS[index]}"


def format_percent(value: float) -> str:
    return f"{value:.1f}%"

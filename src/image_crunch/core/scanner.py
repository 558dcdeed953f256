"""文件扫描与筛选逻辑。"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, Sequence

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".tif", ".webp"}


def is_supported_image(path: Path) -> bool:
    return path.suffix.lower() in IMAGE_EXTENSIONS


def _iter_candidate_files(path: Path, recursive: bool) -> Iterator[Path]:
    """遍历路径下的所有文件。"""

    if path.is_file():
        yield path
        return

    if not path.is_dir():
        return

    iterator = path.rglob("*") if recursive else path.glob("*")
    for candidate in sorted(iterator, key=lambda x: str(x).lower()):
        if candidate.is_file():
            yield candidate


def expand_paths(raw_paths: Sequence[str], recursive: bool = True) -> list[str]:
    """将用户选择的文件/目录展开为受支持的图片绝对路径列表。

    目录递归展开，文件按扩展名过滤，结果去重并保持输入顺序。
    """

    collected: list[str] = []
    seen: set[Path] = set()

    for raw in raw_paths:
        if not raw or not raw.strip():
            continue
        root = Path(raw.strip()).expanduser().resolve()
        for candidate in _iter_candidate_files(root, recursive):
            if candidate in seen:
                continue
            seen.add(candidate)
            if not is_supported_image(candidate):
                continue
            collected.append(str(candidate))

    return collected

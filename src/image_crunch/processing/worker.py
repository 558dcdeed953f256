"""并发处理的工作单元。"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image

from image_crunch.core.config import ProcessingOptions
from image_crunch.core.models import ProcessingResult
from image_crunch.core.output_manager import ImageWriteError, save_image_file
from image_crunch.core.statistics import reduction_percent
from image_crunch.processing.image_loader import ImageLoadingError, load_image


@dataclass(slots=True)
class ConversionTask:
    """描述单个图片转换任务。"""

    source_path: Path
    dest_path: Path
    options: ProcessingOptions


def run_task(task: ConversionTask) -> ProcessingResult:
    """在工作进程中执行单个文件的加载、缩放与保存。"""

    source = str(task.source_path)
    destination = str(task.dest_path)

    try:
        original_size = task.source_path.stat().st_size
    except OSError as exc:
        return _failure(source, destination, f"无法读取文件: {exc}")

    try:
        loaded = load_image(task.source_path)
    except ImageLoadingError as exc:
        return _failure(source, destination, str(exc))

    resized: Optional[Image.Image] = None
    try:
        resized = apply_resize(loaded.image, task.options)
        save_image_file(
            resized,
            task.dest_path,
            task.options,
            exif=loaded.exif,
            icc_profile=loaded.icc_profile,
        )
    except ImageWriteError as exc:
        return _failure(source, destination, str(exc))
    finally:
        _close_if_needed(loaded.image, resized)

    try:
        output_size = task.dest_path.stat().st_size
    except OSError as exc:
        return _failure(source, destination, f"无法读取输出文件: {exc}")

    return ProcessingResult(
        original_path=source,
        output_path=destination,
        original_size=original_size,
        output_size=output_size,
        reduction_percent=reduction_percent(original_size, output_size),
        success=True,
    )


def apply_resize(image: Image.Image, options: ProcessingOptions) -> Image.Image:
    """按选项缩放：同时指定宽高时精确缩放，只指定一边时按比例缩放。"""

    width, height = options.resize_width, options.resize_height
    if width is None and height is None:
        return image
    if width is None:
        width = max(1, int(image.width * height / image.height))
    elif height is None:
        height = max(1, int(image.height * width / image.width))
    if (width, height) == image.size:
        return image
    return image.resize((width, height), Image.LANCZOS)


def _failure(source: str, destination: str, message: str) -> ProcessingResult:
    return ProcessingResult(
        original_path=source,
        output_path=destination,
        success=False,
        error=message,
    )


def _close_if_needed(*images: Optional[Image.Image]) -> None:
    closed: set[int] = set()
    for img in images:
        if img is not None and id(img) not in closed:
            closed.add(id(img))
            img.close()

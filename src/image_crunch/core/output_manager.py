"""输出路径决策与图像写入模块。"""

from __future__ import annotations

import logging
from itertools import count
from pathlib import Path
from typing import Any, Optional, Set

from PIL import Image

from image_crunch.core.config import ProcessingOptions
from image_crunch.core.exceptions import ItemError, SubmissionError

LOGGER = logging.getLogger(__name__)

PIL_FORMATS = {
    "webp": "WEBP",
    "jpeg": "JPEG",
    "png": "PNG",
    "gif": "GIF",
    "bmp": "BMP",
    "tiff": "TIFF",
}

# 支持写入 exif 参数的格式
EXIF_FORMATS = {"JPEG", "WEBP", "PNG"}


class ImageWriteError(ItemError):
    """输出写入失败。"""


class OutputManager:
    """负责输出目录与输出文件命名。

    输出文件名为 ``<原文件名>.<目标扩展名>``；同一批次内文件名重复时追加 ``_<n>``，
    磁盘上已存在的文件直接覆盖。
    """

    def __init__(self, output_dir: Path, options: ProcessingOptions) -> None:
        self.output_dir = output_dir.expanduser().resolve()
        self.options = options
        self._reserved: Set[Path] = set()
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SubmissionError(f"无法创建输出目录: {exc}") from exc

    def decide_destination(self, source_path: Path) -> Path:
        """为源文件分配输出路径。"""

        destination = self.output_dir / f"{source_path.stem}.{self.options.extension}"
        if destination in self._reserved:
            destination = self._generate_renamed_path(destination)
        self._reserved.add(destination)
        return destination

    def _generate_renamed_path(self, destination: Path) -> Path:
        stem = destination.stem
        suffix = destination.suffix

        for idx in count(1):
            candidate = destination.with_name(f"{stem}_{idx}{suffix}")
            if candidate not in self._reserved:
                return candidate

        # 理论上不会执行到此处
        return destination


def save_image_file(
    image: Image.Image,
    destination: Path,
    options: ProcessingOptions,
    exif: Optional[bytes] = None,
    icc_profile: Optional[bytes] = None,
) -> None:
    """按处理选项将 PIL Image 保存到磁盘。"""

    image_format = PIL_FORMATS.get(options.output_format)
    if not image_format:
        raise ImageWriteError(f"不支持的输出格式: {options.output_format}")

    image_to_save = _prepare_mode(image, image_format)
    save_params = _save_params(image_format, options)
    if options.keep_metadata:
        if exif and image_format in EXIF_FORMATS:
            save_params["exif"] = exif
        if icc_profile:
            save_params["icc_profile"] = icc_profile

    try:
        image_to_save.save(destination, format=image_format, **save_params)
    except (OSError, ValueError) as exc:
        raise ImageWriteError(f"写入文件失败: {destination}: {exc}") from exc
    finally:
        if image_to_save is not image:
            image_to_save.close()


def _save_params(image_format: str, options: ProcessingOptions) -> dict[str, Any]:
    if image_format == "JPEG":
        # JPEG 没有真正的无损模式，使用最高质量并关闭色度抽样。
        if options.is_lossless:
            return {"quality": 100, "subsampling": 0, "optimize": True}
        return {"quality": options.quality, "optimize": True}
    if image_format == "WEBP":
        if options.is_lossless:
            return {"lossless": True, "quality": 100, "method": 6}
        return {"quality": options.quality, "method": 6}
    if image_format == "PNG":
        return {"optimize": True}
    if image_format == "GIF":
        return {"optimize": True}
    if image_format == "TIFF":
        return {"compression": "tiff_lzw"}
    return {}


def _prepare_mode(image: Image.Image, image_format: str) -> Image.Image:
    has_alpha = image.mode in {"RGBA", "LA", "PA"} or (image.mode == "P" and "transparency" in image.info)

    if image_format == "JPEG":
        if image.mode in {"RGB", "L"}:
            return image
        if has_alpha:
            background = Image.new("RGB", image.size, (255, 255, 255))
            rgba = image.convert("RGBA")
            background.paste(rgba, mask=rgba.split()[-1])
            rgba.close()
            return background
        return image.convert("RGB")

    if image_format == "WEBP":
        if image.mode in {"RGB", "RGBA"}:
            return image
        return image.convert("RGBA" if has_alpha else "RGB")

    if image_format == "BMP":
        if image.mode in {"1", "L", "P", "RGB"}:
            return image
        return image.convert("RGB")

    if image.mode == "CMYK" and image_format in {"PNG", "GIF"}:
        return image.convert("RGB")

    return image

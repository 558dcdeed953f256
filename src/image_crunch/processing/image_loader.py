"""图片加载实现。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from image_crunch.core.exceptions import ItemError

LOGGER = logging.getLogger(__name__)


class ImageLoadingError(ItemError):
    """图片加载失败。"""


@dataclass(slots=True)
class LoadedImage:
    """加载后的图片及其原始元数据。"""

    image: Image.Image
    exif: Optional[bytes] = None
    icc_profile: Optional[bytes] = None


def load_image(path: Path) -> LoadedImage:
    """加载单张图片，保留 EXIF 与 ICC 数据供输出时选择性写回。

    返回值中的 Image 对象由调用者负责关闭。
    """

    try:
        with Image.open(path) as img:
            img.load()
            exif = img.info.get("exif")
            icc_profile = img.info.get("icc_profile")
            return LoadedImage(image=img.copy(), exif=exif, icc_profile=icc_profile)
    except (UnidentifiedImageError, OSError) as exc:
        LOGGER.debug("无法识别图像文件 %s: %s", path, exc)
        raise ImageLoadingError(f"无法加载图像: {path}") from exc

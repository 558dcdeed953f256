"""处理选项与输出目录配置。"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Optional

from image_crunch.core.exceptions import InvalidConfigurationError

OutputFormat = str  # webp | jpeg | png | gif | bmp | tiff
CompressionMode = str  # lossy | lossless

OUTPUT_FORMATS = ("webp", "jpeg", "png", "gif", "bmp", "tiff")
OUTPUT_EXTENSIONS = {
    "webp": "webp",
    "jpeg": "jpg",
    "png": "png",
    "gif": "gif",
    "bmp": "bmp",
    "tiff": "tiff",
}
COMPRESSION_MODES = ("lossy", "lossless")

MIN_QUALITY = 1
MAX_QUALITY = 100


@dataclass(slots=True)
class ProcessingOptions:
    """单次批处理使用的输出配置。"""

    output_format: OutputFormat = "webp"
    quality: int = 80
    resize_width: Optional[int] = None
    resize_height: Optional[int] = None
    keep_metadata: bool = False
    compression_mode: CompressionMode = "lossy"

    @property
    def resize_enabled(self) -> bool:
        return self.resize_width is not None or self.resize_height is not None

    @property
    def is_lossless(self) -> bool:
        return self.compression_mode == "lossless"

    @property
    def extension(self) -> str:
        return OUTPUT_EXTENSIONS[self.output_format]

    def to_payload(self) -> dict[str, Any]:
        """转换为发送给处理引擎的字典。"""

        return {
            "format": self.output_format,
            "quality": self.quality,
            "width": self.resize_width,
            "height": self.resize_height,
            "keep_metadata": self.keep_metadata,
            "compression": self.compression_mode,
        }


_OPTION_FIELDS = {item.name for item in fields(ProcessingOptions)}


def validate_options(options: ProcessingOptions) -> ProcessingOptions:
    """检查选项取值，非法时抛出 InvalidConfigurationError。"""

    if options.output_format not in OUTPUT_FORMATS:
        raise InvalidConfigurationError(f"不支持的输出格式: {options.output_format}")
    if options.compression_mode not in COMPRESSION_MODES:
        raise InvalidConfigurationError(f"未知的压缩模式: {options.compression_mode}")
    if isinstance(options.quality, bool) or not isinstance(options.quality, int):
        raise InvalidConfigurationError(f"质量必须为整数: {options.quality!r}")
    if not MIN_QUALITY <= options.quality <= MAX_QUALITY:
        raise InvalidConfigurationError(f"质量必须在 {MIN_QUALITY}~{MAX_QUALITY} 之间: {options.quality}")
    for name in ("resize_width", "resize_height"):
        value = getattr(options, name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise InvalidConfigurationError(f"缩放尺寸必须为正整数: {name}={value!r}")
    return options


class OptionsStore:
    """保存当前处理选项与输出目录，修改只能通过命名操作完成。"""

    def __init__(self, options: Optional[ProcessingOptions] = None, output_directory: str = "") -> None:
        self._options = validate_options(options or ProcessingOptions())
        self._output_directory = output_directory

    @property
    def options(self) -> ProcessingOptions:
        return self._options

    @property
    def output_directory(self) -> str:
        return self._output_directory

    def update(self, **changes: Any) -> ProcessingOptions:
        """合并部分字段。

        切换压缩模式时保留原有的 quality，无损模式下只是不再使用它。
        """

        unknown = set(changes) - _OPTION_FIELDS
        if unknown:
            raise InvalidConfigurationError(f"未知的选项字段: {', '.join(sorted(unknown))}")
        self._options = validate_options(replace(self._options, **changes))
        return self._options

    def set_resize_enabled(self, enabled: bool) -> ProcessingOptions:
        if enabled:
            return self._options
        return self.update(resize_width=None, resize_height=None)

    def set_output_directory(self, directory: str) -> None:
        self._output_directory = directory.strip()

    def reset(self) -> None:
        """恢复默认选项并清空输出目录。"""

        self._options = ProcessingOptions()
        self._output_directory = ""

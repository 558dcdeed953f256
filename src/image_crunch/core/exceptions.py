"""项目内使用的自定义异常定义。"""

from __future__ import annotations

from typing import Optional


class ImageCrunchError(Exception):
    """基础异常类型。"""


class InvalidConfigurationError(ImageCrunchError):
    """处理选项不合法时抛出。"""


class ValidationError(ImageCrunchError):
    """启动任务前的前置条件不满足。

    ``field`` 标明具体违反的条件，例如 ``"items"`` 或 ``"output_directory"``。
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class SessionBusyError(ValidationError):
    """已有任务在处理中时再次启动。"""

    def __init__(self, message: str = "已有任务正在处理中") -> None:
        super().__init__(message, field="session")


class SubmissionError(ImageCrunchError):
    """处理引擎拒绝或未能执行批处理请求。"""


class ItemError(ImageCrunchError):
    """单个文件处理失败，不影响整个批次。"""


class NotificationError(ImageCrunchError):
    """桌面通知发送失败，仅记录日志。"""

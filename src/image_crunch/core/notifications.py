"""批处理完成后的桌面通知。"""

from __future__ import annotations

import logging

from image_crunch.core.exceptions import NotificationError
from image_crunch.core.models import BatchStatistics

LOGGER = logging.getLogger(__name__)

NOTIFICATION_TITLE = "Image Crunch"


class Notifier:
    """通知发送接口，默认实现写入日志。"""

    def is_permission_granted(self) -> bool:
        return True

    def request_permission(self) -> bool:
        return True

    def send(self, title: str, body: str) -> None:
        LOGGER.info("%s: %s", title, body)


class SilentNotifier(Notifier):
    """不发送任何通知，用于命令行等无需提醒的场景。"""

    def send(self, title: str, body: str) -> None:
        return


def completion_message(stats: BatchStatistics) -> str:
    return f"已处理 {stats.successful_files} 个文件，体积减少 {stats.overall_reduction_percent:.1f}%"


def notify_completion(notifier: Notifier, stats: BatchStatistics) -> bool:
    """尽力发送完成通知；任何失败只记录日志，返回是否已发送。"""

    try:
        granted = notifier.is_permission_granted()
        if not granted:
            granted = notifier.request_permission()
        if not granted:
            LOGGER.info("未获得通知权限，跳过完成通知")
            return False
        notifier.send(NOTIFICATION_TITLE, completion_message(stats))
    except NotificationError as exc:
        LOGGER.warning("发送完成通知失败: %s", exc)
        return False
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning("发送完成通知时发生异常: %s", exc, exc_info=exc)
        return False
    return True

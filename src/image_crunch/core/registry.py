"""待处理文件登记表。"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, Optional

from image_crunch.core.models import (
    ALLOWED_TRANSITIONS,
    FILE_STATUSES,
    PENDING,
    RESULT_FIELDS,
    FileStatus,
    WorkItem,
)

LOGGER = logging.getLogger(__name__)


class WorkItemRegistry:
    """按插入顺序保存工作项，路径唯一。

    状态更新来自外部引擎事件，不与本地状态形成事务关系，因此未知路径和非法
    状态迁移都作为空操作处理，不抛出异常。
    """

    def __init__(self) -> None:
        self._items: dict[str, WorkItem] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[WorkItem]:
        return iter(list(self._items.values()))

    def __contains__(self, path: object) -> bool:
        return path in self._items

    @property
    def items(self) -> list[WorkItem]:
        return list(self._items.values())

    def paths(self) -> list[str]:
        return list(self._items)

    def get(self, path: str) -> Optional[WorkItem]:
        return self._items.get(path)

    def add(self, items: Iterable[WorkItem | str]) -> int:
        """插入尚未登记的路径，重复项直接丢弃；返回新增数量。"""

        added = 0
        for entry in items:
            item = entry if isinstance(entry, WorkItem) else WorkItem(path=entry)
            if item.path in self._items:
                continue
            self._items[item.path] = item
            added += 1
        return added

    def remove(self, path: str) -> bool:
        return self._items.pop(path, None) is not None

    def clear(self) -> None:
        self._items.clear()

    def update_status(self, path: str, status: FileStatus, **fields: Any) -> bool:
        """合并字段并覆盖状态；返回是否实际发生了更新。"""

        if status not in FILE_STATUSES:
            raise ValueError(f"未知的文件状态: {status}")
        unknown = set(fields) - set(RESULT_FIELDS)
        if unknown:
            raise ValueError(f"未知的结果字段: {', '.join(sorted(unknown))}")

        item = self._items.get(path)
        if item is None:
            LOGGER.debug("忽略未登记文件的状态更新: %s", path)
            return False
        if status not in ALLOWED_TRANSITIONS[item.status]:
            LOGGER.debug("忽略非法状态迁移 %s -> %s: %s", item.status, status, path)
            return False

        item.status = status
        for name, value in fields.items():
            setattr(item, name, value)
        return True

    def reset_statuses(self) -> None:
        for item in self._items.values():
            item.status = PENDING
            for name in RESULT_FIELDS:
                setattr(item, name, None)

    def count(self, status: FileStatus) -> int:
        return sum(1 for item in self._items.values() if item.status == status)

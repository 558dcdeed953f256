"""核心数据模型定义。"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional

from image_crunch.utils.formatting import display_name

FileStatus = str  # pending | processing | completed | error

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"

FILE_STATUSES = (PENDING, PROCESSING, COMPLETED, ERROR)

# 单个会话内允许的状态迁移；终态只能通过 reset_statuses 回到 pending。
ALLOWED_TRANSITIONS = {
    PENDING: {PROCESSING, COMPLETED, ERROR},
    PROCESSING: {PROCESSING, COMPLETED, ERROR},
    COMPLETED: set(),
    ERROR: set(),
}

RESULT_FIELDS = ("output_path", "output_size", "reduction_percent", "error_message")

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def snake_case_keys(payload: Mapping[str, Any]) -> dict[str, Any]:
    """引擎事件的字段名可能是 camelCase（如 currentFile），统一转换为 snake_case。"""

    return {_CAMEL_BOUNDARY.sub("_", str(key)).lower(): value for key, value in payload.items()}


@dataclass(slots=True)
class WorkItem:
    """提交处理的单个文件及其状态。"""

    path: str
    status: FileStatus = PENDING
    output_path: Optional[str] = None
    output_size: Optional[int] = None
    reduction_percent: Optional[float] = None
    error_message: Optional[str] = None
    display_name: str = field(init=False)

    def __post_init__(self) -> None:
        self.display_name = display_name(self.path)


@dataclass(slots=True)
class ProcessingResult:
    """引擎返回的单个文件处理结果。"""

    original_path: str
    output_path: str = ""
    original_size: int = 0
    output_size: int = 0
    reduction_percent: float = 0.0
    success: bool = False
    error: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ProcessingResult":
        if isinstance(payload, cls):
            return payload
        payload = snake_case_keys(payload)
        return cls(
            original_path=str(payload["original_path"]),
            output_path=str(payload.get("output_path") or ""),
            original_size=int(payload.get("original_size") or 0),
            output_size=int(payload.get("output_size") or 0),
            reduction_percent=float(payload.get("reduction_percent") or 0.0),
            success=payload.get("success") is True,
            error=payload.get("error"),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class BatchStatistics:
    """批处理完成后的汇总统计。"""

    total_files: int = 0
    successful_files: int = 0
    failed_files: int = 0
    total_original_size: int = 0
    total_output_size: int = 0
    overall_reduction_percent: float = 0.0
    average_reduction_percent: float = 0.0
    median_reduction_percent: float = 0.0
    processed_files: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "BatchStatistics":
        if isinstance(payload, cls):
            return payload
        data = snake_case_keys(payload)
        total = int(data.get("total_files", 0))
        return cls(
            total_files=total,
            successful_files=int(data.get("successful_files", 0)),
            failed_files=int(data.get("failed_files", 0)),
            total_original_size=int(data.get("total_original_size", data.get("total_original_size_bytes", 0))),
            total_output_size=int(data.get("total_output_size", data.get("total_output_size_bytes", 0))),
            overall_reduction_percent=float(data.get("overall_reduction_percent", 0.0)),
            average_reduction_percent=float(data.get("average_reduction_percent", 0.0)),
            median_reduction_percent=float(data.get("median_reduction_percent", 0.0)),
            processed_files=int(data.get("processed_files", total)),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def is_consistent(self) -> bool:
        return self.successful_files + self.failed_files == self.total_files

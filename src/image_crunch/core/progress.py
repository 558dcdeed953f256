"""进度更新的数据模型。"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from image_crunch.core.models import snake_case_keys


@dataclass(slots=True)
class ProgressSnapshot:
    """批处理过程中的进度信息，percent 由引擎给出，本地不重新计算。"""

    current: int
    total: int
    current_file: str
    percent: float

    @classmethod
    def from_payload(cls, payload: Any) -> "ProgressSnapshot":
        if isinstance(payload, cls):
            return payload
        payload = snake_case_keys(payload)
        return cls(
            current=int(payload["current"]),
            total=int(payload["total"]),
            current_file=str(payload["current_file"]),
            percent=float(payload["percent"]),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

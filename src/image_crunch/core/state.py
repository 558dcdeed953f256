"""应用状态对象，由任务会话控制器持有并传递给界面层。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from image_crunch.core.config import OptionsStore
from image_crunch.core.models import BatchStatistics
from image_crunch.core.progress import ProgressSnapshot
from image_crunch.core.registry import WorkItemRegistry

SessionState = str  # idle | processing | completed | error

IDLE = "idle"
SESSION_PROCESSING = "processing"
SESSION_COMPLETED = "completed"
SESSION_ERROR = "error"


@dataclass(slots=True)
class AppState:
    """整个应用的单一状态来源。

    界面只读取这些字段；修改一律经过 JobSessionController 的命名操作。
    """

    registry: WorkItemRegistry = field(default_factory=WorkItemRegistry)
    options: OptionsStore = field(default_factory=OptionsStore)
    session_state: SessionState = IDLE
    progress: Optional[ProgressSnapshot] = None
    statistics: Optional[BatchStatistics] = None
    error: Optional[str] = None

    @property
    def is_processing(self) -> bool:
        return self.session_state == SESSION_PROCESSING

    @property
    def can_start(self) -> bool:
        return bool(len(self.registry)) and bool(self.options.output_directory) and not self.is_processing

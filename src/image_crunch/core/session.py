"""批处理会话控制器：启动任务、订阅引擎事件并把事件合并到应用状态。

所有状态修改都发生在调用 ``bridge.dispatch_pending`` 的线程中（GUI 主线程
或命令行的等待循环）；引擎只在工作线程里运行，通过事件队列与状态交互。
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import ExitStack
from typing import Any, Callable, Iterable, Mapping, Optional

from image_crunch.core.config import ProcessingOptions, validate_options
from image_crunch.core.events import (
    COMPLETE_EVENT,
    PROGRESS_EVENT,
    RESULT_EVENT,
    SUBMIT_REJECTED_EVENT,
    SUBMIT_RESOLVED_EVENT,
    Emitter,
    EventBridge,
)
from image_crunch.core.exceptions import ImageCrunchError, SessionBusyError, SubmissionError, ValidationError
from image_crunch.core.models import COMPLETED, ERROR, PROCESSING, BatchStatistics, ProcessingResult, WorkItem
from image_crunch.core.notifications import Notifier, notify_completion
from image_crunch.core.progress import ProgressSnapshot
from image_crunch.core.scanner import expand_paths
from image_crunch.core.state import IDLE, SESSION_COMPLETED, SESSION_ERROR, SESSION_PROCESSING, AppState
from image_crunch.core.statistics import calculate_batch_statistics

LOGGER = logging.getLogger(__name__)

UNKNOWN_ITEM_ERROR = "未知错误"

StateCallback = Optional[Callable[[AppState], None]]


def _item_path(entry: WorkItem | str) -> str:
    return entry.path if isinstance(entry, WorkItem) else str(entry)


def _unique(paths: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(paths))


class JobSessionController:
    """驱动单次批处理，同一时间只允许一个处理中的会话。

    ``engine`` 需要提供 ``submit_batch(input_paths, output_directory, options, emit)``，
    在工作线程中调用；``emit(event_name, payload)`` 用于发布进度、单文件结果
    与完成事件。返回 BatchStatistics 或非空的统计字典时作为最终统计，其他返回值
    一律忽略；抛出异常表示提交失败。
    """

    def __init__(
        self,
        engine: Any,
        *,
        state: Optional[AppState] = None,
        bridge: Optional[EventBridge] = None,
        notifier: Optional[Notifier] = None,
        path_expander: Callable[[Iterable[str]], list[str]] = expand_paths,
    ) -> None:
        self.engine = engine
        self.state = state or AppState()
        self.bridge = bridge or EventBridge()
        self.notifier = notifier or Notifier()
        self.last_error: Optional[ImageCrunchError] = None
        self._path_expander = path_expander
        self._generation = 0
        self._subscriptions: Optional[ExitStack] = None
        self._results: dict[str, ProcessingResult] = {}
        self._worker: Optional[threading.Thread] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_processing(self) -> bool:
        return self.state.is_processing

    @property
    def has_active_subscriptions(self) -> bool:
        return self._subscriptions is not None

    # ---------------------- 文件与选项 ---------------------- #

    def add_paths(self, raw_paths: Iterable[str], expand: bool = True) -> int:
        """展开并登记路径，返回新增数量；处理中不接受新文件。"""

        if self.state.is_processing:
            LOGGER.warning("任务处理中，忽略新增文件")
            return 0
        paths = self._path_expander(list(raw_paths)) if expand else list(raw_paths)
        added = self.state.registry.add(paths)
        LOGGER.info("新增 %d 个文件（共 %d 个）", added, len(self.state.registry))
        return added

    def remove_item(self, path: str) -> bool:
        if self.state.is_processing:
            LOGGER.warning("任务处理中，不能移除文件: %s", path)
            return False
        return self.state.registry.remove(path)

    def clear(self) -> None:
        """清空文件列表与统计，回到初始状态。"""

        if self.state.is_processing:
            self._invalidate_session()
        self.state.registry.clear()
        self.state.statistics = None
        self.state.progress = None
        self.state.session_state = IDLE

    def reset(self) -> None:
        """回到初始状态：清空文件与统计，并恢复默认处理选项。"""

        self.clear()
        self.state.options.reset()
        self.state.error = None
        self.last_error = None

    def dismiss_error(self) -> None:
        self.state.error = None

    def update_options(self, **changes: Any) -> ProcessingOptions:
        if self.state.is_processing:
            raise SessionBusyError("任务处理中，不能修改处理选项")
        return self.state.options.update(**changes)

    def set_output_directory(self, directory: str) -> None:
        if self.state.is_processing:
            raise SessionBusyError("任务处理中，不能修改输出目录")
        self.state.options.set_output_directory(directory)

    # ---------------------- 会话生命周期 ---------------------- #

    def start(
        self,
        items: Optional[Iterable[WorkItem | str]] = None,
        options: Optional[ProcessingOptions] = None,
        output_directory: Optional[str] = None,
    ) -> int:
        """启动一次批处理，返回会话代号。

        前置条件不满足时抛出 ValidationError，且不修改任何状态。
        """

        if self.state.is_processing:
            raise SessionBusyError()

        if items is None:
            paths = self.state.registry.paths()
        else:
            paths = _unique(_item_path(entry) for entry in items)
        if not paths:
            raise ValidationError("请先添加需要处理的图片", field="items")

        directory = self.state.options.output_directory if output_directory is None else str(output_directory).strip()
        if not directory:
            raise ValidationError("请先选择输出目录", field="output_directory")

        options = self.state.options.options if options is None else validate_options(options)

        if items is not None:
            self.state.registry.add(paths)

        self._generation += 1
        generation = self._generation
        self.state.session_state = SESSION_PROCESSING
        self.state.error = None
        self.state.statistics = None
        self.state.progress = None
        self.last_error = None
        self.state.registry.reset_statuses()
        self._results = {}

        # 先建立订阅再提交，保证引擎发出的任何事件都有接收者。
        self._subscriptions = self._open_subscriptions(generation)
        emit = self.bridge.emitter(generation)

        LOGGER.info("开始第 %d 次批处理：%d 个文件 -> %s", generation, len(paths), directory)
        self._worker = threading.Thread(
            target=self._submit,
            args=(generation, paths, directory, options, emit),
            name=f"image-crunch-session-{generation}",
            daemon=True,
        )
        self._worker.start()
        return generation

    def cancel(self) -> bool:
        """仅在本地结束会话；引擎不会收到停止信号，之后到达的事件全部忽略。"""

        if not self.state.is_processing:
            return False
        cancelled = self._generation
        self._invalidate_session()
        self.state.session_state = IDLE
        self.state.progress = None
        LOGGER.info("已取消第 %d 次批处理（引擎中的任务可能仍在运行）", cancelled)
        return True

    def wait(self, timeout: Optional[float] = None, poll_interval: float = 0.1, on_update: StateCallback = None) -> bool:
        """在当前线程中投递事件直到会话结束；超时返回 False。

        默认不设超时，引擎停止发送事件时会一直等待。
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        while self.state.is_processing:
            wait_for = poll_interval
            if deadline is not None:
                wait_for = min(poll_interval, deadline - time.monotonic())
                if wait_for <= 0:
                    return False
            if self.bridge.dispatch_pending(timeout=wait_for) and on_update:
                on_update(self.state)
        return True

    def join_worker(self, timeout: Optional[float] = None) -> None:
        worker = self._worker
        if worker is not None:
            worker.join(timeout)

    # ---------------------- 内部实现 ---------------------- #

    def _open_subscriptions(self, generation: int) -> ExitStack:
        handlers = (
            (PROGRESS_EVENT, self._on_progress),
            (RESULT_EVENT, self._on_result),
            (COMPLETE_EVENT, self._on_complete),
            (SUBMIT_RESOLVED_EVENT, self._on_submit_resolved),
            (SUBMIT_REJECTED_EVENT, self._on_submit_rejected),
        )
        with ExitStack() as stack:
            for name, handler in handlers:
                stack.enter_context(self.bridge.listen(name, self._guarded(generation, handler), generation=generation))
            return stack.pop_all()

    def _guarded(self, generation: int, handler: Callable[[Any], None]) -> Callable[[Any], None]:
        def apply(payload: Any) -> None:
            if generation != self._generation or not self.state.is_processing:
                LOGGER.debug("忽略过期会话 %d 的事件", generation)
                return
            try:
                handler(payload)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("处理引擎事件失败：%s", exc)
                self._fail_session(f"处理引擎事件失败: {exc}", exc if isinstance(exc, ImageCrunchError) else None)

        return apply

    def _teardown(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, None
        if subscriptions is not None:
            subscriptions.close()

    def _invalidate_session(self) -> None:
        self._generation += 1
        self._teardown()

    def _submit(
        self,
        generation: int,
        paths: list[str],
        directory: str,
        options: ProcessingOptions,
        emit: Emitter,
    ) -> None:
        try:
            outcome = self.engine.submit_batch(paths, directory, options, emit)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("批处理提交失败：%s", exc)
            self.bridge.post(SUBMIT_REJECTED_EVENT, str(exc) or exc.__class__.__name__, generation)
        else:
            self.bridge.post(SUBMIT_RESOLVED_EVENT, outcome, generation)

    def _on_progress(self, snapshot: ProgressSnapshot) -> None:
        self.state.progress = snapshot
        self.state.registry.update_status(snapshot.current_file, PROCESSING)

    def _on_result(self, result: ProcessingResult) -> None:
        path = result.original_path
        if path not in self.state.registry:
            LOGGER.debug("忽略未登记文件的结果: %s", path)
            return
        self._results[path] = result
        if result.success:
            self.state.registry.update_status(
                path,
                COMPLETED,
                output_path=result.output_path,
                output_size=result.output_size,
                reduction_percent=result.reduction_percent,
            )
        else:
            LOGGER.warning("文件处理失败 %s：%s", path, result.error)
            self.state.registry.update_status(path, ERROR, error_message=result.error or UNKNOWN_ITEM_ERROR)

    def _on_complete(self, stats: BatchStatistics) -> None:
        self._verify(stats)
        self._finish(stats)

    def _on_submit_resolved(self, outcome: Any) -> None:
        if isinstance(outcome, BatchStatistics) or (isinstance(outcome, Mapping) and outcome):
            stats = BatchStatistics.from_payload(outcome)
            LOGGER.warning("提交调用已结束但未收到完成事件，使用引擎返回的统计")
        else:
            stats = calculate_batch_statistics(self._results.values())
            LOGGER.warning("提交调用已结束但未收到完成事件，使用本地结果计算统计")
        self._finish(stats)

    def _on_submit_rejected(self, message: Any) -> None:
        error = SubmissionError(f"处理失败: {message}")
        self._fail_session(str(error), error)

    def _finish(self, stats: BatchStatistics) -> None:
        self.state.statistics = stats
        self.state.session_state = SESSION_COMPLETED
        self.state.progress = None
        self._teardown()
        LOGGER.info(
            "第 %d 次批处理完成：成功 %d 个，失败 %d 个，整体减少 %.1f%%",
            self._generation,
            stats.successful_files,
            stats.failed_files,
            stats.overall_reduction_percent,
        )
        notify_completion(self.notifier, stats)

    def _fail_session(self, message: str, error: Optional[ImageCrunchError] = None) -> None:
        self.last_error = error or ImageCrunchError(message)
        self.state.error = message
        self.state.session_state = SESSION_ERROR
        self.state.progress = None
        self._teardown()
        LOGGER.error("第 %d 次批处理失败：%s", self._generation, message)

    def _verify(self, stats: BatchStatistics) -> None:
        if not stats.is_consistent:
            LOGGER.warning(
                "完成统计不一致：成功 %d + 失败 %d != 总数 %d",
                stats.successful_files,
                stats.failed_files,
                stats.total_files,
            )
        if not self._results:
            return
        local = calculate_batch_statistics(self._results.values())
        if (local.successful_files, local.failed_files) != (stats.successful_files, stats.failed_files):
            LOGGER.warning(
                "引擎统计与本地结果不一致：引擎 %d/%d，本地 %d/%d",
                stats.successful_files,
                stats.failed_files,
                local.successful_files,
                local.failed_files,
            )

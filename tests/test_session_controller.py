"""测试批处理会话控制器的事件合并、会话隔离与清理。"""

from __future__ import annotations

import threading
from typing import Any, Optional

import pytest

from image_crunch.core.config import ProcessingOptions
from image_crunch.core.events import COMPLETE_EVENT, PROGRESS_EVENT, RESULT_EVENT
from image_crunch.core.exceptions import NotificationError, SessionBusyError, SubmissionError, ValidationError
from image_crunch.core.models import COMPLETED, ERROR, PENDING, PROCESSING, BatchStatistics
from image_crunch.core.notifications import Notifier
from image_crunch.core.progress import ProgressSnapshot
from image_crunch.core.session import UNKNOWN_ITEM_ERROR, JobSessionController
from image_crunch.core.state import IDLE, SESSION_COMPLETED, SESSION_ERROR, SESSION_PROCESSING

FILE_A = "/photos/a.png"
FILE_B = "/photos/b.png"


class ManualEngine:
    """记录调用并阻塞，直到测试放行。"""

    def __init__(self, outcome: Any = None, error: Optional[Exception] = None) -> None:
        self.release = threading.Event()
        self.outcome = outcome
        self.error = error
        self.calls: list[tuple[list[str], str, ProcessingOptions]] = []

    def submit_batch(self, input_paths, output_directory, options, emit):
        self.calls.append((list(input_paths), output_directory, options))
        self.release.wait(5)
        if self.error is not None:
            raise self.error
        return self.outcome


class ScriptedEngine:
    """依次发布预设事件，然后返回或抛出异常。"""

    def __init__(self, events: list[tuple[str, Any]], outcome: Any = None, error: Optional[Exception] = None) -> None:
        self.events = events
        self.outcome = outcome
        self.error = error

    def submit_batch(self, input_paths, output_directory, options, emit):
        for name, payload in self.events:
            emit(name, payload)
        if self.error is not None:
            raise self.error
        return self.outcome


class RecordingNotifier(Notifier):
    def __init__(self, granted: bool = True, error: Optional[Exception] = None) -> None:
        self.granted = granted
        self.error = error
        self.messages: list[tuple[str, str]] = []

    def is_permission_granted(self) -> bool:
        return self.granted

    def request_permission(self) -> bool:
        return self.granted

    def send(self, title: str, body: str) -> None:
        if self.error is not None:
            raise self.error
        self.messages.append((title, body))


def make_controller(engine: Any, notifier: Optional[Notifier] = None, paths=(FILE_A, FILE_B)) -> JobSessionController:
    controller = JobSessionController(engine, notifier=notifier or RecordingNotifier())
    controller.add_paths(list(paths), expand=False)
    controller.set_output_directory("/output")
    return controller


def progress(current: int, total: int, current_file: str) -> dict[str, Any]:
    return {"current": current, "total": total, "current_file": current_file, "percent": current / total * 100}


def success(path: str, original: int = 1000, output: int = 400, reduction: float = 60.0) -> dict[str, Any]:
    return {
        "original_path": path,
        "output_path": path.replace("/photos/", "/output/").replace(".png", ".webp"),
        "original_size": original,
        "output_size": output,
        "reduction_percent": reduction,
        "success": True,
        "error": None,
    }


def failure(path: str, error: Optional[str] = "decode failed") -> dict[str, Any]:
    return {
        "original_path": path,
        "output_path": "",
        "original_size": 0,
        "output_size": 0,
        "reduction_percent": 0.0,
        "success": False,
        "error": error,
    }


COMPLETE_PAYLOAD = {
    "total_files": 2,
    "processed_files": 2,
    "successful_files": 1,
    "failed_files": 1,
    "total_original_size": 1000,
    "total_output_size": 400,
    "overall_reduction_percent": 60.0,
    "average_reduction_percent": 60.0,
    "median_reduction_percent": 60.0,
}


def finish(controller: JobSessionController, engine: ManualEngine) -> None:
    engine.release.set()
    controller.join_worker(5)
    controller.bridge.dispatch_pending()


def test_end_to_end_two_item_session() -> None:
    engine = ManualEngine()
    notifier = RecordingNotifier()
    controller = make_controller(engine, notifier)
    state = controller.state

    generation = controller.start()
    emit = controller.bridge.emitter(generation)
    assert state.session_state == SESSION_PROCESSING
    assert controller.bridge.listener_count(PROGRESS_EVENT) == 1

    emit(PROGRESS_EVENT, progress(1, 2, FILE_A))
    controller.bridge.dispatch_pending()
    assert state.registry.get(FILE_A).status == PROCESSING
    assert state.progress == ProgressSnapshot(current=1, total=2, current_file=FILE_A, percent=50.0)

    emit(RESULT_EVENT, success(FILE_A))
    controller.bridge.dispatch_pending()
    item_a = state.registry.get(FILE_A)
    assert item_a.status == COMPLETED
    assert item_a.output_path == "/output/a.webp"
    assert item_a.output_size == 400
    assert item_a.reduction_percent == 60.0

    emit(RESULT_EVENT, failure(FILE_B))
    controller.bridge.dispatch_pending()
    item_b = state.registry.get(FILE_B)
    assert item_b.status == ERROR
    assert item_b.error_message == "decode failed"

    emit(COMPLETE_EVENT, COMPLETE_PAYLOAD)
    controller.bridge.dispatch_pending()
    assert state.session_state == SESSION_COMPLETED
    assert state.progress is None
    assert state.statistics == BatchStatistics.from_payload(COMPLETE_PAYLOAD)
    assert not controller.has_active_subscriptions
    assert controller.bridge.listener_count() == 0
    assert len(notifier.messages) == 1

    finish(controller, engine)
    assert state.session_state == SESSION_COMPLETED
    assert engine.calls[0][0] == [FILE_A, FILE_B]
    assert engine.calls[0][1] == "/output"


def test_start_without_items_raises_and_keeps_state() -> None:
    controller = make_controller(ManualEngine(), paths=())

    with pytest.raises(ValidationError) as excinfo:
        controller.start()

    assert excinfo.value.field == "items"
    assert controller.state.session_state == IDLE
    assert controller.generation == 0
    assert controller.bridge.listener_count() == 0


def test_start_without_output_directory_raises() -> None:
    controller = make_controller(ManualEngine())
    controller.set_output_directory("")

    with pytest.raises(ValidationError) as excinfo:
        controller.start()

    assert excinfo.value.field == "output_directory"
    assert controller.state.session_state == IDLE


def test_explicit_arguments_override_state() -> None:
    engine = ManualEngine()
    controller = JobSessionController(engine, notifier=RecordingNotifier())
    options = ProcessingOptions(output_format="png", quality=55)

    controller.start([FILE_A, FILE_A, FILE_B], options, "/elsewhere")
    finish(controller, engine)

    paths, directory, used_options = engine.calls[0]
    assert paths == [FILE_A, FILE_B]
    assert directory == "/elsewhere"
    assert used_options == options
    assert controller.state.registry.paths() == [FILE_A, FILE_B]


def test_second_start_while_processing_is_rejected() -> None:
    engine = ManualEngine()
    controller = make_controller(engine)
    controller.start()

    with pytest.raises(SessionBusyError):
        controller.start()

    assert controller.bridge.listener_count(RESULT_EVENT) == 1
    finish(controller, engine)


def test_new_session_resets_previous_results() -> None:
    events = [(RESULT_EVENT, success(FILE_A)), (RESULT_EVENT, failure(FILE_B)), (COMPLETE_EVENT, COMPLETE_PAYLOAD)]
    controller = make_controller(ScriptedEngine(events))
    controller.start()
    assert controller.wait(timeout=5)

    engine = ManualEngine()
    controller.engine = engine
    controller.start()

    assert controller.state.statistics is None
    for item in controller.state.registry:
        assert item.status == PENDING
        assert item.output_path is None
        assert item.error_message is None
    finish(controller, engine)


def test_submit_failure_sets_error_and_tears_down() -> None:
    controller = make_controller(ScriptedEngine([], error=RuntimeError("engine exploded")))

    controller.start()
    assert controller.wait(timeout=5)

    state = controller.state
    assert state.session_state == SESSION_ERROR
    assert "engine exploded" in (state.error or "")
    assert isinstance(controller.last_error, SubmissionError)
    assert state.progress is None
    assert controller.bridge.listener_count() == 0

    controller.dismiss_error()
    assert state.error is None


def test_failed_item_without_message_gets_fallback() -> None:
    events = [(RESULT_EVENT, failure(FILE_A, error=None))]
    controller = make_controller(ScriptedEngine(events))

    controller.start()
    assert controller.wait(timeout=5)

    assert controller.state.registry.get(FILE_A).error_message == UNKNOWN_ITEM_ERROR


def test_foreign_and_duplicate_events_are_ignored() -> None:
    events = [
        (RESULT_EVENT, success("/not/registered.png")),
        (PROGRESS_EVENT, progress(1, 2, "/not/registered.png")),
        (RESULT_EVENT, success(FILE_A)),
        (PROGRESS_EVENT, progress(1, 2, FILE_A)),
        (RESULT_EVENT, success(FILE_A, output=999)),
        (COMPLETE_EVENT, COMPLETE_PAYLOAD),
    ]
    controller = make_controller(ScriptedEngine(events))

    controller.start()
    assert controller.wait(timeout=5)

    item = controller.state.registry.get(FILE_A)
    assert item.status == COMPLETED
    assert item.output_size == 400
    assert "/not/registered.png" not in controller.state.registry
    assert len(controller.state.registry) == 2


def test_resolution_without_completion_event_uses_local_results() -> None:
    events = [(PROGRESS_EVENT, progress(1, 2, FILE_A)), (RESULT_EVENT, success(FILE_A))]
    controller = make_controller(ScriptedEngine(events))

    controller.start()
    assert controller.wait(timeout=5)

    stats = controller.state.statistics
    assert controller.state.session_state == SESSION_COMPLETED
    assert stats is not None
    assert stats.successful_files == 1
    assert stats.total_original_size == 1000
    assert controller.bridge.listener_count() == 0


def test_resolution_returning_statistics_is_stored() -> None:
    returned = BatchStatistics.from_payload(COMPLETE_PAYLOAD)
    controller = make_controller(ScriptedEngine([], outcome=returned))

    controller.start()
    assert controller.wait(timeout=5)

    assert controller.state.statistics == returned


def test_cancel_ignores_late_events_from_old_session() -> None:
    engine = ManualEngine()
    controller = make_controller(engine)
    first = controller.start()
    stale_emit = controller.bridge.emitter(first)

    assert controller.cancel() is True
    assert controller.state.session_state == IDLE
    assert controller.state.progress is None
    assert controller.bridge.listener_count() == 0
    assert controller.cancel() is False

    second = controller.start()
    assert second > first
    stale_emit(PROGRESS_EVENT, progress(1, 2, FILE_A))
    stale_emit(RESULT_EVENT, success(FILE_A))
    stale_emit(COMPLETE_EVENT, COMPLETE_PAYLOAD)
    controller.bridge.dispatch_pending()

    assert controller.state.session_state == SESSION_PROCESSING
    assert controller.state.registry.get(FILE_A).status == PENDING
    assert controller.state.progress is None

    controller.cancel()
    engine.release.set()
    controller.join_worker(5)


def test_clear_always_resets_registry_and_statistics() -> None:
    events = [(RESULT_EVENT, success(FILE_A)), (COMPLETE_EVENT, COMPLETE_PAYLOAD)]
    controller = make_controller(ScriptedEngine(events))
    controller.start()
    assert controller.wait(timeout=5)
    assert controller.state.statistics is not None

    controller.clear()
    assert len(controller.state.registry) == 0
    assert controller.state.statistics is None
    assert controller.state.session_state == IDLE

    engine = ManualEngine()
    controller.engine = engine
    controller.add_paths([FILE_A], expand=False)
    controller.start()
    controller.clear()
    assert len(controller.state.registry) == 0
    assert controller.state.statistics is None
    assert controller.state.session_state == IDLE
    assert controller.bridge.listener_count() == 0
    finish(controller, engine)
    assert controller.state.session_state == IDLE


def test_registry_edits_are_refused_while_processing() -> None:
    engine = ManualEngine()
    controller = make_controller(engine)
    controller.start()

    assert controller.remove_item(FILE_A) is False
    assert controller.add_paths(["/photos/c.png"], expand=False) == 0
    with pytest.raises(SessionBusyError):
        controller.update_options(quality=10)

    controller.cancel()
    assert controller.remove_item(FILE_A) is True
    engine.release.set()
    controller.join_worker(5)


def test_notification_failure_does_not_affect_session() -> None:
    notifier = RecordingNotifier(error=NotificationError("no desktop"))
    controller = make_controller(ScriptedEngine([(COMPLETE_EVENT, COMPLETE_PAYLOAD)]), notifier)

    controller.start()
    assert controller.wait(timeout=5)

    assert controller.state.session_state == SESSION_COMPLETED
    assert controller.state.error is None


def test_notification_skipped_without_permission() -> None:
    notifier = RecordingNotifier(granted=False)
    controller = make_controller(ScriptedEngine([(COMPLETE_EVENT, COMPLETE_PAYLOAD)]), notifier)

    controller.start()
    assert controller.wait(timeout=5)

    assert notifier.messages == []
    assert controller.state.session_state == SESSION_COMPLETED


def test_handler_failure_fails_session_and_releases_listeners(monkeypatch: pytest.MonkeyPatch) -> None:
    engine = ManualEngine()
    controller = make_controller(engine)
    generation = controller.start()

    def broken(*args: Any, **kwargs: Any) -> bool:
        raise RuntimeError("registry broke")

    monkeypatch.setattr(controller.state.registry, "update_status", broken)
    controller.bridge.emitter(generation)(PROGRESS_EVENT, progress(1, 2, FILE_A))
    controller.bridge.dispatch_pending()

    assert controller.state.session_state == SESSION_ERROR
    assert "registry broke" in (controller.state.error or "")
    assert controller.bridge.listener_count() == 0
    engine.release.set()
    controller.join_worker(5)


def test_wait_times_out_on_stalled_engine() -> None:
    engine = ManualEngine()
    controller = make_controller(engine)
    controller.start()

    assert controller.wait(timeout=0.2, poll_interval=0.05) is False
    assert controller.state.session_state == SESSION_PROCESSING

    finish(controller, engine)
    assert controller.state.session_state == SESSION_COMPLETED


@pytest.mark.parametrize("outcome", ["ok", {}, 42])
def test_resolution_with_non_statistics_value_uses_local_results(outcome: Any) -> None:
    controller = make_controller(ScriptedEngine([(RESULT_EVENT, success(FILE_A))], outcome=outcome))

    controller.start()
    assert controller.wait(timeout=5)

    stats = controller.state.statistics
    assert controller.state.session_state == SESSION_COMPLETED
    assert controller.state.error is None
    assert stats is not None
    assert stats.total_files == 1
    assert stats.successful_files == 1
    assert stats.total_original_size == 1000


def test_resolution_with_statistics_mapping_is_stored() -> None:
    controller = make_controller(ScriptedEngine([(RESULT_EVENT, success(FILE_A))], outcome=COMPLETE_PAYLOAD))

    controller.start()
    assert controller.wait(timeout=5)

    assert controller.state.statistics == BatchStatistics.from_payload(COMPLETE_PAYLOAD)


def test_reset_restores_default_options() -> None:
    controller = make_controller(ManualEngine())
    controller.update_options(output_format="png", quality=30)
    controller.state.error = "处理失败: boom"

    controller.reset()

    state = controller.state
    assert len(state.registry) == 0
    assert state.options.options == ProcessingOptions()
    assert state.options.output_directory == ""
    assert state.error is None
    assert controller.last_error is None
    assert not state.can_start


def test_can_start_follows_items_directory_and_session() -> None:
    engine = ManualEngine()
    controller = JobSessionController(engine, notifier=RecordingNotifier())
    assert not controller.state.can_start

    controller.add_paths([FILE_A], expand=False)
    assert not controller.state.can_start

    controller.set_output_directory("/output")
    assert controller.state.can_start

    controller.start()
    assert not controller.state.can_start
    finish(controller, engine)
    assert controller.state.can_start

"""测试文件扫描、Pillow 引擎的事件顺序与输出写入。"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from PIL import Image

from image_crunch.core.config import ProcessingOptions
from image_crunch.core.events import COMPLETE_EVENT, PROGRESS_EVENT, RESULT_EVENT
from image_crunch.core.exceptions import SubmissionError
from image_crunch.core.models import COMPLETED, ERROR
from image_crunch.core.notifications import SilentNotifier
from image_crunch.core.scanner import expand_paths
from image_crunch.core.session import JobSessionController
from image_crunch.core.state import SESSION_COMPLETED
from image_crunch.processing.engine import PillowEngine, optimal_workers


def make_image(path: Path, size: tuple[int, int] = (64, 64), color: str = "blue", **save_kwargs: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, **save_kwargs)
    return path


def run_engine(paths: list[Path], output: Path, options: ProcessingOptions) -> tuple[list[tuple[str, Any]], Any]:
    events: list[tuple[str, Any]] = []
    stats = PillowEngine(max_workers=1).submit_batch(
        [str(p) for p in paths], str(output), options, lambda name, payload: events.append((name, payload))
    )
    return events, stats


def test_expand_paths_filters_recurses_and_dedupes(tmp_path: Path) -> None:
    source = tmp_path / "input"
    first = make_image(source / "b.png")
    second = make_image(source / "nested" / "a.jpg")
    (source / "notes.txt").write_text("hello")

    found = expand_paths([str(source), str(first), "  "])

    assert found == [str(first.resolve()), str(second.resolve())]
    assert expand_paths([str(source)], recursive=False) == [str(first.resolve())]
    assert expand_paths([str(tmp_path / "missing")]) == []


def test_engine_emits_progress_result_then_complete(tmp_path: Path) -> None:
    good = make_image(tmp_path / "input" / "good.png")
    broken = tmp_path / "input" / "broken.png"
    broken.write_text("not an image")

    events, stats = run_engine([good, broken], tmp_path / "out", ProcessingOptions())

    assert [name for name, _ in events] == [
        PROGRESS_EVENT,
        RESULT_EVENT,
        PROGRESS_EVENT,
        RESULT_EVENT,
        COMPLETE_EVENT,
    ]
    assert events[0][1]["current"] == 1
    assert events[2][1]["percent"] == pytest.approx(100.0)

    good_result, broken_result = events[1][1], events[3][1]
    assert good_result["success"] is True
    assert Path(good_result["output_path"]) == (tmp_path / "out" / "good.webp").resolve()
    assert Path(good_result["output_path"]).exists()
    assert broken_result["success"] is False
    assert broken_result["error"]

    assert stats.total_files == 2
    assert stats.successful_files == 1
    assert stats.failed_files == 1
    assert events[-1][1] == stats.to_payload()


def test_width_only_resize_keeps_aspect_ratio(tmp_path: Path) -> None:
    source = make_image(tmp_path / "wide.png", size=(200, 100))

    events, _ = run_engine([source], tmp_path / "out", ProcessingOptions(output_format="png", resize_width=50))

    with Image.open(events[1][1]["output_path"]) as img:
        assert img.size == (50, 25)


def test_exact_resize_with_both_dimensions(tmp_path: Path) -> None:
    source = make_image(tmp_path / "wide.png", size=(200, 100))
    options = ProcessingOptions(output_format="png", resize_width=30, resize_height=30)

    events, _ = run_engine([source], tmp_path / "out", options)

    with Image.open(events[1][1]["output_path"]) as img:
        assert img.size == (30, 30)


def test_duplicate_stems_get_numbered_outputs(tmp_path: Path) -> None:
    first = make_image(tmp_path / "one" / "a.png")
    second = make_image(tmp_path / "two" / "a.jpg")

    events, stats = run_engine([first, second], tmp_path / "out", ProcessingOptions(output_format="png"))

    outputs = sorted(Path(payload["output_path"]).name for name, payload in events if name == RESULT_EVENT)
    assert outputs == ["a.png", "a_1.png"]
    assert stats.successful_files == 2


@pytest.mark.parametrize("keep_metadata", [True, False])
def test_jpeg_metadata_follows_option(tmp_path: Path, keep_metadata: bool) -> None:
    exif = Image.Exif()
    exif[0x010F] = "TestCamera"
    source = make_image(tmp_path / "photo.jpg", exif=exif.tobytes())
    options = ProcessingOptions(output_format="jpeg", keep_metadata=keep_metadata)

    events, _ = run_engine([source], tmp_path / "out", options)

    output = Path(events[1][1]["output_path"])
    assert output.suffix == ".jpg"
    with Image.open(output) as img:
        assert bool(img.info.get("exif")) is keep_metadata


def test_output_directory_that_cannot_be_created(tmp_path: Path) -> None:
    source = make_image(tmp_path / "a.png")
    blocker = tmp_path / "blocker"
    blocker.write_text("file")

    with pytest.raises(SubmissionError):
        run_engine([source], blocker / "out", ProcessingOptions())


def test_empty_batch_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(SubmissionError):
        run_engine([], tmp_path / "out", ProcessingOptions())


def test_optimal_workers_bounds() -> None:
    assert optimal_workers(1) == 2
    assert optimal_workers(8) == 4
    assert optimal_workers(64) == 8


def test_controller_with_pillow_engine(tmp_path: Path) -> None:
    source = tmp_path / "input"
    make_image(source / "a.png", size=(120, 80))
    (source / "b.png").write_text("broken")

    controller = JobSessionController(PillowEngine(max_workers=1), notifier=SilentNotifier())
    controller.add_paths([str(source)])
    controller.set_output_directory(str(tmp_path / "out"))
    controller.update_options(output_format="png")

    controller.start()
    assert controller.wait(timeout=30)

    state = controller.state
    assert state.session_state == SESSION_COMPLETED
    statuses = {item.display_name: item.status for item in state.registry}
    assert statuses == {"a.png": COMPLETED, "b.png": ERROR}
    assert state.statistics is not None
    assert state.statistics.successful_files == 1
    assert state.statistics.failed_files == 1
    assert controller.bridge.listener_count() == 0

"""命令行入口。"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from image_crunch.core.config import OUTPUT_FORMATS
from image_crunch.core.exceptions import InvalidConfigurationError, ValidationError
from image_crunch.core.models import ERROR
from image_crunch.core.notifications import SilentNotifier
from image_crunch.core.session import JobSessionController
from image_crunch.core.state import SESSION_ERROR, AppState
from image_crunch.processing.engine import PillowEngine
from image_crunch.utils.formatting import display_name, format_bytes, format_percent
from image_crunch.utils.logging import setup_logging

app = typer.Typer(help="批量图片格式转换与压缩工具。")


def _build_progress_callback(progress: Progress):
    task_id: Optional[int] = None

    def callback(state: AppState) -> None:
        nonlocal task_id
        snapshot = state.progress
        if snapshot is None or snapshot.total == 0:
            return
        if task_id is None:
            task_id = progress.add_task("处理图片", total=snapshot.total)
        progress.update(task_id, completed=snapshot.current, description=display_name(snapshot.current_file))

    return callback


def _print_summary(state: AppState) -> None:
    stats = state.statistics
    if stats is None:
        return
    typer.echo(f"处理完成：成功 {stats.successful_files} / {stats.total_files} 个文件，失败 {stats.failed_files} 个。")
    typer.echo(
        f"整体减少 {format_percent(stats.overall_reduction_percent)}，"
        f"平均 {format_percent(stats.average_reduction_percent)}，"
        f"中位数 {format_percent(stats.median_reduction_percent)}。"
    )
    typer.echo(f"{format_bytes(stats.total_original_size)} -> {format_bytes(stats.total_output_size)}")
    for item in state.registry:
        if item.status == ERROR:
            typer.echo(f"失败：{item.display_name}：{item.error_message}", err=True)


@app.command("run")
def run_cli(  # noqa: PLR0913
    source: List[Path] = typer.Argument(..., help="源图片文件或目录，可指定多个"),
    output: Path = typer.Option(..., "--output", "-o", help="输出目录"),
    output_format: str = typer.Option("webp", "--format", "-f", help=f"输出格式：{'/'.join(OUTPUT_FORMATS)}"),
    quality: int = typer.Option(80, "--quality", "-q", help="有损压缩质量 1~100"),
    width: Optional[int] = typer.Option(None, "--width", help="缩放宽度，单独指定时按比例缩放"),
    height: Optional[int] = typer.Option(None, "--height", help="缩放高度，单独指定时按比例缩放"),
    keep_metadata: bool = typer.Option(False, "--keep-metadata/--strip-metadata", help="是否保留 EXIF 等元数据"),
    lossless: bool = typer.Option(False, "--lossless/--lossy", help="压缩模式"),
    max_workers: Optional[int] = typer.Option(None, "--workers", "-w", help="并发进程数量，默认按 CPU 计算"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """执行批量转换。"""

    setup_logging(logging.DEBUG if verbose else logging.INFO)
    logging.getLogger(__name__).debug("CLI 参数解析完成")

    controller = JobSessionController(PillowEngine(max_workers=max_workers), notifier=SilentNotifier())
    try:
        controller.update_options(
            output_format=output_format.lower(),
            quality=quality,
            resize_width=width,
            resize_height=height,
            keep_metadata=keep_metadata,
            compression_mode="lossless" if lossless else "lossy",
        )
    except InvalidConfigurationError as exc:
        raise typer.BadParameter(str(exc)) from exc

    controller.set_output_directory(str(output.expanduser().resolve()))
    controller.add_paths([str(p) for p in source])

    try:
        controller.start()
    except ValidationError as exc:
        typer.echo(f"无法开始处理：{exc}", err=True)
        raise typer.Exit(code=1) from exc

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
    )

    try:
        with progress:
            controller.wait(on_update=_build_progress_callback(progress))
    except KeyboardInterrupt:
        controller.cancel()
        typer.echo("已取消。", err=True)
        raise typer.Exit(code=130)

    state = controller.state
    if state.session_state == SESSION_ERROR:
        typer.echo(state.error or "处理失败", err=True)
        raise typer.Exit(code=1)

    _print_summary(state)


@app.command("gui")
def gui_cli() -> None:
    """启动图形界面。"""

    from image_crunch.gui.app import run_gui

    run_gui()


if __name__ == "__main__":
    app()

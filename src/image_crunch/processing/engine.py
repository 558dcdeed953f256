"""基于 Pillow 的批处理引擎：并发执行转换并通过事件汇报进度。"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Optional, Sequence

from image_crunch.core.config import ProcessingOptions, validate_options
from image_crunch.core.events import COMPLETE_EVENT, PROGRESS_EVENT, RESULT_EVENT
from image_crunch.core.exceptions import SubmissionError
from image_crunch.core.models import BatchStatistics, ProcessingResult
from image_crunch.core.output_manager import OutputManager
from image_crunch.core.progress import ProgressSnapshot
from image_crunch.core.statistics import calculate_batch_statistics
from image_crunch.processing.worker import ConversionTask, run_task

LOGGER = logging.getLogger(__name__)

Emit = Callable[[str, object], None]


def optimal_workers(cpu_count: Optional[int] = None) -> int:
    """使用一半 CPU，限制在 2~8 之间，避免 I/O 饱和与内存压力。"""

    cpus = cpu_count or os.cpu_count() or 4
    return max(2, min(8, (cpus + 1) // 2))


class PillowEngine:
    """处理引擎：submit_batch 在调用线程中阻塞执行整个批次。"""

    def __init__(self, max_workers: Optional[int] = None) -> None:
        self.max_workers = optimal_workers() if max_workers is None else max_workers

    def submit_batch(
        self,
        input_paths: Sequence[str],
        output_directory: str,
        options: ProcessingOptions,
        emit: Emit,
    ) -> BatchStatistics:
        """执行批处理并依次发布 progress、result、complete 事件。"""

        if not input_paths:
            raise SubmissionError("没有需要处理的文件")
        validate_options(options)

        total = len(input_paths)
        output_manager = OutputManager(Path(output_directory), options)
        tasks = [
            ConversionTask(
                source_path=Path(path),
                dest_path=output_manager.decide_destination(Path(path)),
                options=options,
            )
            for path in input_paths
        ]
        LOGGER.info("开始处理 %d 个文件，输出到 %s（进程数 %d）", total, output_manager.output_dir, self.max_workers)

        results: list[ProcessingResult] = []

        def record(outcome: ProcessingResult) -> None:
            results.append(outcome)
            current = len(results)
            snapshot = ProgressSnapshot(
                current=current,
                total=total,
                current_file=outcome.original_path,
                percent=current / total * 100.0,
            )
            emit(PROGRESS_EVENT, snapshot.to_payload())
            emit(RESULT_EVENT, outcome.to_payload())

        if self.max_workers <= 1:
            for task in tasks:
                record(run_task(task))
        else:
            with ProcessPoolExecutor(max_workers=self.max_workers) as executor:
                future_map = {executor.submit(run_task, task): task for task in tasks}
                for future in as_completed(future_map):
                    task = future_map[future]
                    try:
                        outcome = future.result()
                    except Exception as exc:  # noqa: BLE001
                        LOGGER.exception("任务执行异常：%s", exc)
                        outcome = ProcessingResult(
                            original_path=str(task.source_path),
                            output_path=str(task.dest_path),
                            success=False,
                            error=str(exc),
                        )
                    record(outcome)

        stats = calculate_batch_statistics(results)
        emit(COMPLETE_EVENT, stats.to_payload())
        LOGGER.info("处理完成：成功 %d，失败 %d", stats.successful_files, stats.failed_files)
        return stats

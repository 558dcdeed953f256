"""批处理汇总统计计算。"""

from __future__ import annotations

from typing import Iterable

import numpy as np

from image_crunch.core.models import BatchStatistics, ProcessingResult


def calculate_batch_statistics(results: Iterable[ProcessingResult]) -> BatchStatistics:
    """将单个文件的结果归约为汇总统计。

    尺寸与缩减率只统计成功的文件；没有成功文件时三个百分比均为 0。
    """

    collected = list(results)
    successful = [result for result in collected if result.success]

    total_original = sum(result.original_size for result in successful)
    total_output = sum(result.output_size for result in successful)

    if total_original > 0:
        overall = (1.0 - total_output / total_original) * 100.0
    else:
        overall = 0.0

    if successful:
        reductions = np.asarray([result.reduction_percent for result in successful], dtype=np.float64)
        average = float(reductions.mean())
        median = float(np.median(reductions))
    else:
        average = 0.0
        median = 0.0

    return BatchStatistics(
        total_files=len(collected),
        processed_files=len(collected),
        successful_files=len(successful),
        failed_files=len(collected) - len(successful),
        total_original_size=total_original,
        total_output_size=total_output,
        overall_reduction_percent=overall,
        average_reduction_percent=average,
        median_reduction_percent=median,
    )


def reduction_percent(original_size: int, output_size: int) -> float:
    if original_size <= 0:
        return 0.0
    return (original_size - output_size) / original_size * 100.0

"""
Memory admission estimate.

Given an input size and an operation kind, computes the memory a job is
expected to need and whether that fits under the configured ceiling:

    total = base + ceil(size_gb * rate[kind]) + ceil(size_gb * margin_rate)

The estimate never allocates anything. It is an admission gate only: a job
whose budget is over the ceiling is rejected before any engine work begins.
"""

import math
from typing import Optional, Union

from ..config import WorkerConfig, DEFAULT_WORKER_CONFIG
from ..jobs.models import OperationKind, ResourceBudget


BYTES_PER_GB = 1024 * 1024 * 1024


def estimate(
    input_size_bytes: Union[int, float],
    operation_kind: Union[OperationKind, str],
    ceiling_mb: Optional[int] = None,
    config: WorkerConfig = DEFAULT_WORKER_CONFIG,
) -> ResourceBudget:
    """
    Compute the ResourceBudget for a job.

    Deterministic and monotonic in input_size_bytes: a larger input never
    yields a smaller total.

    Args:
        input_size_bytes: Size of the job input in bytes (fractions are floored)
        operation_kind: The job's OperationKind (or its string value)
        ceiling_mb: Ceiling to judge against; defaults to config.memory_ceiling_mb
        config: Worker configuration with base, per-GB and margin rates

    Returns:
        The frozen ResourceBudget

    Raises:
        ValueError: If input_size_bytes is negative or not finite, or the kind is unknown
    """
    if isinstance(input_size_bytes, float) and not math.isfinite(input_size_bytes):
        raise ValueError(f"input_size_bytes must be finite, got {input_size_bytes}")
    if input_size_bytes < 0:
        raise ValueError(f"input_size_bytes must be >= 0, got {input_size_bytes}")
    input_size_bytes = math.floor(input_size_bytes)

    kind = OperationKind(operation_kind)
    ceiling = config.memory_ceiling_mb if ceiling_mb is None else ceiling_mb

    size_gb = input_size_bytes / BYTES_PER_GB
    base_mb = config.base_memory_mb
    variable_mb = math.ceil(size_gb * config.per_gb_rate_mb[kind.value])
    margin_mb = math.ceil(size_gb * config.margin_rate_per_gb_mb)
    total_mb = base_mb + variable_mb + margin_mb

    return ResourceBudget(
        input_size_bytes=input_size_bytes,
        operation_kind=kind,
        base_mb=base_mb,
        variable_mb=variable_mb,
        margin_mb=margin_mb,
        total_mb=total_mb,
        ceiling_mb=ceiling,
        within_ceiling=total_mb <= ceiling,
    )

"""
Staged progress reporting.

For operations that decompose into known stages, the sequencer emits one
progress update per stage, in order, before asking for that stage to be
completed:

    step 1/8   0%  Opening MKV file...
    step 2/8  13%  Reading file headers...
    ...
    step 8/8  88%  Finalizing...

The percentage is round(index / total * 100) with halves rounded up, so a
controller sees the same numbers it always has. Completion (100%) is
signalled by the terminal complete message, not by a progress update.

Ordering rules:
- Step numbers strictly increase and never exceed totalSteps
- The final stage is always performed before the sequence reports success
- Once the owning job is no longer active, nothing further is emitted
"""

import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from .stages import Stage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
    """One stage announcement for a running job."""

    job_id: str

    # Stage identity
    stage: str
    label: str

    # 0-100
    progress: int

    # 1-based position
    step: int
    total_steps: int

    @property
    def index(self) -> int:
        """0-based stage index."""
        return self.step - 1


def progress_percent(index: int, total: int) -> int:
    """
    Percentage for a 0-based stage index.

    Args:
        index: 0-based stage index
        total: Number of stages

    Returns:
        Integer 0-100, halves rounded up
    """
    if total <= 0:
        return 0
    return min(100, int(math.floor(index * 100 / total + 0.5)))


class ProgressSequencer:
    """
    Drive a job through its stage plan, reporting each stage.

    Usage:
        sequencer = ProgressSequencer(job_id, stages, emit=send, is_active=lambda: not cancelled)
        finished = await sequencer.run(perform_stage)

    The sequencer owns no timing: a stage lasts exactly as long as the
    perform coroutine takes.
    """

    def __init__(
        self,
        job_id: str,
        stages: Sequence[Stage],
        emit: Callable[[ProgressUpdate], Awaitable[None]],
        is_active: Callable[[], bool],
    ):
        """
        Initialize sequencer.

        Args:
            job_id: Job the stages belong to
            stages: Ordered stage plan (must not be empty)
            emit: Coroutine called with each ProgressUpdate
            is_active: Returns False once the job has left RUNNING
        """
        if not stages:
            raise ValueError("Stage plan cannot be empty")

        self.job_id = job_id
        self.stages = tuple(stages)
        self._emit = emit
        self._is_active = is_active

        self._last_step = 0
        self._finished = False

    @property
    def total_steps(self) -> int:
        return len(self.stages)

    @property
    def last_step(self) -> int:
        """Last 1-based step announced (0 before the first)."""
        return self._last_step

    @property
    def finished(self) -> bool:
        """True once every stage has been performed."""
        return self._finished

    def _update_for(self, index: int) -> ProgressUpdate:
        stage = self.stages[index]
        return ProgressUpdate(
            job_id=self.job_id,
            stage=stage.name,
            label=stage.label,
            progress=progress_percent(index, self.total_steps),
            step=index + 1,
            total_steps=self.total_steps,
        )

    async def run(self, perform: Callable[[Stage], Awaitable[None]]) -> bool:
        """
        Announce and perform every stage in order.

        Args:
            perform: Coroutine that completes one stage (raises on failure)

        Returns:
            True if all stages completed, False if the job stopped being
            active part-way through
        """
        for index, stage in enumerate(self.stages):
            if not self._is_active():
                logger.info(f"[SEQUENCER] Job {self.job_id} inactive, stopping before step {index + 1}")
                return False

            update = self._update_for(index)
            if update.step <= self._last_step:
                raise RuntimeError(
                    f"Progress for job {self.job_id} would regress: "
                    f"step {update.step} after {self._last_step}"
                )
            self._last_step = update.step
            await self._emit(update)

            await perform(stage)

        if not self._is_active():
            return False

        self._finished = True
        return True


def format_size(size_bytes: Optional[int]) -> str:
    """
    Format a byte count the way the worker reports it ('2.19GB', '52MB').

    Args:
        size_bytes: Size in bytes

    Returns:
        Compact size string
    """
    if size_bytes is None:
        return "Unknown"

    if size_bytes >= 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024 * 1024):.2f}GB"

    if size_bytes >= 1024 * 1024:
        return f"{int(math.floor(size_bytes / (1024 * 1024) + 0.5))}MB"

    if size_bytes >= 1024:
        return f"{int(math.floor(size_bytes / 1024 + 0.5))}KB"

    return f"{size_bytes}B"


def format_duration(seconds: Optional[float]) -> Optional[str]:
    """
    Format a duration as MM:SS (minutes may exceed 59, e.g. '54:30').

    Returns:
        Duration string, or None if unknown
    """
    if seconds is None:
        return None
    total = int(seconds)
    return f"{total // 60}:{total % 60:02d}"


def format_sample_rate(hertz: Optional[int]) -> Optional[str]:
    """
    Format a sample rate ('44.1kHz', '16kHz').

    Returns:
        Sample rate string, or None if unknown
    """
    if hertz is None:
        return None
    khz = hertz / 1000
    if khz == int(khz):
        return f"{int(khz)}kHz"
    return f"{khz:g}kHz"

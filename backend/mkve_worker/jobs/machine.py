"""
Job State Machine.

Owns one job's lifecycle from submission to its single terminal message:

    Submitted → Classified → Admitted → Running → Completed | Failed
    Submitted | Classified → Rejected

Every outbound message for the job goes through this class, which is how
the one-terminal-message rule is enforced:

- ready is sent on admission
- progress is sent per stage, only while Running
- engine stdout/stderr lines are relayed only while Running
- complete / error(terminal=True) is sent exactly once, then nothing else

Commands that arrive in the wrong state raise InvalidStateError and leave
the job untouched. The caller reports them as non-terminal errors.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Sequence

from ..config import WorkerConfig
from ..execution.base import LogStream, MediaEngine
from ..execution.errors import EngineExecutionError
from ..execution.progress import ProgressSequencer, ProgressUpdate
from ..execution.results import JobOutput
from ..execution.stages import Stage, StageContext, StageRunner, build_stage_plan
from ..protocol.channel import Channel, ChannelClosedError
from ..protocol.messages import (
    BudgetPayload,
    CompleteMessage,
    ErrorMessage,
    ErrorReason,
    ProgressMessage,
    ReadyMessage,
    _Message,
    engine_log_message,
    is_terminal,
)
from ..resources.estimator import estimate
from .arguments import classify
from .errors import ClassificationError, InvalidStateError, ResourceExceededError
from .models import Job, JobState, OperationKind
from .state import is_job_terminal, validate_transition

logger = logging.getLogger(__name__)


class JobStateMachine:
    """
    Drives a single job and emits its messages.

    Usage:
        machine = JobStateMachine("job-1", tokens, config, engine, channel)
        await machine.submit()        # ready or error
        task = machine.start()        # progress... then complete or error
        await machine.cancel()        # only while Running
    """

    def __init__(
        self,
        job_id: str,
        tokens: Sequence[str],
        config: WorkerConfig,
        engine: MediaEngine,
        channel: Channel,
        input_size: Optional[int] = None,
    ):
        """
        Initialize state machine.

        Args:
            job_id: Controller-assigned id, echoed in every message
            tokens: Flat argument list
            config: Worker configuration (ceiling read once, at submit)
            engine: Engine that completes stages
            channel: Where messages for this job are sent
            input_size: Declared input size in bytes, if the controller knows it
        """
        self.job = Job(id=job_id, tokens=list(tokens))
        self.config = config
        self.engine = engine
        self.channel = channel
        self.input_size = input_size

        self._task: Optional["asyncio.Task[JobState]"] = None
        self._terminal_sent = False
        self._cancelled = False

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def state(self) -> JobState:
        return self.job.state

    @property
    def finished(self) -> bool:
        """True once the job's terminal message has been sent."""
        return self._terminal_sent

    @property
    def features(self) -> List[str]:
        return list(self.config.features)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def submit(self) -> JobState:
        """
        Classify the job and decide admission.

        Returns:
            The resulting state (ADMITTED or REJECTED)

        Raises:
            InvalidStateError: If the job was already submitted
        """
        if self.job.state != JobState.SUBMITTED:
            raise InvalidStateError(self.job.id, self.job.state.value, "submit")

        try:
            description = classify(self.job.tokens, self.config)
        except ClassificationError as e:
            logger.info(f"[ADMISSION] Job {self.job.id} rejected: {e}")
            self._transition(JobState.REJECTED, failure_reason=e.reason.value)
            await self._emit(ErrorMessage(
                id=self.job.id,
                reason=ErrorReason(e.reason.value),
                message=str(e),
                terminal=True,
            ))
            return self.job.state

        self.job.description = description
        self._transition(JobState.CLASSIFIED)

        size = self._resolve_input_size(description.input_path)
        budget = estimate(size, description.operation_kind, config=self.config)
        self.job.budget = budget

        if not budget.within_ceiling:
            error = ResourceExceededError(self.job.id, budget.total_mb, budget.ceiling_mb)
            logger.warning(f"[ADMISSION] {error}")
            self._transition(JobState.REJECTED, failure_reason=ErrorReason.RESOURCE_EXCEEDED.value)
            await self._emit(ErrorMessage(
                id=self.job.id,
                reason=ErrorReason.RESOURCE_EXCEEDED,
                message=str(error),
                terminal=True,
                budget=BudgetPayload.from_budget(budget),
            ))
            return self.job.state

        self._transition(JobState.ADMITTED)
        logger.info(
            f"[ADMISSION] Job {self.job.id} admitted: {description.operation_kind.value}, "
            f"{budget.describe()}"
        )
        await self._emit(ReadyMessage(
            id=self.job.id,
            message=f"Job admitted: {budget.describe()}",
            version=self.config.version,
            features=self.features,
            memory_required=f"{budget.total_mb}MB",
            budget=BudgetPayload.from_budget(budget),
        ))
        return self.job.state

    def start(self) -> "asyncio.Task[JobState]":
        """
        Move an admitted job to Running and schedule its stages.

        Raises:
            InvalidStateError: If the job is not Admitted
        """
        self._begin()
        self._task = asyncio.ensure_future(self._execute())
        return self._task

    async def run(self) -> JobState:
        """
        Execute an admitted job through its stage plan.

        Returns:
            The final state (COMPLETED or FAILED)

        Raises:
            InvalidStateError: If the job is not Admitted
        """
        self._begin()
        return await self._execute()

    def _begin(self) -> None:
        if self.job.state != JobState.ADMITTED or self._task is not None:
            raise InvalidStateError(self.job.id, self.job.state.value, "run")
        self._transition(JobState.RUNNING)
        self.job.started_at = datetime.now()

    async def _execute(self) -> JobState:
        description = self.job.description
        stages = build_stage_plan(description, self.engine.name)
        context = StageContext(
            description=description,
            input_size_bytes=self.job.budget.input_size_bytes if self.job.budget else 0,
        )
        runner = StageRunner(
            self.engine,
            log=self._relay_log if self.config.relay_engine_log else None,
        )
        sequencer = ProgressSequencer(
            self.job.id,
            stages,
            emit=self._emit_progress,
            is_active=lambda: self.job.state == JobState.RUNNING,
        )

        logger.info(f"[LIFECYCLE] Job {self.job.id} running {len(stages)} stage(s)")

        async def perform(stage: Stage) -> None:
            await runner.perform(stage, context)

        try:
            finished = await sequencer.run(perform)
        except asyncio.CancelledError:
            if self._cancelled:
                logger.info(f"[LIFECYCLE] Job {self.job.id} task stopped after cancel")
                return self.job.state
            if self.job.state == JobState.RUNNING:
                self._transition(JobState.FAILED, failure_reason=ErrorReason.CANCELLED.value)
            raise
        except EngineExecutionError as e:
            logger.error(f"[LIFECYCLE] Job {self.job.id} failed: {e}")
            await self._fail(ErrorReason.EXECUTION_ERROR, str(e))
            return self.job.state
        except ChannelClosedError:
            logger.warning(f"[LIFECYCLE] Job {self.job.id} lost its channel")
            if self.job.state == JobState.RUNNING:
                self._transition(JobState.FAILED, failure_reason="ChannelClosed")
            return self.job.state
        except Exception as e:
            logger.exception(f"[LIFECYCLE] Job {self.job.id} crashed")
            await self._fail(ErrorReason.EXECUTION_ERROR, f"Unexpected error: {e}")
            return self.job.state

        if not finished or self.job.state != JobState.RUNNING:
            return self.job.state

        output = JobOutput.from_context(context)
        self._transition(JobState.COMPLETED)
        logger.info(f"[LIFECYCLE] Job {self.job.id} completed: {output.output_path}")
        await self._emit(CompleteMessage.from_output(
            self.job.id,
            output,
            self.features,
            message=self._completion_message(),
        ))
        return self.job.state

    async def cancel(self) -> JobState:
        """
        Cancel a running job.

        The cancellation error is the job's terminal message. No progress
        follows it.

        Raises:
            InvalidStateError: If the job is not Running
        """
        if self.job.state != JobState.RUNNING:
            raise InvalidStateError(self.job.id, self.job.state.value, "cancel")

        self._cancelled = True
        self._transition(JobState.FAILED, failure_reason=ErrorReason.CANCELLED.value)
        logger.info(f"[LIFECYCLE] Job {self.job.id} cancelled at step {self.job.stage_index + 1}")

        try:
            await self._emit(ErrorMessage(
                id=self.job.id,
                reason=ErrorReason.CANCELLED,
                message="Job cancelled by controller",
                terminal=True,
            ))
        finally:
            if self._task is not None and not self._task.done():
                self._task.cancel()

        return self.job.state

    async def wait(self) -> JobState:
        """Wait for a started job's task to finish."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        return self.job.state

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _completion_message(self) -> str:
        if self.job.description.operation_kind == OperationKind.EXTRACT:
            return "Audio extraction completed successfully"
        return f"{self.engine.name} processing completed"

    def _resolve_input_size(self, path: str) -> int:
        if self.input_size is not None:
            return self.input_size
        size = self.engine.input_size(path)
        if size is None:
            logger.debug(f"[ADMISSION] Size of {path} unknown, estimating from 0 bytes")
            return 0
        return size

    def _transition(self, target: JobState, failure_reason: Optional[str] = None) -> None:
        validate_transition(self.job.state, target)
        logger.debug(f"[LIFECYCLE] Job {self.job.id}: {self.job.state.value} -> {target.value}")
        self.job.state = target
        if failure_reason is not None:
            self.job.failure_reason = failure_reason
        if is_job_terminal(target):
            self.job.completed_at = datetime.now()

    async def _fail(self, reason: ErrorReason, message: str) -> None:
        if self.job.state != JobState.RUNNING:
            return
        self._transition(JobState.FAILED, failure_reason=reason.value)
        await self._emit(ErrorMessage(
            id=self.job.id,
            reason=reason,
            message=message,
            terminal=True,
        ))

    async def _emit_progress(self, update: ProgressUpdate) -> None:
        if update.index < self.job.stage_index:
            raise RuntimeError(f"Stage index for job {self.job.id} would decrease")
        self.job.stage_index = update.index
        await self._emit(ProgressMessage.from_update(update))

    async def _relay_log(self, stream: LogStream, line: str) -> None:
        if self.job.state != JobState.RUNNING:
            logger.debug(f"[LIFECYCLE] Dropping {stream.value} line for job {self.job.id}: not running")
            return
        await self._emit(engine_log_message(self.job.id, stream, line))

    async def _emit(self, message: _Message) -> bool:
        """
        Send a message for this job unless its terminal message already went out.

        Returns:
            True if the message was sent
        """
        if self._terminal_sent:
            logger.warning(
                f"[LIFECYCLE] Dropping {message.type} for job {self.job.id}: "
                f"terminal message already sent"
            )
            return False
        if is_terminal(message):
            self._terminal_sent = True
        await self.channel.send(message)
        return True

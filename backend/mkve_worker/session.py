"""
Worker session: the command dispatcher on one channel.

A session owns a Channel, an engine and a registry of live jobs. It reads
inbound commands in order and routes them:

    load    → ready (worker-level)
    test    → test-result
    submit  → JobStateMachine.submit()     (ready | error)
    run     → JobStateMachine.start()      (progress... complete | error)
    cancel  → JobStateMachine.cancel()     (error: Cancelled)

Design rules:
- Job commands before load are answered with NotLoaded
- A command that cannot apply (unknown id, wrong state, bad payload) gets a
  non-terminal error and changes nothing
- Each running job is its own asyncio task; the session keeps reading
- A job leaves the registry once its terminal message has been sent
"""

import asyncio
import logging
import uuid
from typing import Optional, Set

from .config import DEFAULT_WORKER_CONFIG, WorkerConfig
from .execution.base import MediaEngine
from .jobs.errors import InvalidStateError, JobNotFoundError
from .jobs.machine import JobStateMachine
from .jobs.models import JobState
from .jobs.registry import JobRegistry
from .protocol.channel import Channel, ChannelClosedError
from .protocol.messages import (
    CancelCommand,
    ErrorMessage,
    ErrorReason,
    InitializedMessage,
    LoadCommand,
    MessageValidationError,
    ReadyMessage,
    RunCommand,
    SelfTestCommand,
    SelfTestResultMessage,
    SubmitCommand,
    _Message,
)

logger = logging.getLogger(__name__)


class WorkerSession:
    """
    One controller connection.

    Usage:
        session = WorkerSession(channel, engine, config)
        await session.serve()     # until the channel closes
    """

    def __init__(
        self,
        channel: Channel,
        engine: MediaEngine,
        config: WorkerConfig = DEFAULT_WORKER_CONFIG,
    ):
        self.channel = channel
        self.engine = engine
        self.config = config
        self.registry = JobRegistry()

        self.loaded = False
        self._initialized = False
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Announce the worker. Sent once per session."""
        if self._initialized:
            return
        self._initialized = True
        await self.channel.send(InitializedMessage(
            message=f"{self.engine.name} MKVE worker initialized",
            version=self.config.version,
            memory_allocated=self.config.memory_allocated,
            memory_recommended=(
                f"{self.config.memory_allocated} minimum, "
                f"{self.config.memory_ceiling_mb}MB ceiling"
            ),
            features=list(self.config.features),
        ))
        logger.info(f"[SESSION] Initialized (engine {self.engine.name} {self.engine.version})")

    async def serve(self) -> None:
        """
        Read and dispatch commands until the channel closes.

        Running jobs are cancelled when the channel goes away.
        """
        await self.start()
        try:
            while True:
                try:
                    message = await self.channel.receive()
                except ChannelClosedError:
                    logger.info("[SESSION] Channel closed")
                    break
                except MessageValidationError as e:
                    logger.warning(f"[SESSION] Rejected payload: {e}")
                    await self._command_error(ErrorReason.INVALID_MESSAGE, str(e))
                    continue

                try:
                    await self.handle(message)
                except ChannelClosedError:
                    logger.info(f"[SESSION] Channel closed while handling {message.type}")
                    break
        finally:
            await self.shutdown()

    async def wait_idle(self) -> None:
        """Wait until every running job task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel running job tasks and forget all jobs."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.registry.count():
            logger.info(f"[SESSION] Dropping {self.registry.count()} live job(s)")
        self.registry.clear()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle(self, message: _Message) -> None:
        """Route one parsed inbound command."""
        logger.debug(f"[SESSION] <- {message.type}")

        if isinstance(message, LoadCommand):
            await self._handle_load()
        elif isinstance(message, SelfTestCommand):
            await self._handle_test()
        elif not self.loaded:
            job_id = getattr(message, "id", None)
            await self._command_error(
                ErrorReason.NOT_LOADED,
                f"{self.engine.name} not loaded yet",
                job_id=job_id if job_id in self.registry else None,
            )
        elif isinstance(message, SubmitCommand):
            await self._handle_submit(message)
        elif isinstance(message, RunCommand):
            await self._handle_run(message)
        elif isinstance(message, CancelCommand):
            await self._handle_cancel(message)
        else:
            await self._command_error(ErrorReason.INVALID_MESSAGE, f"Unsupported command: {message.type}")

    async def _handle_load(self) -> None:
        self.loaded = True
        logger.info("[SESSION] Engine loaded")
        await self.channel.send(ReadyMessage(
            message=f"{self.engine.name} MKVE worker loaded and ready",
            version=self.config.version,
            features=list(self.config.features),
            memory_required=f"{self.config.memory_allocated} minimum",
        ))

    async def _handle_test(self) -> None:
        if not self.loaded:
            await self._command_error(
                ErrorReason.NOT_LOADED,
                f"{self.engine.name} worker not ready for testing",
            )
            return
        await self.channel.send(SelfTestResultMessage(
            success=True,
            message=f"{self.engine.name} worker is ready for processing",
            features=list(self.config.features),
            memory_configured=self.config.memory_allocated,
        ))

    async def _handle_submit(self, command: SubmitCommand) -> Optional[JobStateMachine]:
        if command.id in self.registry:
            await self._command_error(
                ErrorReason.INVALID_STATE,
                f"Job {command.id} already exists",
                job_id=command.id,
            )
            return None

        if command.input_files or command.output_files:
            logger.debug(
                f"[SESSION] Job {command.id} declares inputs {command.input_files} "
                f"and outputs {command.output_files}"
            )

        machine = JobStateMachine(
            command.id,
            command.args,
            self.config,
            self.engine,
            self.channel,
            input_size=command.input_size,
        )
        self.registry.add(machine)
        await machine.submit()

        if machine.finished:
            self.registry.remove(command.id)
        return machine

    async def _handle_run(self, command: RunCommand) -> None:
        job_id = command.id or uuid.uuid4().hex
        machine = self.registry.get(job_id)

        if machine is None:
            if command.args is None:
                await self._command_error(ErrorReason.JOB_NOT_FOUND, f"Job not found: {job_id}")
                return
            # One-shot form: submit, then start if admitted
            machine = await self._handle_submit(SubmitCommand(
                id=job_id,
                args=command.args,
                input_files=command.input_files,
                output_files=command.output_files,
                input_size=command.input_size,
            ))
            if machine is None or machine.state != JobState.ADMITTED:
                return

        try:
            task = machine.start()
        except InvalidStateError as e:
            await self._command_error(ErrorReason.INVALID_STATE, str(e), job_id=job_id)
            return

        self._tasks.add(task)
        task.add_done_callback(lambda t, m=machine: self._job_done(t, m))

    async def _handle_cancel(self, command: CancelCommand) -> None:
        try:
            machine = self.registry.get_or_raise(command.id)
        except JobNotFoundError as e:
            await self._command_error(ErrorReason.JOB_NOT_FOUND, str(e))
            return

        try:
            await machine.cancel()
        except InvalidStateError as e:
            await self._command_error(ErrorReason.INVALID_STATE, str(e), job_id=command.id)
            return

        if machine.finished:
            self.registry.remove(command.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _job_done(self, task: asyncio.Task, machine: JobStateMachine) -> None:
        self._tasks.discard(task)
        if machine.finished or machine.state in (JobState.COMPLETED, JobState.FAILED):
            self.registry.remove(machine.job_id)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[SESSION] Job {machine.job_id} task raised: {task.exception()}")

    async def _command_error(
        self,
        reason: ErrorReason,
        message: str,
        job_id: Optional[str] = None,
    ) -> None:
        """
        Report a command that could not be applied.

        Non-terminal: any job it names is left as it was. Ids of jobs that
        are not live are left out, since nothing may follow a terminal message.
        """
        logger.info(f"[SESSION] {reason.value}: {message}")
        try:
            await self.channel.send(ErrorMessage(
                id=job_id,
                reason=reason,
                message=message,
                terminal=False,
            ))
        except ChannelClosedError:
            logger.warning(f"[SESSION] Could not report {reason.value}: channel closed")

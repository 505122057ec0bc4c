"""
Job state machine tests.

Verifies:
- submit: ready on admission, terminal error on classification or budget failure
- run: full progress sequence then exactly one complete
- run outside Admitted is InvalidState and leaves the job untouched
- Engine failures become a single terminal ExecutionError
- Cancellation after 3 of 8 stages: 3 progress, one Cancelled error, nothing after
- Engine stdout/stderr lines are relayed only while the job runs

Async code is driven with asyncio.run; the engine is simulated.
"""

import asyncio

import pytest

from mkve_worker.config import DEFAULT_WORKER_CONFIG
from mkve_worker.execution.simulated import SimulatedEngine, SimulatedMedia
from mkve_worker.jobs.errors import InvalidStateError
from mkve_worker.jobs.machine import JobStateMachine
from mkve_worker.jobs.models import JobState, OperationKind
from mkve_worker.protocol import (
    CompleteMessage,
    ErrorMessage,
    ErrorReason,
    MemoryChannel,
    ProgressMessage,
    ReadyMessage,
    StderrMessage,
    StdoutMessage,
    is_terminal,
)


MOVIE_TOKENS = [
    "-i", "movie.mkv",
    "-c:a", "libmp3lame",
    "-b:a", "128k",
    "-ar", "44100",
    "out.mp3",
]


class GatedChannel(MemoryChannel):
    """
    MemoryChannel whose send blocks after a given number of progress messages.

    Stands in for a slow transport: the job is suspended mid-sequence until
    the gate opens (or its task is cancelled).
    """

    def __init__(self, block_after_progress: int):
        super().__init__()
        self.block_after_progress = block_after_progress
        self.reached = asyncio.Event()
        self.gate = asyncio.Event()

    async def send(self, message):
        await super().send(message)
        progress_count = sum(1 for m in self.sent if isinstance(m, ProgressMessage))
        if isinstance(message, ProgressMessage) and progress_count == self.block_after_progress:
            self.reached.set()
            await self.gate.wait()


def _without_log(messages):
    """Protocol messages only, with relayed engine output removed."""
    return [m for m in messages if not isinstance(m, (StdoutMessage, StderrMessage))]


def _machine(engine, channel, tokens=MOVIE_TOKENS, config=DEFAULT_WORKER_CONFIG, input_size=None, job_id="job-1"):
    return JobStateMachine(job_id, tokens, config, engine, channel, input_size=input_size)


class TestSubmit:
    """Classification and admission."""

    def test_admitted_job_gets_ready(self, engine):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            state = await machine.submit()
            return machine, state, channel.sent

        machine, state, sent = asyncio.run(go())

        assert state == JobState.ADMITTED
        assert len(sent) == 1
        ready = sent[0]
        assert isinstance(ready, ReadyMessage)
        assert ready.id == "job-1"
        assert ready.memory_required == "166MB"
        assert ready.budget.total_mb == 166
        assert ready.budget.within_ceiling is True
        assert machine.job.description.operation_kind == OperationKind.EXTRACT
        assert machine.job.budget.input_size_bytes == engine.input_size("movie.mkv")

    @pytest.mark.parametrize("tokens, reason", [
        (["-c:a", "libmp3lame", "out.mp3"], ErrorReason.MISSING_INPUT),
        (["-i", "movie.mkv", "-c:a", "libmp3lame"], ErrorReason.MISSING_OUTPUT),
    ])
    def test_classification_failure_rejects(self, engine, tokens, reason):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel, tokens=tokens)
            await machine.submit()
            return machine, channel.sent

        machine, sent = asyncio.run(go())

        assert machine.state == JobState.REJECTED
        assert machine.job.description is None
        assert len(sent) == 1
        assert isinstance(sent[0], ErrorMessage)
        assert sent[0].reason == reason
        assert sent[0].terminal is True

    def test_over_ceiling_rejected_before_engine_work(self, engine):
        """ResourceExceeded is reported at the ready gate, with the budget."""
        config = DEFAULT_WORKER_CONFIG.with_updates(memory_ceiling_mb=150)

        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel, config=config)
            await machine.submit()
            return machine, channel.sent

        machine, sent = asyncio.run(go())

        assert machine.state == JobState.REJECTED
        assert [type(m) for m in sent] == [ErrorMessage]
        assert sent[0].reason == ErrorReason.RESOURCE_EXCEEDED
        assert sent[0].budget.total_mb == 166
        assert sent[0].budget.ceiling_mb == 150
        assert "150MB" in sent[0].message
        assert engine.outputs == {}

    def test_declared_size_wins(self, engine):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel, input_size=0)
            await machine.submit()
            return machine

        machine = asyncio.run(go())

        assert machine.job.budget.total_mb == 100

    def test_unknown_size_estimates_from_zero(self):
        engine = SimulatedEngine(use_filesystem=False)

        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel, tokens=["-i", "nowhere.mp4", "out.mp3"])
            await machine.submit()
            return machine

        machine = asyncio.run(go())

        assert machine.state == JobState.ADMITTED
        assert machine.job.budget.input_size_bytes == 0

    def test_submit_twice_is_invalid(self, engine):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            await machine.submit()
            with pytest.raises(InvalidStateError):
                await machine.submit()
            return channel.sent

        sent = asyncio.run(go())

        assert len(sent) == 1


class TestRun:
    """Execution through the stage plan."""

    def test_full_extract_sequence(self, engine):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            await machine.submit()
            state = await machine.run()
            return machine, state, channel.sent

        machine, state, sent = asyncio.run(go())

        assert state == JobState.COMPLETED
        assert isinstance(sent[0], ReadyMessage)
        progress = [m for m in sent if isinstance(m, ProgressMessage)]
        assert [p.step for p in progress] == list(range(1, 9))
        assert [p.progress for p in progress] == [0, 13, 25, 38, 50, 63, 75, 88]
        assert progress[0].data == "Opening MKV file..."
        assert progress[5].data == "Encoding to MP3..."

        complete = sent[-1]
        assert isinstance(complete, CompleteMessage)
        assert sent.index(progress[-1]) < sent.index(complete)
        assert complete.id == "job-1"
        assert complete.input == "movie.mkv"
        assert complete.output == "out.mp3"
        assert complete.input_size == "2.19GB"
        assert complete.output_size == "52MB"
        assert complete.encoding == "MP3"
        assert complete.bitrate == "128k"
        assert complete.sample_rate == "44.1kHz"
        assert complete.message == "Audio extraction completed successfully"
        assert complete.features == list(DEFAULT_WORKER_CONFIG.features)

        assert machine.job.stage_index == 7
        assert machine.job.completed_at is not None
        assert machine.finished is True
        assert "out.mp3" in engine.outputs

    def test_generic_single_stage(self):
        engine = SimulatedEngine(media={"clip.mp4": SimulatedMedia(size_bytes=500_000)}, use_filesystem=False)

        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel, tokens=["-i", "clip.mp4", "-c", "copy", "clip.mov"])
            await machine.submit()
            await machine.run()
            return channel.sent

        sent = asyncio.run(go())

        progress = [m for m in sent if isinstance(m, ProgressMessage)]
        assert len(progress) == 1
        assert progress[0].data == "Processing with FFmpeg..."
        assert progress[0].progress == 0
        assert progress[0].total_steps == 1
        assert isinstance(sent[-1], CompleteMessage)
        assert sent[-1].message == "FFmpeg processing completed"

    def test_run_while_submitted_is_invalid_state(self, engine):
        """A run before ready is rejected and changes nothing."""
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            with pytest.raises(InvalidStateError) as exc_info:
                await machine.run()
            return machine, exc_info.value, channel.sent

        machine, error, sent = asyncio.run(go())

        assert machine.state == JobState.SUBMITTED
        assert machine.job.stage_index == 0
        assert error.current_state == "submitted"
        assert error.command == "run"
        assert sent == []

    def test_run_twice_is_invalid_state(self, engine):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            await machine.submit()
            await machine.run()
            count = len(channel.sent)
            with pytest.raises(InvalidStateError):
                await machine.run()
            return machine, count, channel.sent

        machine, count, sent = asyncio.run(go())

        assert machine.state == JobState.COMPLETED
        assert len(sent) == count

    def test_engine_failure_is_single_terminal_error(self, engine):
        engine.fail_on = "encode"

        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            await machine.submit()
            state = await machine.run()
            return machine, state, channel.sent

        machine, state, sent = asyncio.run(go())

        assert state == JobState.FAILED
        errors = [m for m in sent if isinstance(m, ErrorMessage)]
        assert len(errors) == 1
        assert errors[0].reason == ErrorReason.EXECUTION_ERROR
        assert errors[0].terminal is True
        assert "[encode]" in errors[0].message
        assert sent[-1] is errors[0]
        # Encode is stage 6: six progress messages were emitted first
        assert len([m for m in sent if isinstance(m, ProgressMessage)]) == 6
        assert machine.job.failure_reason == "ExecutionError"

    def test_missing_input_file_fails_at_open(self):
        engine = SimulatedEngine(use_filesystem=False)

        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel, tokens=["-i", "ghost.mkv", "out.mp3"])
            await machine.submit()
            await machine.run()
            return machine, channel.sent

        machine, sent = asyncio.run(go())

        assert machine.state == JobState.FAILED
        assert [type(m) for m in _without_log(sent)] == [ReadyMessage, ProgressMessage, ErrorMessage]
        assert "ghost.mkv" in sent[-1].message


class TestCancel:
    """Cancellation of running jobs."""

    def test_cancel_after_three_stages(self, engine):
        """Exactly 3 progress messages, then one Cancelled error, then nothing."""
        async def go():
            channel = GatedChannel(block_after_progress=3)
            machine = _machine(engine, channel)
            await machine.submit()
            task = machine.start()

            await asyncio.wait_for(channel.reached.wait(), timeout=5)
            state = await machine.cancel()
            channel.gate.set()
            await machine.wait()
            # Let anything still scheduled run
            await asyncio.sleep(0.01)
            return machine, state, task, channel.sent

        machine, state, task, sent = asyncio.run(go())

        assert state == JobState.FAILED
        assert machine.job.failure_reason == "Cancelled"
        assert task.done()

        job_messages = _without_log(sent[1:])
        assert [type(m) for m in job_messages] == [
            ProgressMessage, ProgressMessage, ProgressMessage, ErrorMessage,
        ]
        assert [m.step for m in job_messages[:3]] == [1, 2, 3]
        assert job_messages[-1].reason == ErrorReason.CANCELLED
        assert job_messages[-1].terminal is True
        assert sum(1 for m in sent if is_terminal(m)) == 1
        assert "out.mp3" not in engine.outputs

    def test_cancel_before_task_runs(self, engine):
        """Cancelling right after start emits only the Cancelled error."""
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            await machine.submit()
            machine.start()
            await machine.cancel()
            await machine.wait()
            return channel.sent

        sent = asyncio.run(go())

        assert [type(m) for m in sent] == [ReadyMessage, ErrorMessage]
        assert sent[-1].reason == ErrorReason.CANCELLED

    def test_cancel_requires_running(self, engine):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            await machine.submit()
            with pytest.raises(InvalidStateError):
                await machine.cancel()
            return machine, channel.sent

        machine, sent = asyncio.run(go())

        assert machine.state == JobState.ADMITTED
        assert len(sent) == 1

    def test_cancel_after_complete_is_invalid(self, engine):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            await machine.submit()
            await machine.run()
            count = len(channel.sent)
            with pytest.raises(InvalidStateError):
                await machine.cancel()
            return count, channel.sent

        count, sent = asyncio.run(go())

        assert len(sent) == count
        assert isinstance(sent[-1], CompleteMessage)


class TestTerminalGuard:
    """Nothing is sent for a job after its terminal message."""

    def test_late_emit_dropped(self, engine, caplog):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel, tokens=["-i", "movie.mkv"])
            await machine.submit()
            sent_late = await machine._emit(ErrorMessage(
                id="job-1", reason=ErrorReason.EXECUTION_ERROR, message="late", terminal=True,
            ))
            return sent_late, channel.sent

        with caplog.at_level("WARNING"):
            sent_late, sent = asyncio.run(go())

        assert sent_late is False
        assert len(sent) == 1
        assert "terminal message already sent" in caplog.text


class TestEngineLog:
    """Engine output relayed as stdout/stderr messages."""

    def test_log_lines_precede_complete(self, engine):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            await machine.submit()
            await machine.run()
            return channel.sent

        sent = asyncio.run(go())

        stderr = [m for m in sent if isinstance(m, StderrMessage)]
        stdout = [m for m in sent if isinstance(m, StdoutMessage)]
        assert len(stderr) == 3
        assert len(stdout) == 1
        assert stderr[0].data == "Input #0, from 'movie.mkv'"
        assert "out.mp3" in stdout[0].data
        assert all(m.id == "job-1" for m in stderr + stdout)
        assert isinstance(sent[-1], CompleteMessage)
        assert max(sent.index(m) for m in stderr + stdout) < len(sent) - 1

    def test_log_line_follows_its_stage_announcement(self, engine):
        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            await machine.submit()
            await machine.run()
            return channel.sent

        sent = asyncio.run(go())

        assert isinstance(sent[1], ProgressMessage)
        assert sent[1].stage == "open"
        assert isinstance(sent[2], StderrMessage)
        assert sent[2].to_wire() == {"type": "stderr", "id": "job-1", "data": "Input #0, from 'movie.mkv'"}

    def test_no_log_lines_after_cancel(self, engine):
        async def go():
            channel = GatedChannel(block_after_progress=3)
            machine = _machine(engine, channel)
            await machine.submit()
            machine.start()

            await asyncio.wait_for(channel.reached.wait(), timeout=5)
            await machine.cancel()
            channel.gate.set()
            await machine.wait()
            await asyncio.sleep(0.01)
            return channel.sent

        sent = asyncio.run(go())

        cancelled = sent[-1]
        assert isinstance(cancelled, ErrorMessage)
        assert cancelled.reason == ErrorReason.CANCELLED
        log_lines = [m for m in sent if isinstance(m, (StdoutMessage, StderrMessage))]
        assert [m.data for m in log_lines] == [
            "Input #0, from 'movie.mkv'",
            "Found 2 stream(s) in 'movie.mkv'",
        ]

    def test_slow_engine_cancelled_mid_operation(self):
        engine = SimulatedEngine(
            media={"clip.mkv": SimulatedMedia(size_bytes=1_000_000)},
            stage_delay=0.05,
            use_filesystem=False,
        )

        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel, tokens=["-i", "clip.mkv", "clip.mp3"])
            await machine.submit()
            machine.start()
            await asyncio.sleep(0.01)
            await machine.cancel()
            await machine.wait()
            await asyncio.sleep(0.1)
            return channel.sent

        sent = asyncio.run(go())

        terminal_index = next(i for i, m in enumerate(sent) if is_terminal(m))
        assert sent[terminal_index].reason == ErrorReason.CANCELLED
        assert sent[terminal_index + 1:] == []

    def test_failure_reported_on_stderr_first(self, engine):
        engine.fail_on = "encode"

        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel)
            await machine.submit()
            await machine.run()
            return channel.sent

        sent = asyncio.run(go())

        assert isinstance(sent[-2], StderrMessage)
        assert sent[-2].data.startswith("Simulated encode failure")
        assert isinstance(sent[-1], ErrorMessage)
        assert sent[-1].terminal is True

    def test_relay_disabled(self, engine):
        config = DEFAULT_WORKER_CONFIG.with_updates(relay_engine_log=False)

        async def go():
            channel = MemoryChannel()
            machine = _machine(engine, channel, config=config)
            await machine.submit()
            await machine.run()
            return channel.sent

        sent = asyncio.run(go())

        assert _without_log(sent) == sent
        assert isinstance(sent[-1], CompleteMessage)

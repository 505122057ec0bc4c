"""
Wire message schema.

Every message is a JSON object with a `type` discriminator. Field names on
the wire are camelCase (`totalSteps`, `inputSize`); Python attributes are
snake_case. Serialize with `to_wire()`, parse with `parse_inbound()` /
`parse_outbound()`.

Inbound (controller → worker):
    load, test, submit, run, cancel

Outbound (worker → controller):
    initialized, ready, test-result, progress, stdout, stderr, complete, error

Design rules:
- Unknown fields are rejected, never silently dropped
- A job id is echoed in every per-job message
- complete, and error with terminal=true, end a job; nothing follows them
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from ..execution.base import LogStream
from ..execution.progress import ProgressUpdate, format_duration, format_sample_rate, format_size
from ..execution.results import JobOutput
from ..jobs.models import ResourceBudget


class ErrorReason(str, Enum):
    """Reason codes carried by error messages."""

    MISSING_INPUT = "MissingInput"
    MISSING_OUTPUT = "MissingOutput"
    RESOURCE_EXCEEDED = "ResourceExceeded"
    INVALID_STATE = "InvalidState"
    EXECUTION_ERROR = "ExecutionError"
    CANCELLED = "Cancelled"
    NOT_LOADED = "NotLoaded"
    JOB_NOT_FOUND = "JobNotFound"
    INVALID_MESSAGE = "InvalidMessage"


class MessageValidationError(Exception):
    """Raised when a payload does not match any known message."""

    def __init__(self, message: str, payload: Any = None):
        self.payload = payload
        super().__init__(message)


class _Message(BaseModel):
    """Shared configuration for all wire messages."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-compatible dict with camelCase keys; unset optionals omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============================================================================
# Inbound
# ============================================================================

class LoadCommand(_Message):
    type: Literal["load"] = "load"


class SelfTestCommand(_Message):
    type: Literal["test"] = "test"


class SubmitCommand(_Message):
    """Classify and admit a job; the worker answers with ready or error."""

    type: Literal["submit"] = "submit"
    id: str = Field(min_length=1)
    args: List[str]
    input_files: List[str] = Field(default_factory=list, alias="inputFiles")
    output_files: List[str] = Field(default_factory=list, alias="outputFiles")
    input_size: Optional[int] = Field(default=None, alias="inputSize", ge=0)


class RunCommand(_Message):
    """
    Start an admitted job.

    With `args` and an id the worker has not seen, the job is submitted and
    started in one step. Without an id the worker assigns one.
    """

    type: Literal["run"] = "run"
    id: Optional[str] = Field(default=None, min_length=1)
    args: Optional[List[str]] = None
    input_files: List[str] = Field(default_factory=list, alias="inputFiles")
    output_files: List[str] = Field(default_factory=list, alias="outputFiles")
    input_size: Optional[int] = Field(default=None, alias="inputSize", ge=0)


class CancelCommand(_Message):
    type: Literal["cancel"] = "cancel"
    id: str = Field(min_length=1)


InboundMessage = Annotated[
    Union[LoadCommand, SelfTestCommand, SubmitCommand, RunCommand, CancelCommand],
    Field(discriminator="type"),
]


# ============================================================================
# Outbound
# ============================================================================

class BudgetPayload(_Message):
    """ResourceBudget as carried in ready/error messages."""

    input_size_bytes: int = Field(alias="inputSizeBytes")
    base_mb: int = Field(alias="baseMB")
    variable_mb: int = Field(alias="variableMB")
    margin_mb: int = Field(alias="marginMB")
    total_mb: int = Field(alias="totalMB")
    ceiling_mb: int = Field(alias="ceilingMB")
    within_ceiling: bool = Field(alias="withinCeiling")

    @classmethod
    def from_budget(cls, budget: ResourceBudget) -> "BudgetPayload":
        return cls(
            input_size_bytes=budget.input_size_bytes,
            base_mb=budget.base_mb,
            variable_mb=budget.variable_mb,
            margin_mb=budget.margin_mb,
            total_mb=budget.total_mb,
            ceiling_mb=budget.ceiling_mb,
            within_ceiling=budget.within_ceiling,
        )


class InitializedMessage(_Message):
    """Sent once when a session starts."""

    type: Literal["initialized"] = "initialized"
    message: str
    version: str
    memory_allocated: str = Field(alias="memoryAllocated")
    memory_recommended: str = Field(alias="memoryRecommended")
    features: List[str] = Field(default_factory=list)


class ReadyMessage(_Message):
    """
    Worker loaded (no id) or job admitted (with id and budget).
    """

    type: Literal["ready"] = "ready"
    id: Optional[str] = None
    message: str
    version: str
    features: List[str] = Field(default_factory=list)
    memory_required: str = Field(alias="memoryRequired")
    budget: Optional[BudgetPayload] = None


class SelfTestResultMessage(_Message):
    type: Literal["test-result"] = "test-result"
    success: bool
    message: str
    features: List[str] = Field(default_factory=list)
    memory_configured: str = Field(alias="memoryConfigured")


class ProgressMessage(_Message):
    type: Literal["progress"] = "progress"
    id: str
    stage: str
    data: str
    progress: int = Field(ge=0, le=100)
    step: int = Field(ge=1)
    total_steps: int = Field(alias="totalSteps", ge=1)

    @model_validator(mode="after")
    def check_step_bounds(self) -> "ProgressMessage":
        if self.step > self.total_steps:
            raise ValueError(f"step {self.step} exceeds totalSteps {self.total_steps}")
        return self

    @classmethod
    def from_update(cls, update: ProgressUpdate) -> "ProgressMessage":
        return cls(
            id=update.job_id,
            stage=update.stage,
            data=update.label,
            progress=update.progress,
            step=update.step,
            total_steps=update.total_steps,
        )


class CompleteMessage(_Message):
    type: Literal["complete"] = "complete"
    id: str
    message: str
    input: str
    output: str
    input_size: str = Field(alias="inputSize")
    output_size: Optional[str] = Field(default=None, alias="outputSize")
    encoding: str
    bitrate: Optional[str] = None
    channels: Optional[int] = None
    sample_rate: Optional[str] = Field(default=None, alias="sampleRate")
    duration: Optional[str] = None
    features: List[str] = Field(default_factory=list)

    @classmethod
    def from_output(
        cls,
        job_id: str,
        output: JobOutput,
        features: List[str],
        message: str = "Job completed successfully",
    ) -> "CompleteMessage":
        return cls(
            id=job_id,
            message=message,
            input=output.input_path,
            output=output.output_path,
            input_size=format_size(output.input_size_bytes),
            output_size=format_size(output.output_size_bytes) if output.output_size_bytes is not None else None,
            encoding=output.encoding,
            bitrate=output.bitrate,
            channels=output.channels,
            sample_rate=format_sample_rate(output.sample_rate_hz),
            duration=format_duration(output.duration_seconds),
            features=features,
        )


class StdoutMessage(_Message):
    """One line the engine wrote to stdout while running a job."""

    type: Literal["stdout"] = "stdout"
    id: str
    data: str


class StderrMessage(_Message):
    """One line the engine wrote to stderr while running a job."""

    type: Literal["stderr"] = "stderr"
    id: str
    data: str


def engine_log_message(job_id: str, stream: LogStream, line: str) -> Union[StdoutMessage, StderrMessage]:
    """Wrap an engine output line for the controller."""
    if stream == LogStream.STDOUT:
        return StdoutMessage(id=job_id, data=line)
    return StderrMessage(id=job_id, data=line)


class ErrorMessage(_Message):
    """
    Failure report.

    terminal=True ends the job it names. terminal=False reports a rejected
    command (misordered, unknown job, malformed) and leaves any job as it was.
    """

    type: Literal["error"] = "error"
    id: Optional[str] = None
    reason: ErrorReason
    message: str
    terminal: bool = False
    budget: Optional[BudgetPayload] = None


OutboundMessage = Annotated[
    Union[
        InitializedMessage,
        ReadyMessage,
        SelfTestResultMessage,
        ProgressMessage,
        StdoutMessage,
        StderrMessage,
        CompleteMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_INBOUND_ADAPTER: TypeAdapter = TypeAdapter(InboundMessage)
_OUTBOUND_ADAPTER: TypeAdapter = TypeAdapter(OutboundMessage)


def is_terminal(message: _Message) -> bool:
    """True for messages after which nothing more may be sent for the job."""
    if isinstance(message, CompleteMessage):
        return True
    return isinstance(message, ErrorMessage) and message.terminal


def parse_inbound(payload: Any) -> Union[LoadCommand, SelfTestCommand, SubmitCommand, RunCommand, CancelCommand]:
    """
    Parse a controller payload.

    Raises:
        MessageValidationError: If the payload is not a known inbound message
    """
    try:
        return _INBOUND_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise MessageValidationError(f"Invalid inbound message: {e.errors()[0]['msg']}", payload) from e


def parse_outbound(payload: Any) -> Union[
    InitializedMessage, ReadyMessage, SelfTestResultMessage, ProgressMessage,
    StdoutMessage, StderrMessage, CompleteMessage, ErrorMessage,
]:
    """
    Parse a worker payload (controller side).

    Raises:
        MessageValidationError: If the payload is not a known outbound message
    """
    try:
        return _OUTBOUND_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise MessageValidationError(f"Invalid outbound message: {e.errors()[0]['msg']}", payload) from e

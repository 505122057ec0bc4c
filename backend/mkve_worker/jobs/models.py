"""
Job data models.

JobDescription and ResourceBudget are derived once per job and frozen.
Job is the live unit of work; only the JobStateMachine mutates its
state and stage_index.

All models use Pydantic for validation.
State transitions are validated externally (see state.py).
"""

from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Dict, FrozenSet, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator


class OperationKind(str, Enum):
    """
    What the engine is asked to do with the input.

    EXTRACT: Input container must be demuxed (e.g. matroska), one stream pulled out
    TRANSCODE: An audio/video codec other than stream copy was requested
    GENERIC: Anything else (remux, copy, probe-like commands)
    """

    EXTRACT = "extract"
    TRANSCODE = "transcode"
    GENERIC = "generic"


class JobState(str, Enum):
    """
    Job lifecycle state.

    Submitted → Classified → Admitted → Running → Completed | Failed
    Rejected is reachable from Submitted and Classified.
    """

    SUBMITTED = "submitted"  # Received, not yet classified
    CLASSIFIED = "classified"  # JobDescription derived
    ADMITTED = "admitted"  # Budget within ceiling, ready sent
    RUNNING = "running"  # Progress sequencer active
    COMPLETED = "completed"  # complete sent (terminal)
    FAILED = "failed"  # Execution error or cancellation (terminal)
    REJECTED = "rejected"  # Classification or admission failed (terminal)


# Option names that select an audio codec, in lookup priority order
AUDIO_CODEC_KEYS: Tuple[str, ...] = ("c:a", "codec:a", "acodec")

# Option names that select a video (or global) codec
VIDEO_CODEC_KEYS: Tuple[str, ...] = ("c:v", "codec:v", "vcodec", "c", "codec")


class JobDescription(BaseModel):
    """
    Structured form of a job's flat argument list.

    Immutable once derived. A description missing either path is invalid
    and can never be constructed.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    input_path: str
    output_path: str
    operation_kind: OperationKind

    # Every -i value in order; input_path is the first
    input_paths: Tuple[str, ...] = ()

    # -name value pairs other than -i (last occurrence wins)
    codec_options: Dict[str, str] = Field(default_factory=dict)

    # Value-less flags such as -y or -vn
    switches: FrozenSet[str] = frozenset()

    @field_validator("input_path", "output_path")
    @classmethod
    def validate_non_empty(cls, v: str) -> str:
        """Paths must be non-empty."""
        if not v or not v.strip():
            raise ValueError("Input and output paths cannot be empty")
        return v

    def _first_option(self, keys: Tuple[str, ...]) -> Optional[str]:
        for key in keys:
            if key in self.codec_options:
                return self.codec_options[key]
        return None

    @property
    def audio_codec(self) -> Optional[str]:
        return self._first_option(AUDIO_CODEC_KEYS)

    @property
    def video_codec(self) -> Optional[str]:
        return self._first_option(VIDEO_CODEC_KEYS)

    @property
    def audio_bitrate(self) -> Optional[str]:
        return self._first_option(("b:a", "ab"))

    @property
    def sample_rate(self) -> Optional[str]:
        return self.codec_options.get("ar")

    @property
    def channels(self) -> Optional[str]:
        return self.codec_options.get("ac")

    @property
    def stream_map(self) -> Optional[str]:
        return self.codec_options.get("map")

    @property
    def input_extension(self) -> str:
        """Lower-cased extension of the input path, including the dot."""
        return PurePath(self.input_path).suffix.lower()


class ResourceBudget(BaseModel):
    """
    Admission estimate for one job.

    Computed once before execution; never mutated. Used as the admission
    gate and as informational payload in ready/error messages.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    input_size_bytes: int
    operation_kind: OperationKind
    base_mb: int
    variable_mb: int
    margin_mb: int
    total_mb: int
    ceiling_mb: int
    within_ceiling: bool

    def describe(self) -> str:
        """Human-readable summary used in messages."""
        return f"{self.total_mb}MB required ({self.ceiling_mb}MB ceiling)"


class Job(BaseModel):
    """
    A single submitted transcode/extract request.

    Jobs are identified by a controller-assigned id that is echoed in every
    outbound message for the job.
    """

    model_config = ConfigDict(extra="forbid")

    # Identity
    id: str
    tokens: List[str] = Field(default_factory=list)

    # State
    state: JobState = JobState.SUBMITTED
    stage_index: int = 0

    # Derived once, frozen
    description: Optional[JobDescription] = None
    budget: Optional[ResourceBudget] = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Outcome
    failure_reason: Optional[str] = None

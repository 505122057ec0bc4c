"""
Job-specific error types.

All errors inherit from JobError for easy catching.
Errors are explicit and provide actionable messages.
Each error carries the wire-level reason it is reported under.
"""

from enum import Enum
from typing import Optional


class ClassificationFailure(str, Enum):
    """Why an argument list could not be turned into a JobDescription."""

    MISSING_INPUT = "MissingInput"
    MISSING_OUTPUT = "MissingOutput"


class JobError(Exception):
    """Base exception for all job-related failures."""
    pass


class ClassificationError(JobError):
    """Raised when the argument list lacks an input or an output path."""

    def __init__(self, reason: ClassificationFailure, message: Optional[str] = None):
        self.reason = reason
        if message is None:
            if reason == ClassificationFailure.MISSING_INPUT:
                message = "Missing input file parameter (-i <path>)"
            else:
                message = "Missing output file parameter"
        super().__init__(message)


class ResourceExceededError(JobError):
    """Raised when a job's estimated memory exceeds the configured ceiling."""

    def __init__(self, job_id: str, required_mb: int, ceiling_mb: int):
        self.job_id = job_id
        self.required_mb = required_mb
        self.ceiling_mb = ceiling_mb
        super().__init__(
            f"Job {job_id} requires {required_mb}MB, "
            f"which exceeds the {ceiling_mb}MB memory ceiling"
        )


class JobNotFoundError(JobError):
    """Raised when a job cannot be found in the registry."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidStateError(JobError):
    """
    Raised when a command arrives for a job in the wrong state.

    The job itself is left untouched.
    """

    def __init__(self, job_id: str, current_state: str, command: str):
        self.job_id = job_id
        self.current_state = current_state
        self.command = command
        super().__init__(
            f"Cannot {command} job {job_id}: job is {current_state}"
        )


class InvalidStateTransitionError(JobError):
    """Raised when attempting an illegal state transition."""

    def __init__(self, current_state: str, target_state: str):
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid job state transition: {current_state} -> {target_state}"
        )

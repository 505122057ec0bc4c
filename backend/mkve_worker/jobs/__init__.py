"""
Jobs: classification, lifecycle state and live-job tracking.

This package turns an argument list into a JobDescription and tracks a
job through its states. It does NOT talk to the engine; execution lives
in mkve_worker.execution and is driven by jobs.machine.JobStateMachine.
"""

from .errors import (
    JobError,
    ClassificationError,
    ClassificationFailure,
    ResourceExceededError,
    JobNotFoundError,
    InvalidStateError,
    InvalidStateTransitionError,
)
from .models import (
    OperationKind,
    JobState,
    JobDescription,
    ResourceBudget,
    Job,
)
from .state import (
    TERMINAL_JOB_STATES,
    can_transition,
    is_job_terminal,
    validate_transition,
)
from .arguments import classify, classify_operation
from .registry import JobRegistry

__all__ = [
    # Errors
    "JobError",
    "ClassificationError",
    "ClassificationFailure",
    "ResourceExceededError",
    "JobNotFoundError",
    "InvalidStateError",
    "InvalidStateTransitionError",
    # Models
    "OperationKind",
    "JobState",
    "JobDescription",
    "ResourceBudget",
    "Job",
    # State
    "TERMINAL_JOB_STATES",
    "can_transition",
    "is_job_terminal",
    "validate_transition",
    # Classification
    "classify",
    "classify_operation",
    # Registry
    "JobRegistry",
]

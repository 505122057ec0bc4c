"""
State transition validation for jobs.

Job lifecycle: SUBMITTED → CLASSIFIED → ADMITTED → RUNNING → COMPLETED | FAILED
Rejection: SUBMITTED → REJECTED (classification), CLASSIFIED → REJECTED (admission)

INVARIANT: Terminal job states (COMPLETED, FAILED, REJECTED) are immutable.
Once a job enters a terminal state, no state transition is allowed and no
further message for the job id is valid.
"""

from typing import FrozenSet, Set, Tuple
from .models import JobState
from .errors import InvalidStateTransitionError


TERMINAL_JOB_STATES: FrozenSet[JobState] = frozenset({
    JobState.COMPLETED,
    JobState.FAILED,
    JobState.REJECTED,
})


def is_job_terminal(state: JobState) -> bool:
    """
    Check if a job state is terminal (immutable).

    Args:
        state: The job state to check

    Returns:
        True if the state is terminal, False otherwise
    """
    return state in TERMINAL_JOB_STATES


# Legal job state transitions
_JOB_TRANSITIONS: Set[Tuple[JobState, JobState]] = {
    # Classification
    (JobState.SUBMITTED, JobState.CLASSIFIED),
    (JobState.SUBMITTED, JobState.REJECTED),

    # Admission
    (JobState.CLASSIFIED, JobState.ADMITTED),
    (JobState.CLASSIFIED, JobState.REJECTED),

    # Execution
    (JobState.ADMITTED, JobState.RUNNING),
    (JobState.RUNNING, JobState.COMPLETED),
    (JobState.RUNNING, JobState.FAILED),
}


def can_transition(from_state: JobState, to_state: JobState) -> bool:
    """
    Check if a job state transition is legal.

    Unlike a status refresh, a lifecycle step never stays in place:
    SUBMITTED -> SUBMITTED is not a transition.

    Args:
        from_state: Current job state
        to_state: Target job state

    Returns:
        True if the transition is allowed, False otherwise
    """
    if is_job_terminal(from_state):
        return False

    return (from_state, to_state) in _JOB_TRANSITIONS


def validate_transition(from_state: JobState, to_state: JobState) -> None:
    """
    Validate a job state transition, raising an exception if illegal.

    Args:
        from_state: Current job state
        to_state: Target job state

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    if not can_transition(from_state, to_state):
        raise InvalidStateTransitionError(from_state.value, to_state.value)

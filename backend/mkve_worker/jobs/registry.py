"""
In-memory registry of live jobs.

The registry provides:
- Job state machines by id
- Listing live jobs
- Removal once a job's terminal message has gone out

A job id is only live between submission and its terminal message. After
that, commands for the id are answered with JobNotFound.
"""

from typing import TYPE_CHECKING, Dict, List, Optional

from .errors import JobNotFoundError

if TYPE_CHECKING:
    from .machine import JobStateMachine


class JobRegistry:
    """
    In-memory registry for live jobs.

    Not persisted: a restarted worker starts with no jobs.
    """

    def __init__(self):
        # job_id -> JobStateMachine
        self._jobs: Dict[str, "JobStateMachine"] = {}

    def add(self, machine: "JobStateMachine") -> None:
        """
        Add a job to the registry.

        Args:
            machine: The job's state machine

        Raises:
            ValueError: If a job with the same ID is already live
        """
        if machine.job_id in self._jobs:
            raise ValueError(f"Job with ID '{machine.job_id}' already exists")

        self._jobs[machine.job_id] = machine

    def get(self, job_id: str) -> Optional["JobStateMachine"]:
        """
        Retrieve a job by ID.

        Returns:
            The job's state machine if live, None otherwise
        """
        return self._jobs.get(job_id)

    def get_or_raise(self, job_id: str) -> "JobStateMachine":
        """
        Retrieve a job by ID, raising an exception if not found.

        Raises:
            JobNotFoundError: If the job is not live
        """
        machine = self.get(job_id)
        if machine is None:
            raise JobNotFoundError(job_id)
        return machine

    def remove(self, job_id: str) -> None:
        """Drop a job. Unknown ids are ignored."""
        self._jobs.pop(job_id, None)

    def list(self) -> List["JobStateMachine"]:
        """All live jobs in submission order."""
        return list(self._jobs.values())

    def count(self) -> int:
        return len(self._jobs)

    def clear(self) -> None:
        self._jobs.clear()

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

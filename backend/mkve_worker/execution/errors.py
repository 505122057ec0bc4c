"""
Execution-specific errors.

All errors are non-fatal to the worker.
They indicate that one job cannot proceed; the session keeps serving others.
"""

from typing import Optional


class ExecutionError(Exception):
    """
    Base exception for execution failures.

    All execution errors inherit from this.
    A job that raises one during RUNNING transitions to FAILED.
    """

    pass


class EngineExecutionError(ExecutionError):
    """
    Engine execution failed.

    Raised at the engine boundary while a stage is being performed:
    - Input file missing or unreadable
    - No usable stream in the container
    - Encoder or muxer failure
    """

    def __init__(self, stage: Optional[str], reason: str):
        self.stage = stage
        self.reason = reason
        message = reason if stage is None else f"[{stage}] {reason}"
        super().__init__(message)

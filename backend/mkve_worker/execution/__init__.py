"""
Execution pipeline for jobs.

The native engine is an external collaborator reached only through
MediaEngine. SimulatedEngine is the in-process stand-in used by the CLI,
the HTTP surface and the test suite.
"""

from .errors import (
    ExecutionError,
    EngineExecutionError,
)
from .base import (
    EngineLog,
    LogStream,
    MediaEngine,
    MediaStream,
    StreamKind,
)
from .stages import (
    Stage,
    StageAction,
    StageContext,
    StageRunner,
    build_stage_plan,
    select_stream,
)
from .progress import (
    ProgressSequencer,
    ProgressUpdate,
    progress_percent,
)
from .results import JobOutput
from .simulated import SimulatedEngine, SimulatedMedia

__all__ = [
    # Errors
    "ExecutionError",
    "EngineExecutionError",
    # Engine
    "EngineLog",
    "LogStream",
    "MediaEngine",
    "MediaStream",
    "StreamKind",
    "SimulatedEngine",
    "SimulatedMedia",
    # Stages
    "Stage",
    "StageAction",
    "StageContext",
    "StageRunner",
    "build_stage_plan",
    "select_stream",
    # Progress
    "ProgressSequencer",
    "ProgressUpdate",
    "progress_percent",
    # Results
    "JobOutput",
]

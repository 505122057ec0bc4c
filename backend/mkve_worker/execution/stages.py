"""
Stage plans and stage execution.

Each operation kind decomposes into a fixed, ordered list of named stages.
The ProgressSequencer reports them; the StageRunner asks the engine to
complete them. Stage labels match what controllers already display:

    extract:   open → read-headers → analyze-streams → find-track →
               extract → encode → write → finalize
    transcode: open → read-headers → analyze-streams → select-streams →
               encode → write → finalize
    generic:   process (single stage)
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import List, Optional, Sequence, Tuple

from ..jobs.models import JobDescription, OperationKind
from .base import EngineLog, MediaEngine, MediaStream, StreamKind
from .errors import EngineExecutionError

logger = logging.getLogger(__name__)


class StageAction(str, Enum):
    """What a stage asks of the engine."""

    OPEN = "open"
    READ_HEADERS = "read-headers"
    ANALYZE_STREAMS = "analyze-streams"
    FIND_TRACK = "find-track"
    EXTRACT = "extract"
    SELECT_STREAMS = "select-streams"
    ENCODE = "encode"
    WRITE = "write"
    FINALIZE = "finalize"
    PROCESS = "process"


@dataclass(frozen=True)
class Stage:
    """A named step in a job's execution sequence."""

    action: StageAction
    label: str

    @property
    def name(self) -> str:
        return self.action.value


@dataclass
class StageContext:
    """Artifacts handed from one stage to the next within a single job."""

    description: JobDescription
    input_size_bytes: int = 0
    streams: List[MediaStream] = field(default_factory=list)
    selected: Optional[MediaStream] = None
    payload: Optional[bytes] = None
    output_size_bytes: Optional[int] = None


# Display names for common encoders
_ENCODING_LABELS = {
    "libmp3lame": "MP3",
    "mp3": "MP3",
    "aac": "AAC",
    "libfdk_aac": "AAC",
    "flac": "FLAC",
    "libopus": "Opus",
    "opus": "Opus",
    "libvorbis": "Vorbis",
    "vorbis": "Vorbis",
    "copy": "stream copy",
}

# -map 0:a:1 / 0:1 / a
_MAP_PATTERN = re.compile(r'^(?:\d+:)?(?:(?P<kind>[avs])(?::(?P<nth>\d+))?|(?P<index>\d+))$')


def encoding_label(description: JobDescription) -> str:
    """
    Human-readable name of the target encoding.

    Falls back to the output extension when no codec was requested.
    """
    codec = description.audio_codec or description.video_codec
    if codec:
        codec = codec.lower()
        if codec in _ENCODING_LABELS:
            return _ENCODING_LABELS[codec]
        if codec.startswith("pcm_"):
            return "PCM"
        return codec.upper()

    suffix = PurePath(description.output_path).suffix
    return suffix[1:].upper() if suffix else "output"


def container_label(description: JobDescription) -> str:
    """Upper-case container name from the input extension (e.g. 'MKV')."""
    extension = description.input_extension.lstrip(".")
    return extension.upper() if extension else "input"


def build_stage_plan(description: JobDescription, engine_name: str = "FFmpeg") -> Tuple[Stage, ...]:
    """
    Build the ordered stage list for a job.

    Args:
        description: Classified job description
        engine_name: Engine name used in the generic stage label

    Returns:
        Tuple of stages in execution order
    """
    kind = description.operation_kind
    encoding = encoding_label(description)

    if kind == OperationKind.EXTRACT:
        return (
            Stage(StageAction.OPEN, f"Opening {container_label(description)} file..."),
            Stage(StageAction.READ_HEADERS, "Reading file headers..."),
            Stage(StageAction.ANALYZE_STREAMS, "Analyzing streams..."),
            Stage(StageAction.FIND_TRACK, "Finding audio tracks..."),
            Stage(StageAction.EXTRACT, "Extracting audio data..."),
            Stage(StageAction.ENCODE, f"Encoding to {encoding}..."),
            Stage(StageAction.WRITE, "Writing output file..."),
            Stage(StageAction.FINALIZE, "Finalizing..."),
        )

    if kind == OperationKind.TRANSCODE:
        return (
            Stage(StageAction.OPEN, f"Opening {container_label(description)} file..."),
            Stage(StageAction.READ_HEADERS, "Reading file headers..."),
            Stage(StageAction.ANALYZE_STREAMS, "Analyzing streams..."),
            Stage(StageAction.SELECT_STREAMS, "Selecting streams..."),
            Stage(StageAction.ENCODE, f"Encoding to {encoding}..."),
            Stage(StageAction.WRITE, "Writing output file..."),
            Stage(StageAction.FINALIZE, "Finalizing..."),
        )

    return (Stage(StageAction.PROCESS, f"Processing with {engine_name}..."),)


def select_stream(
    streams: Sequence[MediaStream],
    map_spec: Optional[str] = None,
    preferred_kind: Optional[StreamKind] = None,
) -> Optional[MediaStream]:
    """
    Pick the stream a job operates on.

    An explicit -map value wins ("0:a:0", "a", "0:2"); otherwise the first
    stream of the preferred kind; otherwise the first stream.

    Returns:
        The selected stream, or None if nothing matches
    """
    if map_spec:
        match = _MAP_PATTERN.match(map_spec.strip())
        if match is None:
            return None
        if match.group("index") is not None:
            wanted = int(match.group("index"))
            return next((s for s in streams if s.index == wanted), None)
        letter = match.group("kind")
        nth = int(match.group("nth") or 0)
        candidates = [s for s in streams if s.kind.specifier == letter]
        return candidates[nth] if nth < len(candidates) else None

    if preferred_kind is not None:
        for stream in streams:
            if stream.kind == preferred_kind:
                return stream
        return None

    return streams[0] if streams else None


class StageRunner:
    """
    Performs stages against a MediaEngine.

    A stage is complete when its coroutine returns. Any failure is raised
    as EngineExecutionError tagged with the stage name.
    """

    def __init__(self, engine: MediaEngine, log: Optional[EngineLog] = None):
        self.engine = engine
        self.log = log

    async def perform(self, stage: Stage, context: StageContext) -> None:
        """
        Complete one stage.

        Args:
            stage: Stage to perform
            context: Artifacts from earlier stages; updated in place

        Raises:
            EngineExecutionError: If the engine reports a failure
        """
        description = context.description
        action = stage.action

        try:
            if action == StageAction.OPEN:
                await self.engine.open(description.input_path, log=self.log)

            elif action == StageAction.READ_HEADERS:
                context.streams = list(await self.engine.decode(description.input_path, log=self.log))

            elif action == StageAction.ANALYZE_STREAMS:
                if not context.streams:
                    raise EngineExecutionError(stage.name, "No streams found in input")
                logger.debug(f"[ENGINE] {len(context.streams)} stream(s) in {description.input_path}")

            elif action == StageAction.FIND_TRACK:
                context.selected = select_stream(
                    context.streams, description.stream_map, StreamKind.AUDIO
                )
                if context.selected is None or context.selected.kind != StreamKind.AUDIO:
                    raise EngineExecutionError(stage.name, "No audio stream found in input")

            elif action == StageAction.EXTRACT:
                if context.selected is None:
                    raise EngineExecutionError(stage.name, "No track selected for extraction")

            elif action == StageAction.SELECT_STREAMS:
                context.selected = self._select_for_transcode(context)
                if context.selected is None:
                    raise EngineExecutionError(stage.name, "No stream matches the requested codecs")

            elif action == StageAction.ENCODE:
                if context.selected is None:
                    raise EngineExecutionError(stage.name, "No stream selected for encoding")
                context.payload = await self.engine.encode(
                    context.selected, description.codec_options, log=self.log
                )

            elif action == StageAction.WRITE:
                if context.payload is None:
                    raise EngineExecutionError(stage.name, "Nothing to write")
                context.output_size_bytes = await self.engine.write(
                    description.output_path, context.payload, log=self.log
                )

            elif action == StageAction.FINALIZE:
                if context.output_size_bytes is None:
                    raise EngineExecutionError(stage.name, "Output was never written")

            elif action == StageAction.PROCESS:
                await self._process(stage, context)

        except EngineExecutionError as e:
            if e.stage is None:
                raise EngineExecutionError(stage.name, e.reason) from e
            raise

    def _select_for_transcode(self, context: StageContext) -> Optional[MediaStream]:
        description = context.description
        if description.stream_map:
            return select_stream(context.streams, description.stream_map)
        if description.audio_codec:
            return select_stream(context.streams, preferred_kind=StreamKind.AUDIO)
        return select_stream(context.streams, preferred_kind=StreamKind.VIDEO)

    async def _process(self, stage: Stage, context: StageContext) -> None:
        """Generic jobs: the whole pipeline as one stage."""
        description = context.description
        await self.engine.open(description.input_path, log=self.log)
        context.streams = list(await self.engine.decode(description.input_path, log=self.log))
        context.selected = select_stream(context.streams, description.stream_map)
        if context.selected is None:
            raise EngineExecutionError(stage.name, "No streams found in input")
        context.payload = await self.engine.encode(
            context.selected, description.codec_options, log=self.log
        )
        context.output_size_bytes = await self.engine.write(
            description.output_path, context.payload, log=self.log
        )

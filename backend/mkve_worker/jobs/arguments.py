"""
Argument classification.

Turns a flat, ffmpeg-style token list into a JobDescription:

    -i movie.mkv -c:a libmp3lame -b:a 128k -ar 44100 out.mp3

Grammar (single left-to-right pass):
- `-i <path>` is repeatable; the first occurrence is the job input
- `-<name> <value>` is captured into codec_options[<name>]; last one wins
- configured switch flags (`-y`, `-vn`, ...) take no value
- the first token that is neither a flag nor a consumed value is the output

Codec-name legality is the engine's concern. This module only checks that
an input and an output exist. It has no side effects.
"""

from pathlib import PurePath
from typing import Dict, List, Optional, Sequence

from ..config import WorkerConfig, DEFAULT_WORKER_CONFIG
from .errors import ClassificationError, ClassificationFailure
from .models import AUDIO_CODEC_KEYS, VIDEO_CODEC_KEYS, JobDescription, OperationKind


FLAG_PREFIX = "-"
INPUT_FLAG = "i"


def _is_flag(token: str) -> bool:
    # A lone "-" names stdin/stdout and is positional
    return token.startswith(FLAG_PREFIX) and len(token) > 1


def classify_operation(
    input_path: str,
    codec_options: Dict[str, str],
    config: WorkerConfig = DEFAULT_WORKER_CONFIG,
) -> OperationKind:
    """
    Derive the operation kind, in priority order.

    1. Input container requires demuxing → EXTRACT
    2. An audio/video codec other than stream copy is requested → TRANSCODE
    3. Otherwise → GENERIC

    Args:
        input_path: The job's input path
        codec_options: Captured -name value pairs
        config: Worker configuration with the demux and copy-marker tables

    Returns:
        The OperationKind for the job
    """
    extension = PurePath(input_path).suffix.lower()
    if extension and extension in config.demux_extensions:
        return OperationKind.EXTRACT

    for key in AUDIO_CODEC_KEYS + VIDEO_CODEC_KEYS:
        codec = codec_options.get(key)
        if codec and codec.lower() not in config.stream_copy_markers:
            return OperationKind.TRANSCODE

    return OperationKind.GENERIC


def classify(
    tokens: Sequence[str],
    config: WorkerConfig = DEFAULT_WORKER_CONFIG,
) -> JobDescription:
    """
    Classify a flat argument list into a JobDescription.

    Pure function of its input: the same tokens always yield an equal
    description.

    Args:
        tokens: Command tokens, without the program name
        config: Worker configuration (switch flags, demux extensions)

    Returns:
        The derived JobDescription

    Raises:
        ClassificationError: MISSING_INPUT if no non-empty -i value exists,
            MISSING_OUTPUT if no unconsumed positional token exists
    """
    input_paths: List[str] = []
    output_path: Optional[str] = None
    codec_options: Dict[str, str] = {}
    switches = set()

    index = 0
    count = len(tokens)
    while index < count:
        token = tokens[index]

        if not _is_flag(token):
            if output_path is None and token.strip():
                output_path = token
            index += 1
            continue

        name = token[len(FLAG_PREFIX):]

        if name in config.switch_flags:
            switches.add(name)
            index += 1
            continue

        has_value = index + 1 < count
        value = tokens[index + 1] if has_value else ""

        if name == INPUT_FLAG:
            if value.strip():
                input_paths.append(value)
        else:
            codec_options[name] = value

        index += 2 if has_value else 1

    if not input_paths:
        raise ClassificationError(ClassificationFailure.MISSING_INPUT)
    if not output_path:
        raise ClassificationError(ClassificationFailure.MISSING_OUTPUT)

    input_path = input_paths[0]

    return JobDescription(
        input_path=input_path,
        output_path=output_path,
        operation_kind=classify_operation(input_path, codec_options, config),
        input_paths=tuple(input_paths),
        codec_options=codec_options,
        switches=frozenset(switches),
    )

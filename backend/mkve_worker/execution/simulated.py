"""
Simulated media engine.

Stands in for the native codec library the worker normally drives.
Behaves deterministically so the protocol can be exercised end to end:

- Inputs are registered in memory (SimulatedMedia) or read from disk
- Containers decode into a fixed stream layout per extension
- Encoding produces a payload sized from bitrate x duration, behind an
  MP3 frame header
- Any operation can be made to fail for error-path testing
- Each operation writes one output line to the job's log callback,
  stderr for progress and failures, stdout for the written output

No audio is actually decoded or encoded.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from .base import EngineLog, LogStream, MediaEngine, MediaStream, StreamKind
from .errors import EngineExecutionError

logger = logging.getLogger(__name__)


# MPEG-1 Layer III frame sync header
MP3_FRAME_HEADER = bytes([0xFF, 0xFB, 0x90, 0x00])

# Overall bitrate assumed when guessing a duration from file size (5.5 Mbit/s)
ASSUMED_CONTAINER_BITRATE = 5_500_000

DEFAULT_AUDIO_BITRATE = 128_000

_BITRATE_PATTERN = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([kKmM]?)\s*$')

_AUDIO_EXTENSIONS = frozenset({".mp3", ".aac", ".m4a", ".wav", ".flac", ".ogg", ".opus", ".mka"})

OPERATIONS = ("open", "decode", "encode", "write")


def parse_bitrate(value: Optional[str]) -> Optional[int]:
    """
    Parse an ffmpeg bitrate string ('128k', '1.5M', '64000') into bits/s.

    Returns:
        Bits per second, or None if the value cannot be parsed
    """
    if not value:
        return None
    match = _BITRATE_PATTERN.match(value)
    if not match:
        return None
    number = float(match.group(1))
    unit = match.group(2).lower()
    if unit == "k":
        number *= 1000
    elif unit == "m":
        number *= 1_000_000
    return int(number)


async def _log(log: Optional[EngineLog], stream: LogStream, line: str) -> None:
    if log is not None:
        await log(stream, line)


@dataclass
class SimulatedMedia:
    """An input the simulated engine knows about without touching disk."""

    size_bytes: int
    streams: List[MediaStream] = field(default_factory=list)


def default_streams(path: str, size_bytes: int) -> List[MediaStream]:
    """
    Stream layout for an input the engine was not told about explicitly.

    Matroska-style video containers get one video and one 5.1 audio track;
    audio files get a single stereo track. Duration is guessed from size.
    """
    duration = max(1.0, size_bytes * 8 / ASSUMED_CONTAINER_BITRATE)
    extension = PurePath(path).suffix.lower()

    audio = MediaStream(
        index=0,
        kind=StreamKind.AUDIO,
        codec="aac",
        channels=2,
        sample_rate=48000,
        bit_rate=192_000,
        duration_seconds=duration,
    )

    if extension in _AUDIO_EXTENSIONS:
        return [audio]

    return [
        MediaStream(
            index=0,
            kind=StreamKind.VIDEO,
            codec="h264",
            bit_rate=ASSUMED_CONTAINER_BITRATE,
            duration_seconds=duration,
        ),
        MediaStream(
            index=1,
            kind=StreamKind.AUDIO,
            codec="ac3",
            channels=6,
            sample_rate=48000,
            bit_rate=448_000,
            duration_seconds=duration,
            language="eng",
        ),
    ]


class SimulatedEngine(MediaEngine):
    """
    Deterministic in-process engine.

    Usage:
        engine = SimulatedEngine(media={"movie.mkv": SimulatedMedia(size_bytes=...)})
        engine = SimulatedEngine(fail_on="encode")  # every encode fails
    """

    def __init__(
        self,
        media: Optional[Mapping[str, SimulatedMedia]] = None,
        stage_delay: float = 0.0,
        fail_on: Optional[str] = None,
        use_filesystem: bool = True,
        write_to_disk: bool = False,
        features: Optional[Iterable[str]] = None,
        version: str = "4.3.0",
    ):
        """
        Initialize simulated engine.

        Args:
            media: Inputs known by path
            stage_delay: Seconds each operation waits (0 = just yield)
            fail_on: Operation that always fails ('open', 'decode', 'encode', 'write')
            use_filesystem: Fall back to real files for size and existence
            write_to_disk: Write payloads to the output path instead of memory
            features: Capability flags to report
            version: Version string to report
        """
        if fail_on is not None and fail_on not in OPERATIONS:
            raise ValueError(f"fail_on must be one of {OPERATIONS}, got {fail_on!r}")

        self._media: Dict[str, SimulatedMedia] = dict(media or {})
        self.stage_delay = stage_delay
        self.fail_on = fail_on
        self.use_filesystem = use_filesystem
        self.write_to_disk = write_to_disk
        self._features = frozenset(features or ("mkv-demux", "mp3-encode", "audio-extract", "large-file-support"))
        self._version = version

        # output path -> payload (when not writing to disk)
        self.outputs: Dict[str, bytes] = {}

    @property
    def name(self) -> str:
        return "FFmpeg"

    @property
    def version(self) -> str:
        return self._version

    @property
    def features(self) -> FrozenSet[str]:
        return self._features

    def add_media(self, path: str, media: SimulatedMedia) -> None:
        """Register an in-memory input."""
        self._media[path] = media

    def input_size(self, path: str) -> Optional[int]:
        media = self._media.get(path)
        if media is not None:
            return media.size_bytes
        if self.use_filesystem:
            candidate = Path(path)
            if candidate.is_file():
                return candidate.stat().st_size
        return None

    async def _step(self, operation: str, detail: str, log: Optional[EngineLog]) -> None:
        await asyncio.sleep(self.stage_delay)
        if self.fail_on == operation:
            reason = f"Simulated {operation} failure: {detail}"
            await _log(log, LogStream.STDERR, reason)
            raise EngineExecutionError(None, reason)

    async def open(self, path: str, log: Optional[EngineLog] = None) -> None:
        await self._step("open", path, log)
        if self.input_size(path) is None:
            await _log(log, LogStream.STDERR, f"{path}: No such file or directory")
            raise EngineExecutionError(None, f"No such file or directory: {path}")
        await _log(log, LogStream.STDERR, f"Input #0, from '{path}'")
        logger.debug(f"[ENGINE] Opened {path}")

    async def decode(self, container: str, log: Optional[EngineLog] = None) -> List[MediaStream]:
        await self._step("decode", container, log)
        media = self._media.get(container)
        if media is not None and media.streams:
            streams = list(media.streams)
        else:
            size = self.input_size(container)
            if size is None:
                await _log(log, LogStream.STDERR, f"{container}: Invalid data found when processing input")
                raise EngineExecutionError(None, f"Cannot open input: {container}")
            streams = default_streams(container, size)
        await _log(log, LogStream.STDERR, f"Found {len(streams)} stream(s) in '{container}'")
        return streams

    async def encode(
        self,
        stream: MediaStream,
        codec_options: Mapping[str, str],
        log: Optional[EngineLog] = None,
    ) -> bytes:
        await self._step("encode", f"stream #{stream.index} ({stream.codec})", log)

        codec = codec_options.get("c:a") or codec_options.get("acodec") or "copy"
        if codec == "copy":
            bitrate = stream.bit_rate or DEFAULT_AUDIO_BITRATE
        else:
            bitrate = parse_bitrate(codec_options.get("b:a")) or DEFAULT_AUDIO_BITRATE

        duration = stream.duration_seconds or 0.0
        size = max(len(MP3_FRAME_HEADER), int(bitrate * duration / 8))
        await _log(log, LogStream.STDERR, f"Stream #0:{stream.index} ({stream.codec} -> {codec})")
        logger.debug(f"[ENGINE] Encoded stream #{stream.index} with {codec} -> {size} bytes")
        return MP3_FRAME_HEADER + bytes(size - len(MP3_FRAME_HEADER))

    async def write(self, path: str, data: bytes, log: Optional[EngineLog] = None) -> int:
        await self._step("write", path, log)
        if self.write_to_disk:
            try:
                Path(path).write_bytes(data)
            except OSError as e:
                await _log(log, LogStream.STDERR, f"{path}: {e.strerror or e}")
                raise EngineExecutionError(None, f"Cannot write output {path}: {e}") from e
        else:
            self.outputs[path] = data
        await _log(log, LogStream.STDOUT, f"Wrote {len(data)} bytes to '{path}'")
        return len(data)

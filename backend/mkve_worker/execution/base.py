"""
Media engine abstraction layer.

The native codec/container library is never called directly. It is reached
only through this capability:

    decode(container) -> streams
    encode(stream, codec_options) -> bytes

Design rules:
- The core never inspects codec internals
- Every engine failure surfaces as EngineExecutionError
- Engines are stateless between jobs - all context is passed per call
- Operations are asynchronous; no timing guarantee is assumed
- Engine output lines go to the per-call log callback, never to stdout
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, FrozenSet, List, Mapping, Optional


class StreamKind(str, Enum):
    """Elementary stream type inside a container."""

    AUDIO = "audio"
    VIDEO = "video"
    SUBTITLE = "subtitle"

    @property
    def specifier(self) -> str:
        """Single-letter stream specifier used in -map values (a, v, s)."""
        return self.value[0]


class LogStream(str, Enum):
    """Which of the engine's output streams a log line came from."""

    STDOUT = "stdout"
    STDERR = "stderr"


# Per-job receiver for engine output lines
EngineLog = Callable[[LogStream, str], Awaitable[None]]


@dataclass(frozen=True)
class MediaStream:
    """One elementary stream reported by the engine's demuxer."""

    index: int
    kind: StreamKind
    codec: str
    channels: Optional[int] = None
    sample_rate: Optional[int] = None  # Hz
    bit_rate: Optional[int] = None  # bits per second
    duration_seconds: Optional[float] = None
    language: Optional[str] = None


class MediaEngine(ABC):
    """
    Abstract base class for the out-of-process media engine.

    All engines must implement:
    - input_size: Size lookup used for admission
    - open: Verify the input can be read
    - decode: Demux a container into streams
    - encode: Encode one stream with the requested codec options
    - write: Persist encoded output
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable engine name for logs and progress labels."""
        pass

    @property
    def version(self) -> str:
        """Engine version string reported in handshakes."""
        return "unknown"

    @property
    @abstractmethod
    def features(self) -> FrozenSet[str]:
        """Capability flags (e.g. 'mkv-demux', 'mp3-encode')."""
        pass

    @abstractmethod
    def input_size(self, path: str) -> Optional[int]:
        """
        Size of an input in bytes, if the engine can see it.

        Returns:
            Size in bytes, or None if unknown
        """
        pass

    @abstractmethod
    async def open(self, path: str, log: Optional["EngineLog"] = None) -> None:
        """
        Open an input for reading.

        Raises:
            EngineExecutionError: If the input is missing or unreadable
        """
        pass

    @abstractmethod
    async def decode(self, container: str, log: Optional["EngineLog"] = None) -> List[MediaStream]:
        """
        Demux a container into its elementary streams.

        Raises:
            EngineExecutionError: If the container cannot be parsed
        """
        pass

    @abstractmethod
    async def encode(
        self,
        stream: MediaStream,
        codec_options: Mapping[str, str],
        log: Optional["EngineLog"] = None,
    ) -> bytes:
        """
        Encode a single stream.

        Args:
            stream: Stream selected from decode()
            codec_options: The job's codec options (c:a, b:a, ar, ac, ...)
            log: Receives the engine's output lines for this job

        Returns:
            Encoded payload

        Raises:
            EngineExecutionError: If encoding fails
        """
        pass

    @abstractmethod
    async def write(self, path: str, data: bytes, log: Optional["EngineLog"] = None) -> int:
        """
        Write an encoded payload to the output path.

        Returns:
            Number of bytes written

        Raises:
            EngineExecutionError: If the output cannot be written
        """
        pass

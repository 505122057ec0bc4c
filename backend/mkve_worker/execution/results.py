"""
Job output models.

Structured representation of a finished job's output, assembled from the
stage context after the final stage. Requested codec options win over what
the source stream reported.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict

from .stages import StageContext, encoding_label


def _as_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class JobOutput(BaseModel):
    """
    Result of a completed job.

    This model is the single source of truth for the complete message.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    input_path: str
    output_path: str

    input_size_bytes: int = 0
    output_size_bytes: Optional[int] = None

    encoding: str
    bitrate: Optional[str] = None
    channels: Optional[int] = None
    sample_rate_hz: Optional[int] = None
    duration_seconds: Optional[float] = None

    @classmethod
    def from_context(cls, context: StageContext) -> "JobOutput":
        """
        Build the output summary from a finished stage context.

        Args:
            context: Context after the final stage

        Returns:
            JobOutput describing what was written
        """
        description = context.description
        stream = context.selected

        bitrate = description.audio_bitrate
        if bitrate is None and stream is not None and stream.bit_rate:
            bitrate = f"{stream.bit_rate // 1000}k"

        channels = _as_int(description.channels)
        if channels is None and stream is not None:
            channels = stream.channels

        sample_rate = _as_int(description.sample_rate)
        if sample_rate is None and stream is not None:
            sample_rate = stream.sample_rate

        return cls(
            input_path=description.input_path,
            output_path=description.output_path,
            input_size_bytes=context.input_size_bytes,
            output_size_bytes=context.output_size_bytes,
            encoding=encoding_label(description),
            bitrate=bitrate,
            channels=channels,
            sample_rate_hz=sample_rate,
            duration_seconds=stream.duration_seconds if stream is not None else None,
        )

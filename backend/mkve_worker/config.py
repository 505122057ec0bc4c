"""
WorkerConfig: immutable worker-level configuration.

Memory constants, feature lists and classifier tables live here and are
injected into the session, state machine, classifier and estimator at
construction. Nothing reads configuration from module-level state.

CRITICAL RULES:
1. WorkerConfig is IMMUTABLE (frozen dataclass)
2. "Changing" a value means building a new config via with_updates()
3. Admission decisions read the ceiling once per job, never re-read it
"""

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


DEFAULT_FEATURES: Tuple[str, ...] = (
    "mkv-demux",
    "mp3-encode",
    "audio-extract",
    "large-file-support",
)

# MB of working memory per GB of input, keyed by OperationKind value.
# Extraction decodes a single stream, so it scales lower than a full transcode.
DEFAULT_PER_GB_RATE_MB: Mapping[str, int] = MappingProxyType({
    "extract": 20,
    "transcode": 50,
    "generic": 50,
})

DEFAULT_DEMUX_EXTENSIONS: FrozenSet[str] = frozenset({".mkv", ".mka", ".mk3d", ".webm"})

DEFAULT_STREAM_COPY_MARKERS: FrozenSet[str] = frozenset({"copy"})

# Flags that never take a value in the command grammar
DEFAULT_SWITCH_FLAGS: FrozenSet[str] = frozenset({
    "y", "n", "vn", "an", "sn", "dn", "nostdin", "hide_banner",
})

ENV_CEILING = "MKVE_MEMORY_CEILING_MB"
ENV_BASE_MEMORY = "MKVE_BASE_MEMORY_MB"


@dataclass(frozen=True)
class WorkerConfig:
    """
    Complete, immutable worker configuration.

    Defaults match the stock browser worker: a 110MB engine heap, a 100MB
    floor per job and a 2GB browser-tab ceiling.
    """

    version: str = "4.3.0"
    features: Tuple[str, ...] = DEFAULT_FEATURES

    # Memory the engine heap is configured with (reported in handshakes)
    memory_allocated_mb: int = 110

    # Admission estimate
    base_memory_mb: int = 100
    per_gb_rate_mb: Mapping[str, int] = field(default_factory=lambda: DEFAULT_PER_GB_RATE_MB)
    margin_rate_per_gb_mb: int = 10
    memory_ceiling_mb: int = 2048

    # Forward engine stdout/stderr lines to the controller while a job runs
    relay_engine_log: bool = True

    # Classifier tables
    demux_extensions: FrozenSet[str] = DEFAULT_DEMUX_EXTENSIONS
    stream_copy_markers: FrozenSet[str] = DEFAULT_STREAM_COPY_MARKERS
    switch_flags: FrozenSet[str] = DEFAULT_SWITCH_FLAGS

    def __post_init__(self) -> None:
        if self.base_memory_mb < 0:
            raise ValueError(f"base_memory_mb must be >= 0, got {self.base_memory_mb}")
        if self.margin_rate_per_gb_mb < 0:
            raise ValueError(f"margin_rate_per_gb_mb must be >= 0, got {self.margin_rate_per_gb_mb}")
        if self.memory_ceiling_mb <= 0:
            raise ValueError(f"memory_ceiling_mb must be positive, got {self.memory_ceiling_mb}")
        missing = {"extract", "transcode", "generic"} - set(self.per_gb_rate_mb)
        if missing:
            raise ValueError(f"per_gb_rate_mb is missing rates for: {', '.join(sorted(missing))}")
        # Freeze the rate table so a caller's dict cannot leak mutation in
        object.__setattr__(self, "per_gb_rate_mb", MappingProxyType(dict(self.per_gb_rate_mb)))
        object.__setattr__(
            self,
            "demux_extensions",
            frozenset(ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in self.demux_extensions),
        )

    @property
    def memory_allocated(self) -> str:
        """Engine heap size as reported on the wire (e.g. '110MB')."""
        return f"{self.memory_allocated_mb}MB"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "version": self.version,
            "features": list(self.features),
            "memory_allocated_mb": self.memory_allocated_mb,
            "base_memory_mb": self.base_memory_mb,
            "per_gb_rate_mb": dict(self.per_gb_rate_mb),
            "margin_rate_per_gb_mb": self.margin_rate_per_gb_mb,
            "memory_ceiling_mb": self.memory_ceiling_mb,
            "demux_extensions": sorted(self.demux_extensions),
            "stream_copy_markers": sorted(self.stream_copy_markers),
            "switch_flags": sorted(self.switch_flags),
            "relay_engine_log": self.relay_engine_log,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WorkerConfig":
        """
        Deserialize from dictionary.

        Missing keys fall back to defaults; unknown keys are rejected.
        """
        if not data:
            return DEFAULT_WORKER_CONFIG

        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        defaults = DEFAULT_WORKER_CONFIG
        rates = dict(defaults.per_gb_rate_mb)
        rates.update(data.get("per_gb_rate_mb", {}))

        return cls(
            version=str(data.get("version", defaults.version)),
            features=tuple(data.get("features", defaults.features)),
            memory_allocated_mb=int(data.get("memory_allocated_mb", defaults.memory_allocated_mb)),
            base_memory_mb=int(data.get("base_memory_mb", defaults.base_memory_mb)),
            per_gb_rate_mb={k: int(v) for k, v in rates.items()},
            margin_rate_per_gb_mb=int(data.get("margin_rate_per_gb_mb", defaults.margin_rate_per_gb_mb)),
            memory_ceiling_mb=int(data.get("memory_ceiling_mb", defaults.memory_ceiling_mb)),
            demux_extensions=frozenset(data.get("demux_extensions", defaults.demux_extensions)),
            stream_copy_markers=frozenset(data.get("stream_copy_markers", defaults.stream_copy_markers)),
            switch_flags=frozenset(data.get("switch_flags", defaults.switch_flags)),
            relay_engine_log=bool(data.get("relay_engine_log", defaults.relay_engine_log)),
        )

    @classmethod
    def from_env(cls, base: Optional["WorkerConfig"] = None) -> "WorkerConfig":
        """
        Apply environment overrides on top of a base config.

        Recognized variables:
            MKVE_MEMORY_CEILING_MB: Admission ceiling in MB
            MKVE_BASE_MEMORY_MB: Fixed per-job floor in MB
        """
        config = base or DEFAULT_WORKER_CONFIG
        updates: Dict[str, Any] = {}

        ceiling = os.environ.get(ENV_CEILING)
        if ceiling:
            updates["memory_ceiling_mb"] = int(ceiling)

        base_memory = os.environ.get(ENV_BASE_MEMORY)
        if base_memory:
            updates["base_memory_mb"] = int(base_memory)

        return config.with_updates(**updates) if updates else config

    def with_updates(self, **kwargs: Any) -> "WorkerConfig":
        """Return a new WorkerConfig with the given fields replaced."""
        return replace(self, **kwargs)


DEFAULT_WORKER_CONFIG = WorkerConfig()


def load_config(path: Path) -> WorkerConfig:
    """
    Load a WorkerConfig from a JSON file.

    Args:
        path: Path to a JSON object with WorkerConfig fields

    Returns:
        Parsed WorkerConfig

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the JSON is invalid or contains unknown keys
    """
    with open(path, "r") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Configuration in {path} must be a JSON object")

    return WorkerConfig.from_dict(data)

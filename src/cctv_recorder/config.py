"""Configuration management for the recording engine."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

DEFAULT_RECORDINGS_DIR = Path("recordings")
DEFAULT_DATABASE_PATH = Path("data/cctv.db")

DISCOVERY_MODES: tuple[str, ...] = ("inotify", "manifest", "both")

# Container formats the segment muxer and remuxer understand, keyed by extension.
SEGMENT_FORMATS: dict[str, str] = {
    "mp4": "mp4",
    "mov": "mov",
    "mkv": "matroska",
}

_ENV_OVERRIDES: dict[str, str] = {
    "CCTV_RECORDINGS_DIR": "recordings_dir",
    "CCTV_DATABASE_PATH": "database_path",
    "CCTV_FFMPEG_BINARY": "ffmpeg_binary",
}


def _positive(name: str, value: float) -> float:
    try:
        value_f = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(value_f) or value_f <= 0:
        raise ValueError(f"{name} must be a positive finite value")
    return value_f


def _non_negative(name: str, value: float) -> float:
    try:
        value_f = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(value_f) or value_f < 0:
        raise ValueError(f"{name} must not be negative")
    return value_f


@dataclass(slots=True)
class RecorderSettings:
    """Tunable values for capture supervision, publishing and housekeeping."""

    recordings_dir: str = str(DEFAULT_RECORDINGS_DIR)
    database_path: str = str(DEFAULT_DATABASE_PATH)

    # Capture
    ffmpeg_binary: str = "ffmpeg"
    rtsp_transport: str = "tcp"
    segment_duration_s: int = 600
    segment_extension: str = "mp4"
    start_stagger_s: float = 0.3
    stability_window_s: float = 15.0
    restart_short_delay_s: float = 2.0
    restart_long_delay_s: float = 10.0
    restart_short_attempts: int = 2
    restart_jitter_s: float = 0.5
    stop_timeout_s: float = 3.0
    watchdog_interval_s: float = 60.0

    # Discovery
    discovery_mode: str = "inotify"
    debounce_s: float = 10.0
    manifest_name: str = "segments.csv"
    manifest_poll_interval_s: float = 2.0

    # Publishing
    min_segment_duration_s: float = 5.0
    min_remux_bytes: int = 1024

    # Housekeeping
    orphan_grace_s: float = 300.0
    orphan_sweep_delay_s: float = 5.0
    cleanup_interval_s: float = 1800.0
    default_retention_hours: float = 168.0
    cleanup_batch_size: int = 10
    eviction_batch_size: int = 5
    emergency_free_bytes: int = 2_000_000_000

    def __post_init__(self) -> None:
        if not str(self.recordings_dir).strip():
            raise ValueError("Recordings directory must not be empty")
        if not str(self.database_path).strip():
            raise ValueError("Database path must not be empty")
        if not str(self.ffmpeg_binary).strip():
            raise ValueError("FFmpeg binary must not be empty")
        if self.rtsp_transport not in {"tcp", "udp"}:
            raise ValueError("RTSP transport must be 'tcp' or 'udp'")
        extension = str(self.segment_extension).strip().lstrip(".").lower()
        if extension not in SEGMENT_FORMATS:
            raise ValueError(
                "Segment extension must be one of: " + ", ".join(sorted(SEGMENT_FORMATS))
            )
        self.segment_extension = extension
        if int(self.segment_duration_s) < 10:
            raise ValueError("Segment duration must be at least 10 seconds")
        self.segment_duration_s = int(self.segment_duration_s)
        if self.discovery_mode not in DISCOVERY_MODES:
            raise ValueError("Discovery mode must be one of: " + ", ".join(DISCOVERY_MODES))
        if not self.manifest_name.strip() or "/" in self.manifest_name:
            raise ValueError("Manifest name must be a plain file name")
        for name in (
            "stability_window_s",
            "restart_short_delay_s",
            "restart_long_delay_s",
            "stop_timeout_s",
            "watchdog_interval_s",
            "debounce_s",
            "manifest_poll_interval_s",
            "min_segment_duration_s",
            "cleanup_interval_s",
            "default_retention_hours",
        ):
            setattr(self, name, _positive(name, getattr(self, name)))
        for name in ("start_stagger_s", "restart_jitter_s", "orphan_grace_s", "orphan_sweep_delay_s"):
            setattr(self, name, _non_negative(name, getattr(self, name)))
        if self.restart_long_delay_s < self.restart_short_delay_s:
            raise ValueError("Long restart delay must not be shorter than the short delay")
        if int(self.restart_short_attempts) < 0:
            raise ValueError("Short restart attempts must not be negative")
        for name in ("cleanup_batch_size", "eviction_batch_size"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be at least 1")
        if int(self.min_remux_bytes) < 0 or int(self.emergency_free_bytes) < 0:
            raise ValueError("Byte thresholds must not be negative")

    @property
    def recordings_path(self) -> Path:
        return Path(self.recordings_dir)

    @property
    def database_file(self) -> Path:
        return Path(self.database_path)

    @property
    def container_format(self) -> str:
        return SEGMENT_FORMATS[self.segment_extension]

    @property
    def manifest_enabled(self) -> bool:
        return self.discovery_mode in {"manifest", "both"}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecorderSettings":
        known = {field.name for field in fields(cls)}
        data = {key: value for key, value in dict(payload).items() if key in known}
        return cls(**data)


def apply_env_overrides(
    settings: RecorderSettings, environ: Mapping[str, str] | None = None
) -> RecorderSettings:
    """Return ``settings`` with deployment paths replaced from the environment."""

    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for variable, field_name in _ENV_OVERRIDES.items():
        value = env.get(variable)
        if value is not None and value.strip():
            overrides[field_name] = value.strip()
    if not overrides:
        return settings
    return RecorderSettings.from_dict({**settings.to_dict(), **overrides})


class RecorderSettingsStore:
    """JSON backed persistence for :class:`RecorderSettings` with thread-safety."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> RecorderSettings:
        with self._lock:
            settings = self._read()
        return apply_env_overrides(settings)

    def save(self, settings: RecorderSettings) -> None:
        with self._lock:
            self._write(settings)

    def update(self, payload: Mapping[str, Any]) -> RecorderSettings:
        """Merge ``payload`` into the stored settings.

        Environment overrides apply to the returned value only and are never
        written back to the file.
        """

        with self._lock:
            stored = self._read()
            settings = RecorderSettings.from_dict({**stored.to_dict(), **dict(payload)})
            self._write(settings)
        return apply_env_overrides(settings)

    def _read(self) -> RecorderSettings:
        if not self._path.exists():
            return RecorderSettings()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid recorder settings JSON") from exc
        if not isinstance(raw, Mapping):
            raise ValueError("Recorder settings file must contain a JSON object")
        return RecorderSettings.from_dict(raw)

    def _write(self, settings: RecorderSettings) -> None:
        payload = settings.to_dict()
        self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


__all__ = [
    "DISCOVERY_MODES",
    "RecorderSettings",
    "RecorderSettingsStore",
    "SEGMENT_FORMATS",
    "apply_env_overrides",
]

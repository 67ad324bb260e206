"""Segment naming, capture command construction and PyAV media helpers."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Sequence

import av


logger = logging.getLogger(__name__)

# Reserved marker for temporary remux output; such files are never segments.
REMUX_MARKER = ".remux."

_CAMERA_DIR_PATTERN = re.compile(r"^camera(\d+)$")
_SEGMENT_PATTERNS: dict[str, re.Pattern[str]] = {}

_FASTSTART_FORMATS: frozenset[str] = frozenset({"mp4", "mov"})


class RecordingError(RuntimeError):
    """Base class for failures inside the recording pipeline."""


class SegmentNameError(RecordingError):
    """Raised when a discovered path does not follow the segment layout."""


class CorruptSegmentError(RecordingError):
    """Raised when a segment cannot be probed or is too short to keep."""


class RemuxError(RecordingError):
    """Raised when a fast-start remux did not produce usable output."""


@dataclass(frozen=True, slots=True)
class SegmentName:
    """Identity of a completed segment as encoded in its path."""

    camera_id: int
    filename: str
    start_time: datetime

    @property
    def relative_name(self) -> str:
        return f"camera{self.camera_id}/{self.filename}"


def _segment_pattern(extension: str) -> re.Pattern[str]:
    pattern = _SEGMENT_PATTERNS.get(extension)
    if pattern is None:
        pattern = re.compile(
            r"^(\d{4})(\d{2})(\d{2})_(\d{2})(\d{2})(\d{2})\." + re.escape(extension) + r"$"
        )
        _SEGMENT_PATTERNS[extension] = pattern
    return pattern


def is_segment_filename(filename: str, extension: str) -> bool:
    """Return whether ``filename`` names a completed segment (not a temp file)."""

    if REMUX_MARKER in filename:
        return False
    return _segment_pattern(extension).match(filename) is not None


def parse_camera_directory(name: str) -> int | None:
    match = _CAMERA_DIR_PATTERN.match(name)
    if match is None:
        return None
    return int(match.group(1))


def camera_directory(root: Path, camera_id: int) -> Path:
    return Path(root) / f"camera{int(camera_id)}"


def parse_segment_name(name: str | Path, extension: str) -> SegmentName:
    """Parse ``camera{ID}/{YYYYMMDD}_{HHMMSS}.{ext}`` into its parts.

    Only the last two path components are considered so absolute paths and
    relative names parse identically.
    """

    parts = Path(str(name).replace("\\", "/")).parts
    if len(parts) < 2:
        raise SegmentNameError(f"{name!s} is missing its camera directory")
    camera_id = parse_camera_directory(parts[-2])
    if camera_id is None:
        raise SegmentNameError(f"{parts[-2]!r} is not a camera directory")
    filename = parts[-1]
    if REMUX_MARKER in filename:
        raise SegmentNameError(f"{filename!r} is a temporary remux artefact")
    match = _segment_pattern(extension).match(filename)
    if match is None:
        raise SegmentNameError(f"{filename!r} does not match the segment naming scheme")
    year, month, day, hour, minute, second = (int(value) for value in match.groups())
    try:
        start_time = datetime(year, month, day, hour, minute, second)
    except ValueError as exc:
        raise SegmentNameError(f"{filename!r} encodes an invalid timestamp") from exc
    return SegmentName(camera_id=camera_id, filename=filename, start_time=start_time)


def temp_remux_path(path: Path) -> Path:
    """Sibling path used while remuxing ``path``."""

    return path.with_name(f"{path.name}{REMUX_MARKER}{path.suffix.lstrip('.')}")


def build_capture_command(
    *,
    ffmpeg_binary: str,
    source_uri: str,
    output_dir: Path,
    segment_duration_s: int,
    extension: str,
    container_format: str,
    rtsp_transport: str = "tcp",
    manifest_name: str | None = None,
) -> list[str]:
    """Return the argument vector for a wall-clock aligned segmenting capture."""

    command: list[str] = [ffmpeg_binary, "-hide_banner", "-loglevel", "warning", "-nostdin"]
    if source_uri.lower().startswith(("rtsp://", "rtsps://")):
        command += ["-rtsp_transport", rtsp_transport]
    command += [
        "-i",
        source_uri,
        "-c:v",
        "copy",
        "-an",
        "-f",
        "segment",
        "-segment_time",
        str(int(segment_duration_s)),
        "-segment_atclocktime",
        "1",
        "-segment_clocktime_offset",
        "0",
        "-reset_timestamps",
        "1",
        "-segment_format",
        container_format,
        "-strftime",
        "1",
    ]
    if manifest_name:
        command += [
            "-segment_list",
            str(Path(output_dir) / manifest_name),
            "-segment_list_type",
            "csv",
        ]
    command.append(str(Path(output_dir) / f"%Y%m%d_%H%M%S.{extension}"))
    return command


def probe_duration(path: Path) -> float | None:
    """Return the media duration of ``path`` in seconds, or ``None`` if unreadable."""

    try:
        with av.open(str(path), mode="r") as container:
            if container.duration is not None:
                return float(container.duration) / float(av.time_base)
            for stream in container.streams:
                if getattr(stream, "type", "") != "video":
                    continue
                if stream.duration is not None and stream.time_base is not None:
                    return float(stream.duration * stream.time_base)
    except (av.error.FFmpegError, OSError, ValueError) as exc:
        logger.warning("Unable to probe %s: %s", path, exc)
    return None


def _copy_stream(container, template):
    factory = getattr(container, "add_stream_from_template", None)
    if factory is not None:
        return factory(template)
    return container.add_stream(template=template)


def remux_faststart(source: Path, target: Path, *, container_format: str = "mp4") -> None:
    """Stream-copy ``source`` into ``target``, moving the index to the front."""

    options = {"movflags": "+faststart"} if container_format in _FASTSTART_FORMATS else {}
    try:
        with av.open(str(source), mode="r") as input_container:
            streams: Sequence = [
                stream
                for stream in input_container.streams
                if getattr(stream, "type", "") in {"video", "audio"}
            ]
            if not streams:
                raise RemuxError(f"{source.name} has no audio or video streams")
            with av.open(
                str(target), mode="w", format=container_format, options=options
            ) as output_container:
                mapping = {stream.index: _copy_stream(output_container, stream) for stream in streams}
                for packet in input_container.demux(streams):
                    # Flush packets carry no data.
                    if packet.dts is None:
                        continue
                    packet.stream = mapping[packet.stream.index]
                    output_container.mux(packet)
    except (av.error.FFmpegError, OSError, ValueError) as exc:
        raise RemuxError(f"Remux of {source.name} failed: {exc}") from exc


__all__ = [
    "CorruptSegmentError",
    "REMUX_MARKER",
    "RecordingError",
    "RemuxError",
    "SegmentName",
    "SegmentNameError",
    "build_capture_command",
    "camera_directory",
    "is_segment_filename",
    "parse_camera_directory",
    "parse_segment_name",
    "probe_duration",
    "remux_faststart",
    "temp_remux_path",
]

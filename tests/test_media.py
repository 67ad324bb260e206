"""Tests for segment naming, capture commands and PyAV helpers."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import av
import pytest

from cctv_recorder.recording.media import (
    RemuxError,
    SegmentNameError,
    build_capture_command,
    is_segment_filename,
    parse_segment_name,
    probe_duration,
    remux_faststart,
    temp_remux_path,
)


def test_parse_segment_name_accepts_relative_and_absolute() -> None:
    relative = parse_segment_name("camera7/20260201_161002.mp4", "mp4")
    absolute = parse_segment_name(Path("/srv/recordings/camera7/20260201_161002.mp4"), "mp4")

    assert relative == absolute
    assert relative.camera_id == 7
    assert relative.start_time == datetime(2026, 2, 1, 16, 10, 2)
    assert relative.relative_name == "camera7/20260201_161002.mp4"


@pytest.mark.parametrize(
    "name",
    [
        "20260201_161002.mp4",
        "cameraX/20260201_161002.mp4",
        "camera7/20260201_161002.mkv",
        "camera7/20260201-161002.mp4",
        "camera7/20260201_161002.mp4.remux.mp4",
        "camera7/20260230_120000.mp4",
    ],
)
def test_parse_segment_name_rejects_invalid(name: str) -> None:
    with pytest.raises(SegmentNameError):
        parse_segment_name(name, "mp4")


def test_segment_filename_filter() -> None:
    assert is_segment_filename("20260201_161002.mp4", "mp4")
    assert is_segment_filename("20260201_161002.mkv", "mkv")
    assert not is_segment_filename("20260201_161002.mp4.remux.mp4", "mp4")
    assert not is_segment_filename("segments.csv", "mp4")


def test_temp_remux_path_is_a_sibling() -> None:
    path = Path("/srv/camera1/20260201_161002.mp4")
    assert temp_remux_path(path) == Path("/srv/camera1/20260201_161002.mp4.remux.mp4")


def test_capture_command_with_manifest_and_plain_source(tmp_path: Path) -> None:
    command = build_capture_command(
        ffmpeg_binary="/usr/bin/ffmpeg",
        source_uri="http://camera.local/stream.mjpg",
        output_dir=tmp_path,
        segment_duration_s=300,
        extension="mkv",
        container_format="matroska",
        manifest_name="segments.csv",
    )

    assert command[0] == "/usr/bin/ffmpeg"
    assert "-rtsp_transport" not in command
    assert command[command.index("-segment_format") + 1] == "matroska"
    assert command[command.index("-segment_list") + 1] == str(tmp_path / "segments.csv")
    assert command[command.index("-segment_list_type") + 1] == "csv"
    assert command[-1] == str(tmp_path / "%Y%m%d_%H%M%S.mkv")


def _write_clip(path: Path, *, seconds: int = 6, fps: int = 5) -> None:
    with av.open(str(path), mode="w", format="mp4") as container:
        stream = container.add_stream("mpeg4", rate=fps)
        stream.width = 64
        stream.height = 64
        stream.pix_fmt = "yuv420p"
        for _ in range(seconds * fps):
            frame = av.VideoFrame(64, 64, "yuv420p")
            for packet in stream.encode(frame):
                container.mux(packet)
        for packet in stream.encode():
            container.mux(packet)


def test_probe_and_remux_real_clip(tmp_path: Path) -> None:
    source = tmp_path / "20260201_161002.mp4"
    _write_clip(source)

    duration = probe_duration(source)
    assert duration == pytest.approx(6.0, abs=0.5)

    target = temp_remux_path(source)
    remux_faststart(source, target)
    assert target.exists()
    assert probe_duration(target) == pytest.approx(duration, abs=0.5)


def test_probe_and_remux_reject_garbage(tmp_path: Path) -> None:
    garbage = tmp_path / "20260201_161002.mp4"
    garbage.write_bytes(b"\x00not a video" * 64)

    assert probe_duration(garbage) is None
    assert probe_duration(tmp_path / "missing.mp4") is None
    with pytest.raises(RemuxError):
        remux_faststart(garbage, temp_remux_path(garbage))

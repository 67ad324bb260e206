"""Tests for the segment publishing queue."""

from __future__ import annotations

import asyncio
from pathlib import Path

from cctv_recorder.recording.locks import LockManager
from cctv_recorder.recording.media import RemuxError
from cctv_recorder.recording.processor import SegmentProcessor
from cctv_recorder.recording.store import SegmentStore, format_timestamp


class _FakeProbe:
    def __init__(self, durations: dict[str, float | None]) -> None:
        self.durations = durations
        self.calls: list[str] = []

    def __call__(self, path: Path) -> float | None:
        self.calls.append(path.name)
        value = self.durations[path.name]
        if isinstance(value, Exception):
            raise value
        return value


class _FakeRemux:
    def __init__(self, payload: bytes = b"R" * 4096, *, error: Exception | None = None) -> None:
        self.payload = payload
        self.error = error
        self.calls: list[tuple[Path, Path]] = []

    def __call__(self, source: Path, target: Path) -> None:
        self.calls.append((source, target))
        target.write_bytes(self.payload)
        if self.error is not None:
            raise self.error


def _segment(root: Path, camera_id: int, filename: str, data: bytes = b"O" * 2048) -> Path:
    directory = root / f"camera{camera_id}"
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_bytes(data)
    return path


def _processor(db_path: Path, probe, remux, **kwargs) -> tuple[SegmentProcessor, SegmentStore]:
    store = SegmentStore(db_path)
    processor = SegmentProcessor(store, kwargs.pop("locks", LockManager()), probe=probe, remux=remux, **kwargs)
    return processor, store


def test_segment_is_published_with_rounded_end_time(tmp_path: Path, db_path: Path) -> None:
    path = _segment(tmp_path, 7, "20260201_161002.mp4")
    probe = _FakeProbe({"20260201_161002.mp4": 598.4})
    remux = _FakeRemux()
    published = []
    processor, store = _processor(db_path, probe, remux, on_segment_processed=published.append)

    async def _exercise() -> None:
        processor.start()
        assert processor.enqueue(path, "camera7/20260201_161002.mp4") is True
        await processor.join()
        await processor.aclose()

    asyncio.run(_exercise())

    [record] = store.list_segments(7)
    assert record.filename == "20260201_161002.mp4"
    assert format_timestamp(record.start_time) == "2026-02-01 16:10:02"
    assert format_timestamp(record.end_time) == "2026-02-01 16:20:00"
    assert record.duration == 598
    assert record.file_size == 4096
    assert record.file_path == str(path)
    assert path.read_bytes() == b"R" * 4096
    assert not (path.parent / "20260201_161002.mp4.remux.mp4").exists()
    assert published == [record]


def test_short_or_unreadable_segments_are_discarded(tmp_path: Path, db_path: Path) -> None:
    short = _segment(tmp_path, 1, "20260201_100000.mp4")
    broken = _segment(tmp_path, 1, "20260201_101000.mp4")
    probe = _FakeProbe({short.name: 3.2, broken.name: None})
    remux = _FakeRemux()
    processor, store = _processor(db_path, probe, remux)

    async def _exercise() -> None:
        assert await processor.process(short, f"camera1/{short.name}") is None
        assert await processor.process(broken, f"camera1/{broken.name}") is None

    asyncio.run(_exercise())

    assert not short.exists()
    assert not broken.exists()
    assert remux.calls == []
    assert store.list_segments(1) == []


def test_duplicate_discovery_creates_single_row(tmp_path: Path, db_path: Path) -> None:
    path = _segment(tmp_path, 2, "20260201_120000.mp4")
    probe = _FakeProbe({path.name: 600.0})
    processor, store = _processor(db_path, probe, _FakeRemux())

    async def _exercise() -> None:
        processor.enqueue(path, "camera2/20260201_120000.mp4")
        processor.enqueue(path, "camera2/20260201_120000.mp4")
        processor.start()
        await processor.join()
        await processor.aclose()

    asyncio.run(_exercise())

    assert len(store.list_segments(2)) == 1
    assert probe.calls == [path.name]


def test_malformed_names_are_ignored(tmp_path: Path, db_path: Path) -> None:
    names = [
        "camera7/notes.txt",
        "cam7/20260201_161002.mp4",
        "camera7/20260201_161002.mp4.remux.mp4",
        "camera7/20261341_250000.mp4",
    ]
    probe = _FakeProbe({})
    processor, store = _processor(db_path, probe, _FakeRemux())
    paths = [_segment(tmp_path, 7, name.split("/")[-1]) for name in names]

    async def _exercise() -> None:
        for path, name in zip(paths, names):
            assert await processor.process(path, name) is None

    asyncio.run(_exercise())

    assert probe.calls == []
    assert all(path.exists() for path in paths)
    assert store.list_segments(7) == []


def test_remux_failure_keeps_original(tmp_path: Path, db_path: Path) -> None:
    path = _segment(tmp_path, 3, "20260201_130000.mp4")
    probe = _FakeProbe({path.name: 600.0})
    remux = _FakeRemux(error=RemuxError("boom"))
    processor, store = _processor(db_path, probe, remux)

    record = asyncio.run(processor.process(path, "camera3/20260201_130000.mp4"))

    assert record is not None
    assert path.read_bytes() == b"O" * 2048
    assert record.file_size == 2048
    assert not (path.parent / "20260201_130000.mp4.remux.mp4").exists()
    assert len(store.list_segments(3)) == 1


def test_tiny_remux_output_is_discarded(tmp_path: Path, db_path: Path) -> None:
    path = _segment(tmp_path, 3, "20260201_131000.mp4")
    probe = _FakeProbe({path.name: 600.0})
    processor, store = _processor(db_path, probe, _FakeRemux(payload=b"x" * 100))

    record = asyncio.run(processor.process(path, "camera3/20260201_131000.mp4"))

    assert record is not None
    assert path.read_bytes() == b"O" * 2048
    assert not (path.parent / "20260201_131000.mp4.remux.mp4").exists()


def test_locked_segment_is_published_without_remux(tmp_path: Path, db_path: Path) -> None:
    path = _segment(tmp_path, 4, "20260201_140000.mp4")
    locks = LockManager()
    locks.acquire(path)
    remux = _FakeRemux()
    processor, store = _processor(
        db_path, _FakeProbe({path.name: 600.0}), remux, locks=locks
    )

    record = asyncio.run(processor.process(path, "camera4/20260201_140000.mp4"))

    assert record is not None
    assert remux.calls == []
    assert locks.is_locked(path)


def test_lock_is_released_after_remux(tmp_path: Path, db_path: Path) -> None:
    path = _segment(tmp_path, 4, "20260201_141000.mp4")
    locks = LockManager()
    seen_locked: list[bool] = []

    def _remux(source: Path, target: Path) -> None:
        seen_locked.append(locks.is_locked(source))
        raise RemuxError("no streams")

    processor, _ = _processor(db_path, _FakeProbe({path.name: 600.0}), _remux, locks=locks)
    asyncio.run(processor.process(path, "camera4/20260201_141000.mp4"))

    assert seen_locked == [True]
    assert locks.held() == []


def test_enqueue_drops_missing_files(tmp_path: Path, db_path: Path) -> None:
    processor, _ = _processor(db_path, _FakeProbe({}), _FakeRemux())
    assert processor.enqueue(tmp_path / "camera1" / "20260201_100000.mp4", "camera1/20260201_100000.mp4") is False
    assert processor.pending == 0


def test_worker_continues_after_unexpected_failure(tmp_path: Path, db_path: Path) -> None:
    first = _segment(tmp_path, 5, "20260201_150000.mp4")
    second = _segment(tmp_path, 5, "20260201_151000.mp4")
    probe = _FakeProbe({first.name: RuntimeError("decoder crashed"), second.name: 600.0})
    processor, store = _processor(db_path, probe, _FakeRemux())

    async def _exercise() -> None:
        processor.start()
        processor.enqueue(first, f"camera5/{first.name}")
        processor.enqueue(second, f"camera5/{second.name}")
        await processor.join()
        await processor.aclose()

    asyncio.run(_exercise())

    assert [record.filename for record in store.list_segments(5)] == [second.name]
    assert first.exists()


def test_async_completion_hook_is_awaited(tmp_path: Path, db_path: Path) -> None:
    path = _segment(tmp_path, 6, "20260201_160000.mp4")
    seen: list[str] = []

    async def _hook(record) -> None:
        await asyncio.sleep(0)
        seen.append(record.filename)

    processor, _ = _processor(
        db_path, _FakeProbe({path.name: 600.0}), _FakeRemux(), on_segment_processed=_hook
    )
    asyncio.run(processor.process(path, "camera6/20260201_160000.mp4"))

    assert seen == [path.name]


def test_probe_runs_under_the_segment_lock(tmp_path: Path, db_path: Path) -> None:
    path = _segment(tmp_path, 5, "20260201_150000.mp4")
    locks = LockManager()
    competing: list[bool] = []

    def _probe(source: Path) -> float:
        # A deletion attempted mid-probe must find the file held.
        competing.append(locks.acquire(source))
        return 600.0

    processor, store = _processor(db_path, _probe, _FakeRemux(), locks=locks)
    record = asyncio.run(processor.process(path, "camera5/20260201_150000.mp4"))

    assert record is not None
    assert competing == [False]
    assert locks.held() == []


def test_locked_corrupt_segment_is_left_in_place(tmp_path: Path, db_path: Path) -> None:
    path = _segment(tmp_path, 5, "20260201_151000.mp4")
    locks = LockManager()
    locks.acquire(path)
    processor, store = _processor(
        db_path, _FakeProbe({path.name: 1.5}), _FakeRemux(), locks=locks
    )

    assert asyncio.run(processor.process(path, "camera5/20260201_151000.mp4")) is None
    assert path.exists()
    assert store.list_segments(5) == []

"""Detection of completed segments written by the capture processes."""

from __future__ import annotations

import asyncio
import csv
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

import inotify.adapters

from .media import REMUX_MARKER, is_segment_filename, parse_camera_directory


logger = logging.getLogger(__name__)

EnqueueFunc = Callable[[Path, str], object]
AdapterFactory = Callable[[str], Any]

# Segment muxers close a finished file; moves in from elsewhere also count.
_COMPLETION_EVENTS = frozenset({"IN_CLOSE_WRITE", "IN_MOVED_TO"})


class SegmentSource(ABC):
    """Feeds ``(absolute path, "camera{ID}/{file}")`` pairs to an enqueue callback."""

    @abstractmethod
    def start(self, enqueue: EnqueueFunc) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def aclose(self) -> None:  # pragma: no cover - optional override
        return None


def _default_adapter(root: str) -> Any:
    return inotify.adapters.InotifyTree(root)


class InotifySegmentWatcher(SegmentSource):
    """Recursive inotify watch on the recordings root with per-name debounce.

    The blocking inotify reader lives on a daemon thread and only hands
    events to the event loop; debounce timers and the enqueue callback run on
    the loop thread.
    """

    def __init__(
        self,
        root: Path | str,
        *,
        extension: str = "mp4",
        debounce_s: float = 10.0,
        adapter_factory: AdapterFactory | None = None,
    ) -> None:
        self._root = Path(root)
        self._extension = extension
        self._debounce_s = float(debounce_s)
        self._adapter_factory = adapter_factory or _default_adapter
        self._loop: asyncio.AbstractEventLoop | None = None
        self._enqueue: EnqueueFunc | None = None
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def pending(self) -> list[str]:
        return sorted(self._pending)

    def start(self, enqueue: EnqueueFunc) -> None:
        if self._thread is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._enqueue = enqueue
        self._root.mkdir(parents=True, exist_ok=True)
        self._stop_event.clear()
        thread = threading.Thread(target=self._watch, name="segment-inotify", daemon=True)
        self._thread = thread
        thread.start()
        logger.info("Watching %s for completed segments", self._root)

    async def aclose(self) -> None:
        self._stop_event.set()
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        thread = self._thread
        self._thread = None
        if thread is not None:
            await asyncio.to_thread(thread.join, 5.0)

    def _watch(self) -> None:
        loop = self._loop
        assert loop is not None
        # Rename cookies of our own remux temp files being moved onto segments.
        remux_moves: set[int] = set()
        try:
            adapter = self._adapter_factory(str(self._root))
            for event in adapter.event_gen(yield_nones=True):
                if self._stop_event.is_set():
                    break
                if event is None:
                    continue
                header, type_names, directory, filename = event
                cookie = getattr(header, "cookie", 0)
                if "IN_MOVED_FROM" in type_names:
                    if cookie and REMUX_MARKER in filename:
                        remux_moves.add(cookie)
                    continue
                if "IN_MOVED_TO" in type_names and cookie in remux_moves:
                    remux_moves.discard(cookie)
                    continue
                if not filename or not _COMPLETION_EVENTS.intersection(type_names):
                    continue
                loop.call_soon_threadsafe(self.handle_event, Path(directory) / filename)
        except Exception:
            if not self._stop_event.is_set():
                logger.exception("Segment watcher for %s stopped unexpectedly", self._root)

    def handle_event(self, path: Path) -> None:
        """Restart the debounce timer for ``path``; loop thread only."""

        if self._loop is None or self._stop_event.is_set():
            return
        if parse_camera_directory(path.parent.name) is None:
            return
        if not is_segment_filename(path.name, self._extension):
            return
        name = f"{path.parent.name}/{path.name}"
        previous = self._pending.pop(name, None)
        if previous is not None:
            previous.cancel()
        self._pending[name] = self._loop.call_later(self._debounce_s, self._fire, path, name)

    def _fire(self, path: Path, name: str) -> None:
        self._pending.pop(name, None)
        enqueue = self._enqueue
        if enqueue is None:
            return
        try:
            enqueue(path, name)
        except Exception:
            logger.exception("Failed to enqueue segment %s", name)


class ManifestSegmentWatcher(SegmentSource):
    """Tail the per-camera CSV segment lists written by the segment muxer."""

    def __init__(
        self,
        root: Path | str,
        *,
        extension: str = "mp4",
        manifest_name: str = "segments.csv",
        poll_interval_s: float = 2.0,
    ) -> None:
        self._root = Path(root)
        self._extension = extension
        self._manifest_name = manifest_name
        self._poll_interval_s = float(poll_interval_s)
        self._offsets: dict[str, int] = {}
        self._enqueue: EnqueueFunc | None = None
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    def offset(self, camera_directory: str) -> int:
        return self._offsets.get(camera_directory, 0)

    def start(self, enqueue: EnqueueFunc) -> None:
        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._enqueue = enqueue
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run())

    async def aclose(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        self._task = None
        if task is not None:
            await task
        self._stop_event = None

    async def _run(self) -> None:
        stop_event = self._stop_event
        assert stop_event is not None
        while not stop_event.is_set():
            try:
                await self.poll()
            except Exception:
                logger.exception("Segment manifest poll failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._poll_interval_s)
            except asyncio.TimeoutError:
                continue

    async def poll(self) -> int:
        """Read new manifest entries and enqueue them; returns how many."""

        entries = await asyncio.to_thread(self.scan)
        enqueue = self._enqueue
        if enqueue is not None:
            for path, name in entries:
                enqueue(path, name)
        return len(entries)

    def scan(self) -> list[tuple[Path, str]]:
        if not self._root.is_dir():
            return []
        found: list[tuple[Path, str]] = []
        for directory in sorted(self._root.iterdir()):
            if parse_camera_directory(directory.name) is None or not directory.is_dir():
                continue
            manifest = directory / self._manifest_name
            try:
                lines = self._read_appended(directory.name, manifest)
            except FileNotFoundError:
                continue
            for filename in self._filenames(lines):
                found.append((directory / filename, f"{directory.name}/{filename}"))
        return found

    def _read_appended(self, key: str, manifest: Path) -> list[str]:
        size = manifest.stat().st_size
        offset = self._offsets.get(key, 0)
        if size < offset:
            logger.info("Segment manifest %s was truncated; reading from the start", manifest)
            offset = 0
            self._offsets[key] = 0
        if size == offset:
            return []
        with manifest.open("rb") as handle:
            handle.seek(offset)
            data = handle.read(size - offset)
        end = data.rfind(b"\n")
        if end < 0:
            return []
        complete = data[: end + 1]
        self._offsets[key] = offset + len(complete)
        return complete.decode("utf-8", errors="replace").splitlines()

    def _filenames(self, lines: Sequence[str]) -> Iterable[str]:
        for row in csv.reader(line for line in lines if line.strip()):
            if not row:
                continue
            filename = Path(row[0].strip()).name
            if is_segment_filename(filename, self._extension):
                yield filename


class CompositeSegmentSource(SegmentSource):
    """Runs several sources into the same enqueue callback."""

    def __init__(self, sources: Iterable[SegmentSource]) -> None:
        self._sources = list(sources)

    @property
    def sources(self) -> list[SegmentSource]:
        return list(self._sources)

    def start(self, enqueue: EnqueueFunc) -> None:
        for source in self._sources:
            source.start(enqueue)

    async def aclose(self) -> None:
        for source in reversed(self._sources):
            try:
                await source.aclose()
            except Exception:
                logger.exception("Failed to close segment source %r", source)


def build_segment_source(
    mode: str,
    root: Path | str,
    *,
    extension: str = "mp4",
    debounce_s: float = 10.0,
    manifest_name: str = "segments.csv",
    poll_interval_s: float = 2.0,
) -> SegmentSource:
    """Return the discovery source for ``mode`` (``inotify``, ``manifest`` or ``both``)."""

    watcher = InotifySegmentWatcher(root, extension=extension, debounce_s=debounce_s)
    tailer = ManifestSegmentWatcher(
        root,
        extension=extension,
        manifest_name=manifest_name,
        poll_interval_s=poll_interval_s,
    )
    if mode == "inotify":
        return watcher
    if mode == "manifest":
        return tailer
    if mode == "both":
        return CompositeSegmentSource([watcher, tailer])
    raise ValueError(f"Unknown discovery mode: {mode!r}")


__all__ = [
    "CompositeSegmentSource",
    "InotifySegmentWatcher",
    "ManifestSegmentWatcher",
    "SegmentSource",
    "build_segment_source",
]

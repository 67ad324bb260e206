"""Sequential validation, remux and publication of completed segments."""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable

from .locks import LockManager
from .media import (
    CorruptSegmentError,
    RemuxError,
    SegmentName,
    SegmentNameError,
    parse_segment_name,
    probe_duration,
    remux_faststart,
    temp_remux_path,
)
from .store import SegmentRecord, SegmentStore


logger = logging.getLogger(__name__)

ProbeFunc = Callable[[Path], "float | None"]
RemuxFunc = Callable[[Path, Path], None]
CompletionHook = Callable[[SegmentRecord], "Awaitable[None] | None"]


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class SegmentProcessor:
    """Single-consumer queue turning finished capture files into segment rows.

    Tasks are processed strictly one at a time: the per-file lock and the
    de-duplication check both assume no two tasks run concurrently, and the
    probe/remux work is too heavy to fan out across cameras. Failed tasks are
    logged and dropped; the orphan sweep picks up anything left behind.
    """

    def __init__(
        self,
        store: SegmentStore,
        locks: LockManager,
        *,
        extension: str = "mp4",
        container_format: str = "mp4",
        min_duration_s: float = 5.0,
        min_remux_bytes: int = 1024,
        probe: ProbeFunc | None = None,
        remux: RemuxFunc | None = None,
        on_segment_processed: CompletionHook | None = None,
    ) -> None:
        self._store = store
        self._locks = locks
        self._extension = extension
        self._min_duration_s = float(min_duration_s)
        self._min_remux_bytes = int(min_remux_bytes)
        self._probe = probe or probe_duration
        self._remux = remux or functools.partial(
            remux_faststart, container_format=container_format
        )
        self.on_segment_processed = on_segment_processed
        self._queue: asyncio.Queue[tuple[Path, str]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the consumer task on the running event loop."""

        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._worker = loop.create_task(self._run())

    async def aclose(self) -> None:
        worker = self._worker
        self._worker = None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:  # pragma: no cover - expected path
            pass

    def enqueue(self, path: Path | str, name: str) -> bool:
        """Queue ``path`` (known to consumers as ``name``) for processing.

        Must be called from the event loop thread. Returns ``False`` when the
        file has already disappeared.
        """

        file_path = Path(path)
        if not file_path.exists():
            logger.debug("Not queueing %s: file no longer exists", name)
            return False
        self._queue.put_nowait((file_path, name))
        return True

    async def join(self) -> None:
        """Wait until every queued task has been handled."""

        await self._queue.join()

    async def _run(self) -> None:
        while True:
            path, name = await self._queue.get()
            try:
                await self.process(path, name)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Failed to process segment %s", name)
            finally:
                self._queue.task_done()

    async def process(self, path: Path, name: str) -> SegmentRecord | None:
        """Run the publication pipeline for one file.

        Returns the inserted row, or ``None`` when the file was skipped,
        rejected or discarded.
        """

        path = Path(path)
        if not await asyncio.to_thread(path.exists):
            logger.debug("Skipping %s: file removed before processing", name)
            return None

        try:
            segment = parse_segment_name(name, self._extension)
        except SegmentNameError as exc:
            logger.warning("Ignoring %s: %s", name, exc)
            return None

        if await asyncio.to_thread(self._store.exists, segment.camera_id, segment.filename):
            logger.debug("Skipping already published segment %s", segment.relative_name)
            return None

        duration = await asyncio.to_thread(self._probe_locked, path)
        try:
            self._check_duration(segment, duration)
        except CorruptSegmentError as exc:
            logger.warning("Discarding %s: %s", segment.relative_name, exc)
            await asyncio.to_thread(self._discard, path, segment)
            return None
        assert duration is not None

        await asyncio.to_thread(self._remux_in_place, path, segment)

        file_size = (await asyncio.to_thread(path.stat)).st_size
        seconds = int(round(duration))
        record = await asyncio.to_thread(
            functools.partial(
                self._store.insert,
                camera_id=segment.camera_id,
                filename=segment.filename,
                start_time=segment.start_time,
                end_time=segment.start_time + timedelta(seconds=seconds),
                duration=seconds,
                file_size=file_size,
                file_path=path,
            )
        )
        if record is None:
            logger.warning("Segment %s was published concurrently", segment.relative_name)
            return None

        logger.info(
            "Published %s (%.2f MB, %ds)",
            segment.relative_name,
            file_size / (1024 * 1024),
            seconds,
        )
        await self._notify(record)
        return record

    def _probe_locked(self, path: Path) -> float | None:
        # A lock held elsewhere also keeps the file from being removed mid-read.
        with self._locks.hold(path):
            return self._probe(path)

    def _discard(self, path: Path, segment: SegmentName) -> None:
        with self._locks.hold(path) as acquired:
            if not acquired:
                logger.warning("%s is locked; leaving it in place", segment.relative_name)
                return
            _unlink_quietly(path)

    def _check_duration(self, segment: SegmentName, duration: float | None) -> None:
        if duration is None:
            raise CorruptSegmentError("media duration could not be probed")
        if duration < self._min_duration_s:
            raise CorruptSegmentError(
                f"duration {duration:.2f}s is below the {self._min_duration_s:g}s minimum"
            )

    def _remux_in_place(self, path: Path, segment: SegmentName) -> bool:
        temp_path = temp_remux_path(path)
        with self._locks.hold(path) as acquired:
            if not acquired:
                logger.warning("%s is locked; publishing without remux", segment.relative_name)
                return False
            _unlink_quietly(temp_path)
            try:
                self._remux(path, temp_path)
            except RemuxError as exc:
                logger.warning("Keeping original %s: %s", segment.relative_name, exc)
                _unlink_quietly(temp_path)
                return False
            try:
                size = temp_path.stat().st_size
            except FileNotFoundError:
                size = 0
            if size <= self._min_remux_bytes:
                logger.warning(
                    "Remuxed %s is only %d bytes; keeping original",
                    segment.relative_name,
                    size,
                )
                _unlink_quietly(temp_path)
                return False
            try:
                os.replace(temp_path, path)
            except OSError as exc:
                logger.warning("Unable to swap remuxed %s into place: %s", segment.relative_name, exc)
                _unlink_quietly(temp_path)
                return False
        return True

    async def _notify(self, record: SegmentRecord) -> None:
        hook = self.on_segment_processed
        if hook is None:
            return
        try:
            result = hook(record)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Segment completion hook failed for %s", record.filename)


__all__ = ["CompletionHook", "SegmentProcessor"]

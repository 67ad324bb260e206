"""Wiring of the recording components and their background timers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from ..config import RecorderSettings
from .discovery import SegmentSource, build_segment_source
from .engine import SpawnFunc, StreamEngine
from .housekeeper import HouseKeeper
from .locks import LockManager
from .processor import ProbeFunc, RemuxFunc, SegmentProcessor
from .store import CameraDirectory, SegmentRecord, SegmentStore, SQLiteCameraStore


logger = logging.getLogger(__name__)


class RecordingService:
    """Owns the engine, discovery, processor and housekeeper for one process.

    ``start`` must be awaited on the event loop that will host the service;
    ``aclose`` stops capture, timers and consumers in reverse order.
    """

    def __init__(
        self,
        settings: RecorderSettings,
        *,
        cameras: CameraDirectory | None = None,
        store: SegmentStore | None = None,
        segment_source: SegmentSource | None = None,
        spawn: SpawnFunc | None = None,
        probe: ProbeFunc | None = None,
        remux: RemuxFunc | None = None,
        disk_free: Callable[[], int] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or SegmentStore(settings.database_file)
        self.cameras = cameras or SQLiteCameraStore(settings.database_file)
        self.locks = LockManager()
        self.processor = SegmentProcessor(
            self.store,
            self.locks,
            extension=settings.segment_extension,
            container_format=settings.container_format,
            min_duration_s=settings.min_segment_duration_s,
            min_remux_bytes=settings.min_remux_bytes,
            probe=probe,
            remux=remux,
            on_segment_processed=self._on_segment_published,
        )
        self.housekeeper = HouseKeeper(
            self.store,
            self.cameras,
            self.locks,
            settings.recordings_path,
            extension=settings.segment_extension,
            orphan_grace_s=settings.orphan_grace_s,
            default_retention_hours=settings.default_retention_hours,
            cleanup_batch_size=settings.cleanup_batch_size,
            eviction_batch_size=settings.eviction_batch_size,
            emergency_free_bytes=settings.emergency_free_bytes,
            disk_free=disk_free,
        )
        self.engine = StreamEngine(self.cameras, self.store, settings, spawn=spawn)
        self.discovery = segment_source or build_segment_source(
            settings.discovery_mode,
            settings.recordings_path,
            extension=settings.segment_extension,
            debounce_s=settings.debounce_s,
            manifest_name=settings.manifest_name,
            poll_interval_s=settings.manifest_poll_interval_s,
        )
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[Any]] = []
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def running(self) -> bool:
        return self._stop_event is not None

    async def start(self, *, auto_start: bool = True) -> None:
        if self._stop_event is not None:
            return
        loop = asyncio.get_running_loop()
        await asyncio.to_thread(
            self.settings.recordings_path.mkdir, parents=True, exist_ok=True
        )
        self._stop_event = asyncio.Event()
        self.processor.start()
        self.discovery.start(self.processor.enqueue)
        self._tasks = [
            loop.create_task(
                self._periodic(
                    self.settings.watchdog_interval_s,
                    self.engine.check_stalled_streams,
                    "Stalled stream check",
                )
            ),
            loop.create_task(
                self._periodic(
                    self.settings.cleanup_interval_s,
                    self.housekeeper.real_time_cleanup,
                    "Scheduled cleanup",
                )
            ),
            loop.create_task(self._delayed_orphan_sweep()),
        ]
        if auto_start:
            self._tasks.append(loop.create_task(self.engine.auto_start_recordings()))
        logger.info("Recording service started (recordings in %s)", self.settings.recordings_path)

    async def aclose(self) -> None:
        stop_event = self._stop_event
        if stop_event is None:
            return
        stop_event.set()
        await self.engine.shutdown_all()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.discovery.aclose()
        await self.processor.aclose()
        background = list(self._background)
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        self._stop_event = None
        logger.info("Recording service stopped")

    async def _periodic(
        self, interval: float, action: Callable[[], Awaitable[Any]], description: str
    ) -> None:
        stop_event = self._stop_event
        assert stop_event is not None
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            else:
                return
            try:
                await action()
            except Exception:
                logger.exception("%s failed", description)

    async def _delayed_orphan_sweep(self) -> None:
        stop_event = self._stop_event
        assert stop_event is not None
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.settings.orphan_sweep_delay_s)
            return
        except asyncio.TimeoutError:
            pass
        try:
            await self.housekeeper.recover_orphaned_segments(self.processor.enqueue)
        except Exception:
            logger.exception("Orphaned segment recovery failed")

    def _on_segment_published(self, record: SegmentRecord) -> None:
        if self._stop_event is None or self._stop_event.is_set():
            return
        task = asyncio.get_running_loop().create_task(self._cleanup_after_publish())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cleanup_after_publish(self) -> None:
        try:
            await self.housekeeper.real_time_cleanup()
        except Exception:
            logger.exception("Cleanup after publish failed")


__all__ = ["RecordingService"]

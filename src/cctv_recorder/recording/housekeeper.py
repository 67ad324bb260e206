"""Retention, emergency eviction and orphan recovery for recorded segments."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable

from .locks import LockManager
from .media import is_segment_filename, parse_camera_directory
from .store import CameraDirectory, SegmentRecord, SegmentStore


logger = logging.getLogger(__name__)

EnqueueFunc = Callable[[Path, str], object]


@dataclass(slots=True)
class CleanupReport:
    """Outcome of a single housekeeping pass."""

    expired: int = 0
    evicted: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.evicted


class HouseKeeper:
    """Keep the recordings volume and the segment table in step.

    Deletion always removes the file before its row. A row whose file could
    not be removed (other than because it was already gone) is kept so a later
    pass can retry, and files held in the :class:`LockManager` are skipped.
    """

    def __init__(
        self,
        store: SegmentStore,
        cameras: CameraDirectory,
        locks: LockManager,
        root: Path | str,
        *,
        extension: str = "mp4",
        orphan_grace_s: float = 300.0,
        default_retention_hours: float = 168.0,
        cleanup_batch_size: int = 10,
        eviction_batch_size: int = 5,
        emergency_free_bytes: int = 2_000_000_000,
        disk_free: Callable[[], int] | None = None,
        clock: Callable[[], datetime] = datetime.now,
        time_source: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._cameras = cameras
        self._locks = locks
        self._root = Path(root)
        self._extension = extension
        self._orphan_grace_s = float(orphan_grace_s)
        self._default_retention_hours = float(default_retention_hours)
        self._cleanup_batch_size = max(1, int(cleanup_batch_size))
        self._eviction_batch_size = max(1, int(eviction_batch_size))
        self._emergency_free_bytes = int(emergency_free_bytes)
        self._disk_free = disk_free or self._volume_free_bytes
        self._clock = clock
        self._time_source = time_source
        self._cleanup_task: asyncio.Future[CleanupReport] | None = None

    @property
    def root(self) -> Path:
        return self._root

    def _volume_free_bytes(self) -> int:
        return int(shutil.disk_usage(self._root).free)

    # ------------------------------------------------------------------
    # Orphan recovery

    def find_orphaned_segments(self) -> list[tuple[Path, str]]:
        """Return settled segment files on disk that have no row yet."""

        if not self._root.is_dir():
            return []
        now = self._time_source()
        orphans: list[tuple[Path, str]] = []
        for directory in sorted(self._root.iterdir()):
            camera_id = parse_camera_directory(directory.name)
            if camera_id is None or not directory.is_dir():
                continue
            known = self._store.known_filenames(camera_id)
            for entry in sorted(directory.iterdir()):
                if entry.name in known or not is_segment_filename(entry.name, self._extension):
                    continue
                try:
                    stat = entry.stat()
                except FileNotFoundError:
                    continue
                # Files still inside the grace window may be open in the muxer.
                if now - stat.st_mtime < self._orphan_grace_s:
                    continue
                orphans.append((entry, f"{directory.name}/{entry.name}"))
        return orphans

    async def recover_orphaned_segments(self, enqueue: EnqueueFunc) -> int:
        """Queue every orphaned segment through ``enqueue``; returns the count."""

        orphans = await asyncio.to_thread(self.find_orphaned_segments)
        for path, name in orphans:
            enqueue(path, name)
        if orphans:
            logger.info("Recovered %d orphaned segment(s)", len(orphans))
        return len(orphans)

    # ------------------------------------------------------------------
    # Cleanup

    async def real_time_cleanup(self) -> CleanupReport:
        """Run retention and disk-pressure eviction off the event loop.

        Calls arriving while a pass is in flight share that pass's result.
        """

        task = self._cleanup_task
        if task is None or task.done():
            loop = asyncio.get_running_loop()
            task = loop.create_task(asyncio.to_thread(self.run_cleanup))
            self._cleanup_task = task
        return await asyncio.shield(task)

    def run_cleanup(self) -> CleanupReport:
        report = CleanupReport(
            expired=self.apply_retention(),
            evicted=self.relieve_disk_pressure(),
        )
        if report.total:
            logger.info(
                "Housekeeping removed %d expired and %d evicted segment(s)",
                report.expired,
                report.evicted,
            )
        return report

    def apply_retention(self) -> int:
        now = self._clock()
        removed = 0
        known_ids: list[int] = []
        for camera in self._cameras.list_cameras():
            known_ids.append(camera.id)
            hours = camera.retention_hours
            if hours is None:
                hours = self._default_retention_hours
            cutoff = now - timedelta(hours=hours)
            removed += self._drain_expired(cutoff, camera_id=camera.id)
        # Rows for cameras that have since been removed from the directory.
        cutoff = now - timedelta(hours=self._default_retention_hours)
        removed += self._drain_expired(cutoff, exclude_camera_ids=known_ids)
        return removed

    def _drain_expired(
        self,
        cutoff: datetime,
        *,
        camera_id: int | None = None,
        exclude_camera_ids: Iterable[int] = (),
    ) -> int:
        removed = 0
        cursor: SegmentRecord | None = None
        while True:
            batch = self._store.expired_segments(
                cutoff,
                limit=self._cleanup_batch_size,
                camera_id=camera_id,
                exclude_camera_ids=exclude_camera_ids,
                after=cursor,
            )
            if not batch:
                return removed
            deleted = self._delete_segments(batch)
            removed += deleted
            cursor = batch[-1]

    def relieve_disk_pressure(self) -> int:
        evicted = 0
        cursor: SegmentRecord | None = None
        while True:
            try:
                free = int(self._disk_free())
            except OSError as exc:
                logger.warning("Unable to read free space for %s: %s", self._root, exc)
                return evicted
            if free >= self._emergency_free_bytes:
                return evicted
            batch = self._store.oldest_segments(limit=self._eviction_batch_size, after=cursor)
            if not batch:
                logger.warning(
                    "Disk space low (%d bytes free) but no segments remain to evict", free
                )
                return evicted
            logger.warning(
                "Disk space low (%d bytes free); evicting %d oldest segment(s)",
                free,
                len(batch),
            )
            deleted = self._delete_segments(batch)
            evicted += deleted
            cursor = batch[-1]
            if deleted == 0:
                return evicted

    def _delete_segments(self, records: Iterable[SegmentRecord]) -> int:
        removable: list[int] = []
        for record in records:
            path = Path(record.file_path)
            with self._locks.hold(path) as acquired:
                if not acquired:
                    logger.debug("Skipping locked segment %s", path)
                    continue
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    logger.warning("Unable to remove segment %s: %s", path, exc)
                    continue
            removable.append(record.id)
        return self._store.delete(removable)


__all__ = ["CleanupReport", "HouseKeeper"]

"""Supervision of the per-camera capture processes."""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, Sequence

from ..config import RecorderSettings
from .media import build_capture_command, camera_directory, is_segment_filename
from .store import CameraDirectory, SegmentStore


logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20


class ProcessHandle(Protocol):
    """Subset of :class:`asyncio.subprocess.Process` used by the engine."""

    pid: int
    returncode: int | None
    stderr: Any

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


SpawnFunc = Callable[[Sequence[str]], Awaitable[ProcessHandle]]


async def _spawn_capture(command: Sequence[str]) -> ProcessHandle:
    return await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


def _local_now() -> datetime:
    return datetime.now().astimezone()


def compute_restart_delay(
    attempt: int,
    *,
    short_delay_s: float = 2.0,
    long_delay_s: float = 10.0,
    short_attempts: int = 2,
    jitter_s: float = 0.5,
    rng: Callable[[], float] = random.random,
) -> float:
    """Return the wait before restart ``attempt`` (1-based since the last reset)."""

    base = short_delay_s if attempt <= short_attempts else long_delay_s
    return base + rng() * jitter_s


@dataclass(slots=True)
class RecordingProcess:
    camera_id: int
    process: ProcessHandle
    started_at: datetime
    auto_restart: bool = True
    last_file: str | None = None
    last_size: int | None = None
    killed_by_watchdog: bool = False
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=_STDERR_TAIL_LINES))
    stability_handle: asyncio.TimerHandle | None = None
    monitor: asyncio.Task[None] | None = None


class StreamEngine:
    """Keep one segmenting capture process alive per recording camera.

    All state is owned by the event loop. Start and stop for the same camera
    are serialised by a per-camera lock; exits are observed by a monitor task
    per process which schedules restarts with backoff while ``auto_restart``
    is set and the engine is not shutting down.
    """

    def __init__(
        self,
        cameras: CameraDirectory,
        store: SegmentStore,
        settings: RecorderSettings,
        *,
        spawn: SpawnFunc | None = None,
        clock: Callable[[], datetime] = _local_now,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._cameras = cameras
        self._store = store
        self._settings = settings
        self._root = settings.recordings_path
        self._spawn = spawn or _spawn_capture
        self._clock = clock
        self._rng = rng
        self._processes: dict[int, RecordingProcess] = {}
        self._attempts: dict[int, int] = {}
        self._restart_tasks: dict[int, asyncio.Task[None]] = {}
        self._camera_locks: dict[int, asyncio.Lock] = {}
        self._stop_requested: set[int] = set()
        self._launching: set[int] = set()
        self._shutting_down = False

    @property
    def root(self) -> Path:
        return self._root

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def active_cameras(self) -> list[int]:
        return sorted(self._processes)

    def get_process(self, camera_id: int) -> RecordingProcess | None:
        return self._processes.get(int(camera_id))

    def restart_pending(self, camera_id: int) -> bool:
        return int(camera_id) in self._restart_tasks

    def _camera_lock(self, camera_id: int) -> asyncio.Lock:
        lock = self._camera_locks.get(camera_id)
        if lock is None:
            lock = asyncio.Lock()
            self._camera_locks[camera_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Public operations

    async def auto_start_recordings(self) -> int:
        """Start every camera with recording enabled, staggering the launches."""

        cameras = await asyncio.to_thread(self._cameras.list_recording_cameras)
        logger.info("Auto-starting recording for %d camera(s)", len(cameras))
        started = 0
        for index, camera in enumerate(cameras):
            if index and self._settings.start_stagger_s > 0:
                await asyncio.sleep(self._settings.start_stagger_s)
            if self._shutting_down:
                break
            try:
                if await self.start_recording(camera.id):
                    started += 1
            except Exception:
                logger.exception("Failed to auto-start recording for camera %d", camera.id)
        return started

    async def start_recording(self, camera_id: int) -> bool:
        """Ensure a capture process is running for ``camera_id``.

        Returns ``True`` when the camera is recording afterwards.
        """

        camera_id = int(camera_id)
        self._stop_requested.discard(camera_id)
        async with self._camera_lock(camera_id):
            return await self._start_locked(camera_id)

    async def stop_recording(self, camera_id: int) -> bool:
        """Stop recording ``camera_id`` and wait for the process to be reaped."""

        camera_id = int(camera_id)
        self._stop_requested.add(camera_id)
        cancelled = await self._cancel_restart(camera_id)
        cancelled = camera_id in self._launching or cancelled
        async with self._camera_lock(camera_id):
            # A restart that was already launching may have queued another one.
            cancelled = await self._cancel_restart(camera_id) or cancelled
            entry = self._processes.get(camera_id)
            if entry is None:
                if cancelled:
                    logger.info("Cancelled pending restart for camera %d", camera_id)
                return cancelled
            entry.auto_restart = False
            await self._terminate(entry)
        self._attempts.pop(camera_id, None)
        logger.info("Stopped recording camera %d", camera_id)
        return True

    async def check_stalled_streams(self) -> list[int]:
        """Kill capture processes whose newest segment stopped growing."""

        stalled: list[int] = []
        for camera_id, entry in list(self._processes.items()):
            directory = camera_directory(self._root, camera_id)
            newest = await asyncio.to_thread(self._newest_segment, directory)
            if self._processes.get(camera_id) is not entry:
                continue
            if newest is None:
                entry.last_file = None
                entry.last_size = None
                continue
            name, size = newest
            if name == entry.last_file and size == entry.last_size and size > 0:
                logger.warning(
                    "Camera %d appears frozen (%s stuck at %d bytes); killing capture",
                    camera_id,
                    name,
                    size,
                )
                entry.killed_by_watchdog = True
                try:
                    entry.process.kill()
                except ProcessLookupError:
                    pass
                stalled.append(camera_id)
            entry.last_file = name
            entry.last_size = size
        return stalled

    async def shutdown_all(self) -> None:
        """Stop every capture process and refuse further restarts."""

        self._shutting_down = True
        for camera_id in list(self._restart_tasks):
            await self._cancel_restart(camera_id)
        active = list(self._processes)
        if active:
            logger.info("Stopping %d capture process(es)", len(active))
        results = await asyncio.gather(
            *(self.stop_recording(camera_id) for camera_id in active),
            return_exceptions=True,
        )
        for camera_id, result in zip(active, results):
            if isinstance(result, BaseException):
                logger.error("Failed to stop camera %d: %s", camera_id, result)

    def get_recording_status(self, camera_id: int) -> dict[str, Any]:
        camera_id = int(camera_id)
        restart_count = self._attempts.get(camera_id, 0)
        entry = self._processes.get(camera_id)
        if entry is None:
            return {
                "isRecording": False,
                "status": "stopped",
                "startTime": None,
                "duration": 0,
                "restartCount": restart_count,
            }
        elapsed = (self._clock() - entry.started_at).total_seconds()
        return {
            "isRecording": True,
            "status": "recording",
            "startTime": entry.started_at.isoformat(),
            "duration": max(0, int(elapsed)),
            "restartCount": restart_count,
        }

    def get_storage_usage(self, camera_id: int) -> dict[str, Any]:
        total, count = self._store.storage_usage(int(camera_id))
        return {
            "totalSize": total,
            "segmentCount": count,
            "totalSizeGB": f"{total / 1024 ** 3:.2f}",
        }

    # ------------------------------------------------------------------
    # Process lifecycle

    async def _start_locked(self, camera_id: int) -> bool:
        if self._shutting_down:
            logger.warning("Not starting camera %d: engine is shutting down", camera_id)
            return False
        if camera_id in self._processes:
            logger.debug("Camera %d is already recording", camera_id)
            return True
        camera = await asyncio.to_thread(self._cameras.get_camera, camera_id)
        if camera is None:
            logger.warning("Cannot record camera %d: camera not found", camera_id)
            return False
        if not camera.source_uri:
            logger.warning("Cannot record camera %d: no stream URL configured", camera_id)
            return False

        settings = self._settings
        directory = camera_directory(self._root, camera_id)
        await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
        command = build_capture_command(
            ffmpeg_binary=settings.ffmpeg_binary,
            source_uri=camera.source_uri,
            output_dir=directory,
            segment_duration_s=settings.segment_duration_s,
            extension=settings.segment_extension,
            container_format=settings.container_format,
            rtsp_transport=settings.rtsp_transport,
            manifest_name=settings.manifest_name if settings.manifest_enabled else None,
        )
        try:
            process = await self._spawn(command)
        except (OSError, ValueError) as exc:
            logger.error("Failed to launch capture for camera %d: %s", camera_id, exc)
            self._schedule_restart(camera_id, reason="crash", exit_code=None)
            return False

        loop = asyncio.get_running_loop()
        entry = RecordingProcess(camera_id=camera_id, process=process, started_at=self._clock())
        self._processes[camera_id] = entry
        entry.stability_handle = loop.call_later(
            settings.stability_window_s, self._mark_stable, entry
        )
        entry.monitor = loop.create_task(self._monitor(entry))
        logger.info("Started recording camera %d (pid %s)", camera_id, process.pid)
        return True

    def _mark_stable(self, entry: RecordingProcess) -> None:
        if self._processes.get(entry.camera_id) is not entry:
            return
        if self._attempts.pop(entry.camera_id, 0):
            logger.info("Camera %d capture is stable; restart counter reset", entry.camera_id)

    async def _monitor(self, entry: RecordingProcess) -> None:
        drain: asyncio.Task[None] | None = None
        returncode: int | None = None
        try:
            if entry.process.stderr is not None:
                drain = asyncio.get_running_loop().create_task(self._drain_stderr(entry))
            returncode = await entry.process.wait()
            if drain is not None:
                try:
                    await asyncio.wait_for(drain, timeout=1.0)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            entry.auto_restart = False
            raise
        except Exception:
            logger.exception("Lost track of capture process for camera %d", entry.camera_id)
        finally:
            if drain is not None and not drain.done():
                drain.cancel()
            self._handle_exit(entry, returncode)

    async def _drain_stderr(self, entry: RecordingProcess) -> None:
        stream = entry.process.stderr
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                entry.stderr_tail.append(text)
                logger.debug("camera %d: %s", entry.camera_id, text)

    def _handle_exit(self, entry: RecordingProcess, returncode: int | None) -> None:
        camera_id = entry.camera_id
        if entry.stability_handle is not None:
            entry.stability_handle.cancel()
            entry.stability_handle = None
        if self._processes.get(camera_id) is entry:
            del self._processes[camera_id]

        if entry.killed_by_watchdog:
            reason = "frozen"
            logger.warning("Capture for camera %d was killed by the watchdog", camera_id)
        elif returncode:
            reason = "crash"
            logger.error(
                "Capture for camera %d exited with code %s: %s",
                camera_id,
                returncode,
                " | ".join(entry.stderr_tail) or "no output",
            )
        else:
            reason = "exit"
            logger.info("Capture for camera %d exited", camera_id)

        if self._shutting_down or not entry.auto_restart:
            return
        self._schedule_restart(camera_id, reason=reason, exit_code=returncode)

    async def _terminate(self, entry: RecordingProcess) -> None:
        process = entry.process
        monitor = entry.monitor
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            if monitor is not None:
                try:
                    await asyncio.wait_for(
                        asyncio.shield(monitor), timeout=self._settings.stop_timeout_s
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "Camera %d ignored SIGTERM for %.1fs; killing",
                        entry.camera_id,
                        self._settings.stop_timeout_s,
                    )
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
        if monitor is not None:
            await monitor

    # ------------------------------------------------------------------
    # Restarts

    def _schedule_restart(self, camera_id: int, *, reason: str, exit_code: int | None) -> None:
        if self._shutting_down or camera_id in self._restart_tasks:
            return
        if camera_id in self._stop_requested:
            logger.info("Not restarting camera %d: recording was stopped", camera_id)
            return
        settings = self._settings
        attempt = self._attempts.get(camera_id, 0) + 1
        self._attempts[camera_id] = attempt
        delay = compute_restart_delay(
            attempt,
            short_delay_s=settings.restart_short_delay_s,
            long_delay_s=settings.restart_long_delay_s,
            short_attempts=settings.restart_short_attempts,
            jitter_s=settings.restart_jitter_s,
            rng=self._rng,
        )
        logger.warning(
            "Restarting camera %d in %.2fs (attempt %d, %s)", camera_id, delay, attempt, reason
        )
        restart_time = self._clock() + timedelta(seconds=delay)
        task = asyncio.get_running_loop().create_task(
            self._restart_after(camera_id, delay, reason, exit_code, attempt, restart_time)
        )
        self._restart_tasks[camera_id] = task

    async def _restart_after(
        self,
        camera_id: int,
        delay: float,
        reason: str,
        exit_code: int | None,
        attempt: int,
        restart_time: datetime,
    ) -> None:
        try:
            await asyncio.to_thread(
                lambda: self._store.record_restart(
                    camera_id=camera_id,
                    reason=reason,
                    exit_code=exit_code,
                    attempt=attempt,
                    delay_s=delay,
                    restart_time=restart_time,
                )
            )
        except Exception:
            logger.exception("Failed to record restart for camera %d", camera_id)
        await asyncio.sleep(delay)
        # Past this point the restart can no longer be cancelled; a racing
        # stop waits on the camera lock instead.
        if self._restart_tasks.get(camera_id) is not asyncio.current_task():
            return
        del self._restart_tasks[camera_id]
        if self._shutting_down:
            return
        self._launching.add(camera_id)
        try:
            async with self._camera_lock(camera_id):
                if camera_id in self._stop_requested:
                    return
                await self._start_locked(camera_id)
        finally:
            self._launching.discard(camera_id)

    async def _cancel_restart(self, camera_id: int) -> bool:
        task = self._restart_tasks.pop(camera_id, None)
        if task is None:
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    # ------------------------------------------------------------------
    # Helpers

    def _newest_segment(self, directory: Path) -> tuple[str, int] | None:
        newest: tuple[float, str, int] | None = None
        try:
            entries = list(directory.iterdir())
        except FileNotFoundError:
            return None
        for entry in entries:
            if not is_segment_filename(entry.name, self._settings.segment_extension):
                continue
            try:
                stat = entry.stat()
            except FileNotFoundError:
                continue
            if newest is None or stat.st_mtime > newest[0]:
                newest = (stat.st_mtime, entry.name, stat.st_size)
        if newest is None:
            return None
        return newest[1], newest[2]


__all__ = [
    "ProcessHandle",
    "RecordingProcess",
    "SpawnFunc",
    "StreamEngine",
    "compute_restart_delay",
]

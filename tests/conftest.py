from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Callable, Sequence

import pytest

from cctv_recorder.recording.store import SQLiteCameraStore


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "cctv.db"


@pytest.fixture
def add_camera(db_path: Path) -> Callable[..., int]:
    """Insert a camera row the way the administration layer would."""

    SQLiteCameraStore(db_path)

    def _add(
        camera_id: int,
        *,
        url: str | None = "rtsp://camera.local/stream",
        enabled: bool = True,
        recording: bool = True,
        retention_hours: float | None = 5.0,
    ) -> int:
        conn = sqlite3.connect(db_path)
        try:
            conn.execute(
                """
                INSERT INTO cameras (
                    id, name, private_rtsp_url, enabled, enable_recording, recording_duration_hours
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (camera_id, f"Camera {camera_id}", url, int(enabled), int(recording), retention_hours),
            )
            conn.commit()
        finally:
            conn.close()
        return camera_id

    return _add


class FakeProcess:
    """Stand-in for :class:`asyncio.subprocess.Process`."""

    _next_pid = 4000

    def __init__(self, command: Sequence[str], *, ignore_terminate: bool = False) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.command = list(command)
        self.returncode: int | None = None
        self.stderr = None
        self.terminated = False
        self.killed = False
        self.ignore_terminate = ignore_terminate
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeSpawner:
    def __init__(self, *, ignore_terminate: bool = False) -> None:
        self.ignore_terminate = ignore_terminate
        self.processes: list[FakeProcess] = []

    async def __call__(self, command: Sequence[str]) -> FakeProcess:
        process = FakeProcess(command, ignore_terminate=self.ignore_terminate)
        self.processes.append(process)
        return process


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)

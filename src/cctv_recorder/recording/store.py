"""SQLite persistence for cameras, published segments and restart history."""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Iterable, Protocol, Sequence

import sqlite3

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(value: datetime) -> str:
    """Render ``value`` the way segment rows store wall-clock times."""

    return value.replace(microsecond=0).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS cameras (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        private_rtsp_url TEXT,
        enabled INTEGER NOT NULL DEFAULT 1,
        enable_recording INTEGER NOT NULL DEFAULT 0,
        recording_duration_hours REAL DEFAULT 5
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recording_segments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        camera_id INTEGER NOT NULL,
        filename TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        file_size INTEGER NOT NULL,
        duration INTEGER NOT NULL,
        file_path TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_segments_cam_file ON recording_segments(camera_id, filename)",
    "CREATE INDEX IF NOT EXISTS idx_segments_camera_time ON recording_segments(camera_id, start_time)",
    "CREATE INDEX IF NOT EXISTS idx_segments_end_time ON recording_segments(end_time)",
    """
    CREATE TABLE IF NOT EXISTS restart_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        camera_id INTEGER NOT NULL,
        reason TEXT NOT NULL,
        exit_code INTEGER,
        attempt INTEGER NOT NULL,
        delay_s REAL NOT NULL,
        restart_time TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_restart_camera_time ON restart_logs(camera_id, restart_time)",
)


class _SQLiteStore:
    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._mutex = RLock()
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._mutex:
            conn = self._connect()
            try:
                for statement in _SCHEMA:
                    conn.execute(statement)
                conn.commit()
            finally:
                conn.close()


@dataclass(slots=True)
class Camera:
    id: int
    source_uri: str | None
    recording_enabled: bool
    enabled: bool
    retention_hours: float | None
    name: str | None = None


class CameraDirectory(Protocol):
    """Read-only view of camera configuration consumed by the engine."""

    def get_camera(self, camera_id: int) -> Camera | None: ...

    def list_cameras(self) -> list[Camera]: ...

    def list_recording_cameras(self) -> list[Camera]: ...


class SQLiteCameraStore(_SQLiteStore):
    """Reads camera configuration owned by the administration layer."""

    _COLUMNS = "id, name, private_rtsp_url, enabled, enable_recording, recording_duration_hours"

    def get_camera(self, camera_id: int) -> Camera | None:
        with self._mutex:
            conn = self._connect()
            try:
                row = conn.execute(
                    f"SELECT {self._COLUMNS} FROM cameras WHERE id = ?",
                    (int(camera_id),),
                ).fetchone()
            finally:
                conn.close()
        return self._row_to_camera(row) if row is not None else None

    def list_cameras(self) -> list[Camera]:
        return self._select(f"SELECT {self._COLUMNS} FROM cameras ORDER BY id")

    def list_recording_cameras(self) -> list[Camera]:
        return self._select(
            f"SELECT {self._COLUMNS} FROM cameras "
            "WHERE enable_recording = 1 AND enabled = 1 ORDER BY id"
        )

    def _select(self, query: str) -> list[Camera]:
        with self._mutex:
            conn = self._connect()
            try:
                rows = conn.execute(query).fetchall()
            finally:
                conn.close()
        return [self._row_to_camera(row) for row in rows]

    @staticmethod
    def _row_to_camera(row: sqlite3.Row) -> Camera:
        source = row["private_rtsp_url"]
        if source is not None:
            source = str(source).strip() or None
        retention = row["recording_duration_hours"]
        return Camera(
            id=int(row["id"]),
            name=row["name"],
            source_uri=source,
            enabled=bool(row["enabled"]),
            recording_enabled=bool(row["enable_recording"]),
            retention_hours=float(retention) if retention is not None else None,
        )


@dataclass(slots=True)
class SegmentRecord:
    id: int
    camera_id: int
    filename: str
    start_time: datetime
    end_time: datetime
    duration: int
    file_size: int
    file_path: str

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["start_time"] = format_timestamp(self.start_time)
        payload["end_time"] = format_timestamp(self.end_time)
        return payload


@dataclass(slots=True)
class RestartRecord:
    id: int
    camera_id: int
    reason: str
    exit_code: int | None
    attempt: int
    delay_s: float
    restart_time: datetime

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["restart_time"] = format_timestamp(self.restart_time)
        return payload


class SegmentStore(_SQLiteStore):
    """Segment metadata rows plus the capture restart history."""

    _COLUMNS = "id, camera_id, filename, start_time, end_time, duration, file_size, file_path"

    def exists(self, camera_id: int, filename: str) -> bool:
        with self._mutex:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT 1 FROM recording_segments WHERE camera_id = ? AND filename = ?",
                    (int(camera_id), filename),
                ).fetchone()
            finally:
                conn.close()
        return row is not None

    def known_filenames(self, camera_id: int) -> set[str]:
        with self._mutex:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT filename FROM recording_segments WHERE camera_id = ?",
                    (int(camera_id),),
                ).fetchall()
            finally:
                conn.close()
        return {str(row[0]) for row in rows}

    def insert(
        self,
        *,
        camera_id: int,
        filename: str,
        start_time: datetime,
        end_time: datetime,
        duration: int,
        file_size: int,
        file_path: Path | str,
    ) -> SegmentRecord | None:
        """Insert a segment row; returns ``None`` when the pair already exists."""

        with self._mutex:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO recording_segments (
                        camera_id, filename, start_time, end_time,
                        duration, file_size, file_path
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(camera_id),
                        filename,
                        format_timestamp(start_time),
                        format_timestamp(end_time),
                        int(duration),
                        int(file_size),
                        str(file_path),
                    ),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    return None
                segment_id = int(cursor.lastrowid)
            finally:
                conn.close()
        return SegmentRecord(
            id=segment_id,
            camera_id=int(camera_id),
            filename=filename,
            start_time=start_time.replace(microsecond=0),
            end_time=end_time.replace(microsecond=0),
            duration=int(duration),
            file_size=int(file_size),
            file_path=str(file_path),
        )

    def list_segments(
        self,
        camera_id: int,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 500,
    ) -> list[SegmentRecord]:
        clauses = ["camera_id = ?"]
        params: list[object] = [int(camera_id)]
        if start is not None:
            clauses.append("end_time >= ?")
            params.append(format_timestamp(start))
        if end is not None:
            clauses.append("start_time <= ?")
            params.append(format_timestamp(end))
        params.append(max(1, min(int(limit), 5000)))
        query = (
            f"SELECT {self._COLUMNS} FROM recording_segments WHERE "
            + " AND ".join(clauses)
            + " ORDER BY start_time ASC LIMIT ?"
        )
        return self._select(query, params)

    def storage_usage(self, camera_id: int) -> tuple[int, int]:
        """Return ``(total bytes, segment count)`` for ``camera_id``."""

        with self._mutex:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT COALESCE(SUM(file_size), 0), COUNT(*) FROM recording_segments WHERE camera_id = ?",
                    (int(camera_id),),
                ).fetchone()
            finally:
                conn.close()
        return int(row[0]), int(row[1])

    def expired_segments(
        self,
        cutoff: datetime,
        *,
        limit: int,
        camera_id: int | None = None,
        exclude_camera_ids: Iterable[int] = (),
        after: SegmentRecord | None = None,
    ) -> list[SegmentRecord]:
        """Segments whose ``end_time`` is older than ``cutoff``, oldest first.

        ``after`` resumes the scan past a previously returned row, ordered by
        ``(end_time, id)``.
        """

        clauses = ["end_time < ?"]
        params: list[object] = [format_timestamp(cutoff)]
        if camera_id is not None:
            clauses.append("camera_id = ?")
            params.append(int(camera_id))
        excluded_cameras = [int(value) for value in exclude_camera_ids]
        if excluded_cameras:
            clauses.append(f"camera_id NOT IN ({', '.join('?' for _ in excluded_cameras)})")
            params.extend(excluded_cameras)
        if after is not None:
            marker = format_timestamp(after.end_time)
            clauses.append("(end_time > ? OR (end_time = ? AND id > ?))")
            params.extend((marker, marker, int(after.id)))
        params.append(max(1, int(limit)))
        query = (
            f"SELECT {self._COLUMNS} FROM recording_segments WHERE "
            + " AND ".join(clauses)
            + " ORDER BY end_time ASC, id ASC LIMIT ?"
        )
        return self._select(query, params)

    def oldest_segments(
        self, *, limit: int, after: SegmentRecord | None = None
    ) -> list[SegmentRecord]:
        """Globally oldest segments by ``(start_time, id)`` regardless of camera."""

        params: list[object] = []
        where = ""
        if after is not None:
            marker = format_timestamp(after.start_time)
            where = " WHERE start_time > ? OR (start_time = ? AND id > ?)"
            params.extend((marker, marker, int(after.id)))
        params.append(max(1, int(limit)))
        return self._select(
            f"SELECT {self._COLUMNS} FROM recording_segments{where} "
            "ORDER BY start_time ASC, id ASC LIMIT ?",
            params,
        )

    def delete(self, segment_ids: Sequence[int]) -> int:
        ids = [int(value) for value in segment_ids]
        if not ids:
            return 0
        with self._mutex:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    f"DELETE FROM recording_segments WHERE id IN ({', '.join('?' for _ in ids)})",
                    ids,
                )
                conn.commit()
                return int(cursor.rowcount)
            finally:
                conn.close()

    def record_restart(
        self,
        *,
        camera_id: int,
        reason: str,
        exit_code: int | None,
        attempt: int,
        delay_s: float,
        restart_time: datetime,
    ) -> None:
        with self._mutex:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO restart_logs (camera_id, reason, exit_code, attempt, delay_s, restart_time)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(camera_id),
                        reason,
                        exit_code,
                        int(attempt),
                        float(delay_s),
                        format_timestamp(restart_time),
                    ),
                )
                conn.commit()
            finally:
                conn.close()

    def list_restarts(self, camera_id: int, *, limit: int = 50) -> list[RestartRecord]:
        with self._mutex:
            conn = self._connect()
            try:
                rows = conn.execute(
                    """
                    SELECT id, camera_id, reason, exit_code, attempt, delay_s, restart_time
                    FROM restart_logs WHERE camera_id = ?
                    ORDER BY id DESC LIMIT ?
                    """,
                    (int(camera_id), max(1, int(limit))),
                ).fetchall()
            finally:
                conn.close()
        return [
            RestartRecord(
                id=int(row["id"]),
                camera_id=int(row["camera_id"]),
                reason=str(row["reason"]),
                exit_code=int(row["exit_code"]) if row["exit_code"] is not None else None,
                attempt=int(row["attempt"]),
                delay_s=float(row["delay_s"]),
                restart_time=parse_timestamp(row["restart_time"]),
            )
            for row in rows
        ]

    def _select(self, query: str, params: Sequence[object]) -> list[SegmentRecord]:
        with self._mutex:
            conn = self._connect()
            try:
                rows = conn.execute(query, list(params)).fetchall()
            finally:
                conn.close()
        return [self._row_to_segment(row) for row in rows]

    @staticmethod
    def _row_to_segment(row: sqlite3.Row) -> SegmentRecord:
        return SegmentRecord(
            id=int(row["id"]),
            camera_id=int(row["camera_id"]),
            filename=str(row["filename"]),
            start_time=parse_timestamp(row["start_time"]),
            end_time=parse_timestamp(row["end_time"]),
            duration=int(row["duration"]),
            file_size=int(row["file_size"]),
            file_path=str(row["file_path"]),
        )


__all__ = [
    "Camera",
    "CameraDirectory",
    "RestartRecord",
    "SQLiteCameraStore",
    "SegmentRecord",
    "SegmentStore",
    "TIMESTAMP_FORMAT",
    "format_timestamp",
    "parse_timestamp",
]

"""Continuous recording: capture supervision, segment publishing and housekeeping."""

from .discovery import (
    CompositeSegmentSource,
    InotifySegmentWatcher,
    ManifestSegmentWatcher,
    SegmentSource,
)
from .engine import RecordingProcess, StreamEngine, compute_restart_delay
from .housekeeper import CleanupReport, HouseKeeper
from .locks import LockManager
from .media import CorruptSegmentError, RecordingError, RemuxError, SegmentNameError
from .processor import SegmentProcessor
from .service import RecordingService
from .store import Camera, SegmentRecord, SegmentStore, SQLiteCameraStore

__all__ = [
    "Camera",
    "CleanupReport",
    "CompositeSegmentSource",
    "CorruptSegmentError",
    "HouseKeeper",
    "InotifySegmentWatcher",
    "LockManager",
    "ManifestSegmentWatcher",
    "RecordingError",
    "RecordingProcess",
    "RecordingService",
    "RemuxError",
    "SQLiteCameraStore",
    "SegmentNameError",
    "SegmentProcessor",
    "SegmentRecord",
    "SegmentSource",
    "SegmentStore",
    "StreamEngine",
    "compute_restart_delay",
]

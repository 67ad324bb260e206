"""FastAPI application exposing the recording engine operations."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Literal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .config import RecorderSettings, RecorderSettingsStore
from .recording import Camera, RecordingService
from .version import APP_VERSION


class SettingsPayload(BaseModel):
    segment_duration_s: int | None = None
    discovery_mode: Literal["inotify", "manifest", "both"] | None = None
    debounce_s: float | None = None
    watchdog_interval_s: float | None = None
    cleanup_interval_s: float | None = None
    default_retention_hours: float | None = None
    emergency_free_bytes: int | None = None


def create_app(
    config_path: Path | str = Path("data/recorder.json"),
    *,
    service: RecordingService | None = None,
    auto_start: bool = True,
) -> FastAPI:
    app = FastAPI(title="CCTV Recorder", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    settings_store = RecorderSettingsStore(config_path)
    if service is None:
        service = RecordingService(settings_store.load())
    recorder = service
    engine = recorder.engine

    async def _require_camera(camera_id: int) -> Camera:
        camera = await asyncio.to_thread(recorder.cameras.get_camera, camera_id)
        if camera is None:
            raise HTTPException(status_code=404, detail="Camera not found")
        return camera

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        await recorder.start(auto_start=auto_start)

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        try:
            await recorder.aclose()
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Recording service did not shut down cleanly")

    @app.get("/api/recordings/status")
    async def all_recording_status() -> dict[str, object]:
        return {
            "cameras": {
                str(camera_id): engine.get_recording_status(camera_id)
                for camera_id in engine.active_cameras()
            }
        }

    @app.get("/api/recordings/settings")
    async def get_settings() -> dict[str, object]:
        return {"settings": recorder.settings.to_dict()}

    @app.post("/api/recordings/settings")
    async def update_settings(payload: SettingsPayload) -> dict[str, object]:
        raw = payload.model_dump(exclude_none=True)
        try:
            settings: RecorderSettings = await asyncio.to_thread(settings_store.update, raw)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        # Persisted values apply on the next service start.
        return {"settings": settings.to_dict(), "restart_required": True}

    @app.get("/api/recordings/{camera_id}/status")
    async def recording_status(camera_id: int) -> dict[str, object]:
        await _require_camera(camera_id)
        return engine.get_recording_status(camera_id)

    @app.get("/api/recordings/{camera_id}/storage")
    async def storage_usage(camera_id: int) -> dict[str, object]:
        await _require_camera(camera_id)
        return await asyncio.to_thread(engine.get_storage_usage, camera_id)

    @app.get("/api/recordings/{camera_id}/segments")
    async def list_segments(
        camera_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 500,
    ) -> dict[str, object]:
        await _require_camera(camera_id)
        if start is not None and end is not None and end < start:
            raise HTTPException(status_code=400, detail="End must not precede start")
        segments = await asyncio.to_thread(
            lambda: recorder.store.list_segments(camera_id, start=start, end=end, limit=limit)
        )
        return {"segments": [segment.to_dict() for segment in segments]}

    @app.get("/api/recordings/{camera_id}/restarts")
    async def list_restarts(camera_id: int, limit: int = 50) -> dict[str, object]:
        await _require_camera(camera_id)
        restarts = await asyncio.to_thread(
            lambda: recorder.store.list_restarts(camera_id, limit=limit)
        )
        return {"restarts": [restart.to_dict() for restart in restarts]}

    @app.post("/api/recordings/{camera_id}/start")
    async def start_recording(camera_id: int) -> dict[str, object]:
        camera = await _require_camera(camera_id)
        if not camera.source_uri:
            raise HTTPException(status_code=409, detail="Camera has no stream URL configured")
        started = await engine.start_recording(camera_id)
        if not started:
            raise HTTPException(status_code=409, detail="Unable to start recording")
        return engine.get_recording_status(camera_id)

    @app.post("/api/recordings/{camera_id}/stop")
    async def stop_recording(camera_id: int) -> dict[str, object]:
        await _require_camera(camera_id)
        await engine.stop_recording(camera_id)
        return engine.get_recording_status(camera_id)

    return app


__all__ = ["SettingsPayload", "create_app"]

"""
FastAPI app for the extraction service.

Responsibilities:
- Wire the ProcessingService (state, tracker, store, transport) at startup.
- Expose the processing control plane: /processing/state|start|stop|toggle|reset.
- Expose file inventory and status: /files/processed, /files/pending, /files/stats.
- Expose /health for Docker health checks.

Consumption itself is driven by the binding controller; the endpoints never
touch an in-flight document.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from common.config import Settings, get_settings
from .models import (
    ControlResponse,
    CurrentState,
    FileRecord,
    HealthResponse,
    PendingResponse,
    PreviousState,
    ResetResponse,
    StateResponse,
    StatsResponse,
    ToggleResponse,
)
from .service import ProcessingService
from .state import STARTED, STOPPED, now_utc
from .storage import StoreNotFoundError

logger = logging.getLogger("extraction")

router = APIRouter()


def get_service(request: Request) -> ProcessingService:
    return request.app.state.service


async def _control_body(service: ProcessingService, message: str, changed: bool) -> dict:
    snap = service.snapshot()
    return {
        "success": True,
        "message": message,
        "state_changed": changed,
        "enabled": snap.enabled,
        "status": snap.status,
        "consumer_status": await service.consumer_status(),
        "last_changed": snap.last_changed,
        "timestamp": now_utc(),
    }


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------
@router.get("/health", response_model=HealthResponse)
async def health(service: ProcessingService = Depends(get_service)):
    """
    Readiness endpoint. DEGRADED (still HTTP 200) when the store output
    directory is missing.
    """
    return HealthResponse(**await service.health())


# -----------------------------------------------------------------------------
# Processing control
# -----------------------------------------------------------------------------
@router.get("/processing/state", response_model=StateResponse)
async def processing_state(service: ProcessingService = Depends(get_service)):
    snap = service.snapshot()
    return StateResponse(
        enabled=snap.enabled,
        status=snap.status,
        consumer_status=await service.consumer_status(),
        last_changed=snap.last_changed,
        last_change_reason=snap.last_change_reason,
        timestamp=now_utc(),
    )


@router.post("/processing/start", response_model=ControlResponse)
async def start_processing(service: ProcessingService = Depends(get_service)):
    changed = await service.start_processing()
    message = "Processing started" if changed else "Processing was already running"
    return ControlResponse(**await _control_body(service, message, changed))


@router.post("/processing/stop", response_model=ControlResponse)
async def stop_processing(service: ProcessingService = Depends(get_service)):
    changed = await service.stop_processing()
    message = "Processing stopped" if changed else "Processing was already stopped"
    return ControlResponse(**await _control_body(service, message, changed))


@router.post("/processing/toggle", response_model=ToggleResponse)
async def toggle_processing(service: ProcessingService = Depends(get_service)):
    result = await service.toggle()
    snap = service.snapshot()
    action = "started" if result.current else "stopped"
    return ToggleResponse(
        success=True,
        message=f"Processing {action}",
        action=action,
        previous_state=PreviousState(
            enabled=result.previous, status=STARTED if result.previous else STOPPED
        ),
        current_state=CurrentState(
            enabled=result.current,
            status=STARTED if result.current else STOPPED,
            consumer_status=await service.consumer_status(),
        ),
        last_changed=snap.last_changed,
        timestamp=now_utc(),
    )


@router.post("/processing/reset", response_model=ResetResponse)
async def reset_processing(service: ProcessingService = Depends(get_service)):
    """
    Stop processing and forget everything processed so far.
    stateChanged is always true; store flags report partial failures.
    """
    result = await service.reset()
    body = await _control_body(service, "Processing state reset", True)
    return ResetResponse(
        **body,
        store_cleared=result.store_cleared,
        hdfs_cleared=result.store_cleared,
        directory_recreated=result.directory_recreated,
    )


# -----------------------------------------------------------------------------
# Files
# -----------------------------------------------------------------------------
@router.get("/files/processed", response_model=List[FileRecord])
def processed_files(service: ProcessingService = Depends(get_service)):
    return [
        FileRecord(
            filename=r.filename,
            file_size_bytes=r.file_size_bytes,
            chunk_size_config=r.chunk_size_config,
            chunk_count=r.chunk_count,
            status=r.status.value,
            processed_at=r.processed_at,
            content_type=r.content_type,
            reference=r.reference,
            input_stream=r.input_stream,
            output_stream=r.output_stream,
            output_url=r.output_url,
            error_category=r.error_category,
            error_message=r.error_message,
        )
        for r in service.registry.all()
    ]


@router.get("/files/processed/{filename}/text", response_class=PlainTextResponse)
async def processed_text(filename: str, service: ProcessingService = Depends(get_service)):
    try:
        return await service.processed_text(filename)
    except StoreNotFoundError:
        raise HTTPException(status_code=404, detail=f"No processed text for {filename}")


@router.get("/files/pending", response_model=PendingResponse)
async def pending_files(service: ProcessingService = Depends(get_service)):
    return PendingResponse(**await service.pending())


@router.get("/files/stats", response_model=StatsResponse)
def file_stats(service: ProcessingService = Depends(get_service)):
    s = service.registry.stats()
    return StatsResponse(
        total_files=s["totalFiles"],
        total_size=s["totalSize"],
        total_chunks=s["totalChunks"],
        status_counts=s["statusCounts"],
        type_counts=s["typeCounts"],
        input_stream=s["inputStream"],
        output_stream=s["outputStream"],
    )


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    transport=None,
    store=None,
    extractor=None,
    downloader=None,
) -> FastAPI:
    """
    Build the app. Collaborators are injectable so tests can run the whole
    service against in-memory fakes.
    """
    s = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service = ProcessingService(
            s, transport=transport, store=store, extractor=extractor, downloader=downloader
        )
        app.state.service = service
        await service.startup()
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(title="Extraction Service", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().service_port, log_level=get_settings().log_level.lower())

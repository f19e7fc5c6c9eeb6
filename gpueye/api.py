import asyncio
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from . import models
from .monitor import MonitoringEngine

logger = logging.getLogger(__name__)
router = APIRouter()


class MonitorSettingsUpdate(BaseModel):
    """Runtime overrides for the polling cadence and SSH connection timeout."""

    interval_sec: float | None = Field(default=None, gt=0)
    connect_timeout_sec: float | None = Field(default=None, gt=0)


def get_engine(request: Request) -> MonitoringEngine:
    return request.app.state.engine


@router.get("/api/status", response_model=models.MonitorSnapshot)
async def get_status(engine: MonitoringEngine = Depends(get_engine)) -> models.MonitorSnapshot:
    """Get the last-known status of all hosts."""
    return engine.snapshot()


@router.get("/api/status_sse")
async def get_status_sse(engine: MonitoringEngine = Depends(get_engine)) -> EventSourceResponse:
    """SSE endpoint streaming a snapshot on every engine notification."""
    return EventSourceResponse(status_event_publisher(engine), ping=15)


async def status_event_publisher(engine: MonitoringEngine) -> AsyncGenerator[dict, None]:
    # Subscribed only while the stream is being consumed
    client_queue = engine.subscribe()
    try:
        # Send the current state first so a new client does not wait for a cycle
        yield {"event": "snapshot", "data": engine.snapshot().model_dump_json()}
        while True:
            event: models.MonitorEvent = await client_queue.get()
            yield {"event": event.kind, "data": event.snapshot.model_dump_json()}
    except asyncio.CancelledError:
        logger.info("Client %s cancelled.", id(client_queue))
        raise
    finally:
        engine.unsubscribe(client_queue)


@router.post("/api/refresh", response_model=models.MonitorSnapshot)
async def refresh_all(engine: MonitoringEngine = Depends(get_engine)) -> models.MonitorSnapshot:
    await engine.refresh_all()
    return engine.snapshot()


@router.post("/api/hosts/{host_id}/refresh", response_model=models.HostStatus)
async def refresh_host(host_id: str, engine: MonitoringEngine = Depends(get_engine)) -> models.HostStatus:
    records = engine.store.records_for(host_id)
    if not records:
        raise HTTPException(status_code=404, detail=f"Host {host_id} is not monitored")
    await engine.refresh_one(records[0].host)
    statuses = [status for status in engine.snapshot().hosts if status.host.id == host_id]
    if not statuses:
        raise HTTPException(status_code=404, detail=f"Host {host_id} is not monitored")
    return statuses[0]


@router.put("/api/hosts", response_model=models.MonitorSnapshot)
async def set_hosts(
    hosts: list[models.HostDescriptor], engine: MonitoringEngine = Depends(get_engine)
) -> models.MonitorSnapshot:
    """Replace the monitored host set."""
    engine.set_hosts(hosts)
    return engine.snapshot()


@router.post("/api/monitor/start", response_model=models.MonitorSnapshot)
async def start_monitoring(engine: MonitoringEngine = Depends(get_engine)) -> models.MonitorSnapshot:
    engine.start()
    return engine.snapshot()


@router.post("/api/monitor/stop", response_model=models.MonitorSnapshot)
async def stop_monitoring(engine: MonitoringEngine = Depends(get_engine)) -> models.MonitorSnapshot:
    engine.stop()
    return engine.snapshot()


@router.put("/api/monitor/settings", response_model=models.MonitorSnapshot)
async def update_settings(
    update: MonitorSettingsUpdate, engine: MonitoringEngine = Depends(get_engine)
) -> models.MonitorSnapshot:
    if update.interval_sec is not None:
        engine.set_interval(update.interval_sec)
    if update.connect_timeout_sec is not None:
        engine.set_connect_timeout(update.connect_timeout_sec)
    return engine.snapshot()

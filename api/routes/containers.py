"""Raw container inspection, control and logs."""
import asyncio

from fastapi import APIRouter, Depends, Query

from api.middleware.auth import get_services, require_api_key
from api.schemas import envelope
from api.sse import sse_event, sse_response
from core.exceptions import ContainerNotFoundError
from core.logs import DEFAULT_STREAM_TAIL, DEFAULT_TAIL, MAX_TAIL
from core.services import Services

router = APIRouter(prefix="/api/containers", tags=["containers"])


@router.get("")
def list_containers(
    all: bool = Query(True),
    services: Services = Depends(get_services),
):
    return envelope(services.engine.list_containers(all=all))


@router.get("/{container_id}")
def get_container(container_id: str, services: Services = Depends(get_services)):
    info = services.engine.get_container(container_id)
    if info is None:
        raise ContainerNotFoundError(container_id)
    return envelope(info)


@router.post("/{container_id}/start", dependencies=[Depends(require_api_key)])
def start_container(container_id: str, services: Services = Depends(get_services)):
    services.engine.start_container(container_id)
    return envelope({"container_id": container_id}, message="Container started")


@router.post("/{container_id}/stop", dependencies=[Depends(require_api_key)])
def stop_container(
    container_id: str,
    timeout: int = Query(10, ge=0, le=300),
    services: Services = Depends(get_services),
):
    services.engine.stop_container(container_id, timeout=timeout)
    return envelope({"container_id": container_id}, message="Container stopped")


@router.post("/{container_id}/restart", dependencies=[Depends(require_api_key)])
def restart_container(
    container_id: str,
    timeout: int = Query(10, ge=0, le=300),
    services: Services = Depends(get_services),
):
    services.engine.restart_container(container_id, timeout=timeout)
    return envelope({"container_id": container_id}, message="Container restarted")


@router.get("/{container_id}/logs")
def container_logs(
    container_id: str,
    tail: int = Query(DEFAULT_TAIL, ge=1, le=MAX_TAIL),
    since: int = Query(0, ge=0),
    until: int = Query(0, ge=0),
    timestamps: bool = Query(True),
    stdout: bool = Query(True),
    stderr: bool = Query(True),
    services: Services = Depends(get_services),
):
    entries = services.logs.fetch(
        container_id,
        tail=tail,
        since=since,
        until=until,
        timestamps=timestamps,
        stdout=stdout,
        stderr=stderr,
    )
    return envelope(
        {
            "container_id": container_id,
            "logs": [e.model_dump(mode="json") for e in entries],
            "count": len(entries),
        }
    )


@router.get("/{container_id}/logs/stream")
async def stream_container_logs(
    container_id: str,
    tail: int = Query(DEFAULT_STREAM_TAIL, ge=1, le=MAX_TAIL),
    since: int = Query(0, ge=0),
    timestamps: bool = Query(True),
    stdout: bool = Query(True),
    stderr: bool = Query(True),
    services: Services = Depends(get_services),
):
    if await asyncio.to_thread(services.engine.get_container, container_id) is None:
        raise ContainerNotFoundError(container_id)

    async def stream():
        events = services.logs.stream(
            container_id,
            tail=tail,
            since=since,
            timestamps=timestamps,
            stdout=stdout,
            stderr=stderr,
        )
        try:
            async for event, data in events:
                yield sse_event(event, data)
        finally:
            await events.aclose()

    return sse_response(stream())

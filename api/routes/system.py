"""Health and port overview."""
import asyncio

from fastapi import APIRouter, Depends, Query

from api.middleware.auth import get_services
from api.schemas import envelope
from core.services import Services

router = APIRouter(tags=["system"])


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    docker_ok = await asyncio.to_thread(services.engine.ping)
    return {
        "status": "ok",
        "docker": docker_ok,
        "database": services.db.health_check(),
        "apps": len(services.registry),
    }


@router.get("/api/ports")
def ports(
    available: int = Query(10, ge=0, le=100),
    services: Services = Depends(get_services),
):
    allocator = services.allocator
    return envelope(
        {
            "range": allocator.port_range.model_dump(),
            "allocated": [a.model_dump(mode="json") for a in allocator.list_allocations()],
            "available": allocator.list_available(available),
        }
    )

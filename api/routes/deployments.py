"""Deployment lookup and live progress stream."""
from fastapi import APIRouter, Depends

from api.middleware.auth import get_services
from api.schemas import envelope
from api.sse import sse_event, sse_response, with_heartbeat
from core.schemas import utc_now_iso
from core.services import Services

router = APIRouter(prefix="/api/deployments", tags=["deployments"])


@router.get("/{deployment_id}")
def get_deployment(deployment_id: str, services: Services = Depends(get_services)):
    return envelope(services.deployments.get_deployment(deployment_id).model_dump(mode="json"))


@router.get("/{deployment_id}/events")
async def deployment_events(deployment_id: str, services: Services = Depends(get_services)):
    """Replay the log trail so far, then follow the deployment until it ends."""
    deployment = services.deployments.get_deployment(deployment_id)
    heartbeat = services.settings.heartbeat_interval

    async def stream():
        live = not deployment.is_terminal and services.deployments.is_deploying(deployment.app_id)
        subscription = services.events.subscribe(deployment_id) if live else None
        # snapshot right after subscribing: later lines arrive through the queue
        backlog = list(deployment.logs)
        try:
            yield sse_event("connected", {"deployment_id": deployment_id, "status": deployment.status.value})
            for entry in backlog:
                yield sse_event("log", entry.model_dump(mode="json"))
            if subscription is None:
                yield sse_event(
                    deployment.status.value,
                    {
                        "deployment_id": deployment_id,
                        "status": deployment.status.value,
                        "error": deployment.error,
                        "finished_at": deployment.finished_at,
                    },
                )
                return
            async for item in with_heartbeat(subscription, heartbeat):
                if item is None:
                    yield sse_event("heartbeat", {"timestamp": utc_now_iso()})
                    continue
                yield sse_event(item.event, item.data)
        finally:
            if subscription is not None:
                subscription.close()

    return sse_response(stream())

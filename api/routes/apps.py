"""Application CRUD, deployment and lifecycle routes."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from api.limits import DEPLOY_LIMIT, limiter
from api.middleware.auth import get_services, require_api_key
from api.schemas import DeployRequest, envelope
from core.schemas import CreateAppRequest, UpdateAppRequest
from core.services import Services

router = APIRouter(prefix="/api/apps", tags=["apps"])


@router.get("")
def list_apps(services: Services = Depends(get_services)):
    return envelope([app.public_view() for app in services.apps.list()])


@router.get("/templates")
def list_templates(services: Services = Depends(get_services)):
    return envelope([t.model_dump(mode="json") for t in services.apps.templates()])


@router.post("/git/validate")
def validate_git(
    git: Dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
):
    result = services.apps.validate_git(git)
    return envelope({"valid": result.valid, "errors": result.errors})


@router.post("", status_code=201, dependencies=[Depends(require_api_key)])
def create_app(request: CreateAppRequest, services: Services = Depends(get_services)):
    app = services.apps.create(request)
    return envelope(app.public_view(), message=f"Application {app.name} created")


@router.get("/{app_id}")
def get_app(app_id: str, services: Services = Depends(get_services)):
    return envelope(services.apps.get(app_id).public_view())


@router.put("/{app_id}", dependencies=[Depends(require_api_key)])
def update_app(
    app_id: str, request: UpdateAppRequest, services: Services = Depends(get_services)
):
    return envelope(services.apps.update(app_id, request).public_view())


@router.delete("/{app_id}", dependencies=[Depends(require_api_key)])
async def delete_app(app_id: str, services: Services = Depends(get_services)):
    await services.apps.delete(app_id)
    return envelope(None, message="Application deleted")


@router.post("/{app_id}/deploy", status_code=202, dependencies=[Depends(require_api_key)])
@limiter.limit(DEPLOY_LIMIT)
async def deploy_app(
    request: Request,
    app_id: str,
    body: Optional[DeployRequest] = None,
    services: Services = Depends(get_services),
):
    force = body.force if body else False
    deployment = await services.deployments.deploy(app_id, force=force)
    return envelope(deployment.model_dump(mode="json"), message="Deployment started")


@router.get("/{app_id}/deployments")
def list_deployments(app_id: str, services: Services = Depends(get_services)):
    services.apps.get(app_id)
    deployments = services.deployments.list_deployments(app_id)
    return envelope([d.model_dump(mode="json") for d in deployments])


@router.post("/{app_id}/start", dependencies=[Depends(require_api_key)])
async def start_app(app_id: str, services: Services = Depends(get_services)):
    app = await services.deployments.start(app_id)
    return envelope(app.public_view(), message="Application started")


@router.post("/{app_id}/stop", dependencies=[Depends(require_api_key)])
async def stop_app(app_id: str, services: Services = Depends(get_services)):
    app = await services.deployments.stop(app_id)
    return envelope(app.public_view(), message="Application stopped")


@router.post("/{app_id}/restart", dependencies=[Depends(require_api_key)])
async def restart_app(app_id: str, services: Services = Depends(get_services)):
    app = await services.deployments.restart(app_id)
    return envelope(app.public_view(), message="Application restarted")


@router.get("/{app_id}/logs")
async def app_logs(
    app_id: str,
    tail: int = Query(100, ge=1, le=10000),
    services: Services = Depends(get_services),
):
    logs = await services.deployments.app_logs(app_id, tail=tail)
    return envelope({"app_id": app_id, "logs": logs})

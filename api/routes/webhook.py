"""Webhook route for GitHub-style push events with HMAC verification."""
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from loguru import logger
from pydantic import ValidationError as PayloadError

from api.auth import verify_signature
from api.limits import WEBHOOK_LIMIT, limiter
from api.middleware.auth import get_services
from api.schemas import PushEvent
from core.exceptions import ShipyardError
from core.metrics import WEBHOOK_COUNTER
from core.services import Services

router = APIRouter()


@router.post("/webhook")
@limiter.limit(WEBHOOK_LIMIT)
async def webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    """Verify the signature and deploy every application tracking the pushed branch."""
    body = await request.body()
    if not verify_signature(body, x_hub_signature_256, services.settings.webhook_secret):
        raise HTTPException(status_code=403, detail="Invalid signature")

    if x_github_event == "ping":
        return {"status": "pong"}

    try:
        event = PushEvent.model_validate_json(body)
    except PayloadError:
        raise HTTPException(status_code=400, detail="Invalid push payload")

    branch = event.branch
    if branch is None:
        return {"status": "ignored", "reason": f"{event.ref} is not a branch"}

    WEBHOOK_COUNTER.inc()
    repo = event.repository
    matched = {}
    for url in (repo.clone_url, repo.ssh_url, repo.html_url):
        if url:
            for app in services.apps.find_by_repository(url, branch):
                matched[app.id] = app

    triggered, skipped = [], []
    for app in matched.values():
        try:
            deployment = await services.deployments.deploy(app.id)
        except ShipyardError as e:
            logger.warning(f"Webhook deploy of {app.name} skipped: {e.message}")
            skipped.append({"app_id": app.id, "reason": e.message, "code": e.code})
            continue
        triggered.append({"app_id": app.id, "deployment_id": deployment.id})

    logger.info(
        f"Push to {repo.name}@{branch} ({(event.after or '')[:7]}): "
        f"{len(triggered)} deployment(s) started"
    )
    return {"status": "accepted", "deployments": triggered, "skipped": skipped}

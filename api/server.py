# api/server.py
import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import make_asgi_app
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limits import limiter
from api.routes.apps import router as apps_router
from api.routes.containers import router as containers_router
from api.routes.deployments import router as deployments_router
from api.routes.system import router as system_router
from api.routes.webhook import router as webhook_router
from api.schemas import error_body
from core.config import Settings
from core.exceptions import ShipyardError
from core.security import check_secrets_on_startup
from core.services import Services, build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    if app.state.services is None:
        app.state.services = build_services(settings)
    services: Services = app.state.services

    check_secrets_on_startup(settings.api_key, settings.webhook_secret)
    services.deployments.recover_interrupted()

    try:
        await asyncio.to_thread(services.engine.ensure_network)
    except Exception as e:
        logger.warning(f"Could not ensure Docker network {settings.docker_network}: {e}")

    monitor_task = None
    if settings.enable_monitor:
        monitor_task = asyncio.create_task(services.monitor.start())
        logger.info("Status monitor scheduled")

    logger.info(f"Shipyard API ready with {len(services.registry)} application(s)")
    yield

    if monitor_task:
        services.monitor.stop()
        monitor_task.cancel()
        try:
            await monitor_task
        except asyncio.CancelledError:
            pass
    services.close()


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())

    app = FastAPI(title="Shipyard API", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    # --- Rate Limiting (SlowAPI) ---
    limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    @app.exception_handler(RateLimitExceeded)
    def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content=error_body("Rate limit exceeded", "RATE_LIMITED"),
        )

    @app.exception_handler(ShipyardError)
    def shipyard_error_handler(request: Request, exc: ShipyardError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, exc.code, exc.details or None),
        )

    @app.exception_handler(StarletteHTTPException)
    def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail), f"HTTP_{exc.status_code}"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:])}: {err.get('msg')}"
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content=error_body("Invalid request", "VALIDATION_ERROR", {"errors": errors}),
        )

    # Mount Prometheus Metrics Endpoint
    app.mount("/metrics", make_asgi_app())

    app.include_router(system_router)
    app.include_router(apps_router)
    app.include_router(deployments_router)
    app.include_router(containers_router)
    app.include_router(webhook_router)
    return app

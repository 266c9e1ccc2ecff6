import argparse
import asyncio
import sys

from loguru import logger

from core.config import Settings
from core.exceptions import ShipyardError
from core.log_setup import setup_logging
from core.schemas import DeploymentStatus


def serve(settings: Settings) -> None:
    import uvicorn

    from api.server import create_app

    logger.info(f"Starting Shipyard API on {settings.api_host}:{settings.api_port}")
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )


async def deploy(settings: Settings, app_name: str, force: bool) -> int:
    from core.services import build_services

    services = build_services(settings)
    try:
        app = services.apps.get_by_name(app_name)
        logger.info(f"Starting deployment for {app.name} ({app.id})")
        deployment = await services.deployments.deploy(app.id, force=force)
        deployment = await services.deployments.wait(deployment.id)
    finally:
        services.close()

    if deployment.status != DeploymentStatus.SUCCESS:
        logger.critical(f"Deployment failed: {deployment.error}")
        return 1

    app = services.registry.get(app.id)
    logger.success(f"Deployed {app.name} successfully!")
    if app.external_port:
        logger.success(f"Access it at: http://localhost:{app.external_port}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="shipyard", description="Self-hosted app deployer")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("serve", help="run the HTTP API")
    deploy_cmd = sub.add_parser("deploy", help="deploy a registered application by name")
    deploy_cmd.add_argument("app_name")
    deploy_cmd.add_argument("--force", action="store_true", help="wipe the work dir before cloning")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_file)

    if args.command == "serve":
        serve(settings)
        return 0

    try:
        return asyncio.run(deploy(settings, args.app_name, args.force))
    except ShipyardError as e:
        logger.error(e.message)
        return 1
    except Exception as e:
        logger.exception(f"Fatal error during execution: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Deployment orchestration and application lifecycle verbs."""
import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from core.compose import COMPOSE_FILE, ComposeRunner
from core.events import DeploymentEventBus
from core.exceptions import (
    AppNotFoundError,
    BuildError,
    ComposeError,
    DeploymentInProgressError,
    DeploymentNotFoundError,
    DockerUnavailableError,
    InvalidGitConfigError,
    ShipyardError,
)
from core.git_manager import GitManager
from core.git_source import GitSourceResolver
from core.history import DeploymentHistory
from core.metrics import DEPLOYMENT_COUNTER, DEPLOYMENT_DURATION
from core.registry import ApplicationRegistry
from core.schemas import (
    ApplicationRecord,
    AppStatus,
    Deployment,
    DeploymentStatus,
    GitAuthMethod,
    LogLevel,
    LogStep,
)
from core.security import mask_credentials
from core.templates import render

_LOG_METHODS = {
    LogLevel.INFO: "info",
    LogLevel.WARN: "warning",
    LogLevel.ERROR: "error",
    LogLevel.SUCCESS: "success",
}

INTERRUPTED_MESSAGE = "Deployment interrupted by a restart"
_RULE = "-" * 40


def new_deployment_id() -> str:
    return f"deploy-{uuid.uuid4().hex}"


def classify_build_error(output: str, returncode: int) -> str:
    if "no space left on device" in output:
        return "Not enough disk space on the server"
    if "permission denied" in output:
        return "Permission denied during build"
    if "COPY failed" in output or "not found" in output:
        return "A file referenced by the Dockerfile is missing (check the COPY instructions)"
    return f"Build failed (code {returncode})"


@dataclass
class _Run:
    app: ApplicationRecord
    deployment: Deployment
    step: LogStep = LogStep.INIT
    commit: Optional[str] = None


class DeploymentEngine:
    """Runs deployments in the background and drives compose for lifecycle verbs.

    At most one deployment per application runs at a time; a second request
    while one is in flight is rejected with ``DeploymentInProgressError``.
    """

    def __init__(
        self,
        registry: ApplicationRegistry,
        git_manager: GitManager,
        compose: ComposeRunner,
        history: Optional[DeploymentHistory] = None,
        events: Optional[DeploymentEventBus] = None,
        resolver: Optional[GitSourceResolver] = None,
        network: str = "shipyard-network",
        memory_limit: int = 200,
    ):
        self.registry = registry
        self.git = git_manager
        self.compose = compose
        self.history = history
        self.events = events or DeploymentEventBus()
        self.resolver = resolver or GitSourceResolver()
        self.network = network
        self.memory_limit = memory_limit

        self._deployments: Dict[str, Deployment] = {}
        self._leases: Dict[str, str] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def _require_app(self, app_id: str) -> ApplicationRecord:
        app = self.registry.get(app_id)
        if app is None:
            raise AppNotFoundError(app_id)
        return app

    def _save_app(self, app: ApplicationRecord) -> None:
        app.touch()
        self.registry.put(app)

    # -------------------------
    # working directory
    # -------------------------
    def write_app_files(self, app: ApplicationRecord) -> None:
        """Write Dockerfile, docker-compose.yml and .env into the app's directory."""
        path = Path(app.path)
        path.mkdir(parents=True, exist_ok=True)
        if app.dockerfile:
            (path / "Dockerfile").write_text(app.dockerfile, encoding="utf-8")
        if app.docker_compose:
            compose = render(
                app.docker_compose,
                {
                    "EXTERNAL_PORT": str(app.external_port),
                    "INTERNAL_PORT": str(app.internal_port),
                    "APP_NAME": app.container_name or app.name,
                    "DOCKER_NETWORK": self.network,
                },
            )
            (path / COMPOSE_FILE).write_text(compose, encoding="utf-8")
        env = "\n".join(f"{v.key}={v.value}" for v in app.env_variables)
        (path / ".env").write_text(env, encoding="utf-8")

    # -------------------------
    # deploy
    # -------------------------
    async def deploy(self, app_id: str, force: bool = False) -> Deployment:
        """Start a deployment and return it immediately in ``pending``."""
        app = self._require_app(app_id)
        if app.git and app.git.is_private:
            result = self.resolver.validate(app.git)
            if not result.valid:
                raise InvalidGitConfigError(result.errors)

        running = self._leases.get(app_id)
        if running is not None:
            raise DeploymentInProgressError(app_id, running)

        deployment = Deployment(id=new_deployment_id(), app_id=app_id)
        self._leases[app_id] = deployment.id
        self._remember(deployment)

        app.status = AppStatus.BUILDING
        self._save_app(app)
        if self.history:
            self.history.save(deployment)

        task = asyncio.get_running_loop().create_task(
            self._run(_Run(app, deployment), force), name=deployment.id
        )
        self._tasks[deployment.id] = task
        task.add_done_callback(partial(self._on_done, app_id, deployment.id))
        logger.info(f"Deployment {deployment.id} queued for {app.name}")
        return deployment

    async def wait(self, deployment_id: str) -> Deployment:
        """Wait for a running deployment to reach a terminal status."""
        task = self._tasks.get(deployment_id)
        if task is not None:
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
        return self.get_deployment(deployment_id)

    def is_deploying(self, app_id: str) -> bool:
        return app_id in self._leases

    def _on_done(self, app_id: str, deployment_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(deployment_id, None)
        if self._leases.get(app_id) == deployment_id:
            del self._leases[app_id]
        if task.cancelled():
            logger.warning(f"Deployment {deployment_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Deployment {deployment_id} crashed")

    def cancel(self, app_id: str) -> bool:
        deployment_id = self._leases.get(app_id)
        task = self._tasks.get(deployment_id) if deployment_id else None
        if task is None or task.done():
            return False
        task.cancel()
        return True

    # -------------------------
    # pipeline
    # -------------------------
    async def _run(self, run: _Run, force: bool) -> None:
        started = time.monotonic()
        try:
            await self._pipeline(run, force)
        except asyncio.CancelledError:
            if not run.deployment.is_terminal:
                self._log(run, LogLevel.ERROR, "✗ Deployment cancelled")
                self._fail(run, "Deployment cancelled")
            raise
        except ShipyardError as e:
            self._log(run, LogLevel.ERROR, f"✗ {e.message}")
            self._fail(run, e.message)
        except Exception as e:
            logger.exception(f"Unexpected error while deploying {run.app.name}")
            self._log(run, LogLevel.ERROR, f"✗ Error: {e}", LogStep.ERROR)
            self._fail(run, str(e) or e.__class__.__name__)
        finally:
            DEPLOYMENT_DURATION.observe(time.monotonic() - started)

    async def _pipeline(self, run: _Run, force: bool) -> None:
        app = run.app

        self._log(run, LogLevel.INFO, _RULE)
        self._log(run, LogLevel.INFO, f"Deploying {app.name}")
        self._log(run, LogLevel.INFO, f"Type: {app.type.value} | Port: {app.external_port}")
        self._log(run, LogLevel.INFO, "Checking Docker...")
        if not await self.compose.docker_available():
            raise DockerUnavailableError(
                "Docker is not reachable. Check that the Docker socket is mounted."
            )
        try:
            compose_cmd = await self.compose.detect()
        except DockerUnavailableError as e:
            raise DockerUnavailableError(f"Docker is not reachable: {e.message}") from e
        self._log(run, LogLevel.INFO, f"✓ Compose: {' '.join(compose_cmd)}")

        if app.git and app.git.url:
            await self._clone(run, force)

        run.step = LogStep.CONFIG
        self._log(run, LogLevel.INFO, _RULE)
        self._log(run, LogLevel.INFO, "Writing build files...")
        await asyncio.to_thread(self.write_app_files, app)
        for name in (COMPOSE_FILE, "Dockerfile"):
            if not (Path(app.path) / name).exists():
                raise BuildError(f"Missing file: {name}")
            self._log(run, LogLevel.INFO, f"✓ {name}")

        self._transition(run, DeploymentStatus.BUILDING)
        run.step = LogStep.BUILD
        self._log(run, LogLevel.INFO, _RULE)
        self._log(run, LogLevel.INFO, "Building image...")
        output = deque(maxlen=2000)

        def on_line(line: str) -> None:
            output.append(line)
            self._log(run, LogLevel.INFO, line)

        code = await self.compose.build(app.path, on_line)
        if code != 0:
            raise BuildError(classify_build_error("\n".join(output), code), code)
        self._log(run, LogLevel.SUCCESS, "✓ Image built")

        self._transition(run, DeploymentStatus.STARTING)
        run.step = LogStep.START
        self._log(run, LogLevel.INFO, _RULE)
        self._log(run, LogLevel.INFO, "Stopping previous containers...")
        down = await self.compose.down(app.path)
        if not down.ok:
            self._log(run, LogLevel.WARN, f"compose down failed: {down.output}")

        self._log(run, LogLevel.INFO, "Starting containers...")
        up = await self.compose.up(app.path)
        if not up.ok:
            raise ComposeError(
                f"Failed to start containers: {up.output or f'exit code {up.returncode}'}",
                up.returncode,
                up.output,
            )
        app.container_id = await self.compose.container_id(app.path)
        self._log(run, LogLevel.SUCCESS, "✓ Container started")
        self._log(run, LogLevel.INFO, f"Container ID: {app.container_id or 'N/A'}")
        self._log(run, LogLevel.INFO, f"Listening on port {app.external_port}")

        run.step = LogStep.DONE
        self._log(run, LogLevel.SUCCESS, "✓ Deployment succeeded")
        self._succeed(run)

    async def _clone(self, run: _Run, force: bool) -> None:
        app, git_config = run.app, run.app.git
        self._transition(run, DeploymentStatus.CLONING)
        run.step = LogStep.CLONE
        self._log(run, LogLevel.INFO, _RULE)
        self._log(run, LogLevel.INFO, f"Repository: {git_config.url}")
        self._log(run, LogLevel.INFO, f"Branch: {git_config.branch}")
        self._log(run, LogLevel.INFO, f"Private: {'yes' if git_config.is_private else 'no'}")
        self._log(run, LogLevel.INFO, f"Provider: {git_config.provider.value}")

        if force:
            self._log(run, LogLevel.INFO, "Purging working directory (force)...")
            await asyncio.to_thread(self.git.purge_workdir, app.path)
        if git_config.auth_method == GitAuthMethod.SSH and git_config.ssh_private_key:
            self._log(run, LogLevel.INFO, "Using SSH key authentication")

        self._log(run, LogLevel.INFO, "Cloning...")
        run.commit = await self.git.clone_async(git_config, app.path)
        suffix = f" at {run.commit[:7]}" if run.commit else ""
        self._log(run, LogLevel.SUCCESS, f"✓ Repository cloned{suffix}")

    # -------------------------
    # bookkeeping
    # -------------------------
    def _log(self, run: _Run, level: LogLevel, message: str, step: Optional[LogStep] = None) -> None:
        message = mask_credentials(message)
        entry = run.deployment.add_log(level, message, step or run.step)
        getattr(logger, _LOG_METHODS[level])(f"[deploy:{run.app.name}] {message}")
        self.events.publish(run.deployment.id, "log", entry.model_dump(mode="json"))

    def _transition(self, run: _Run, status: DeploymentStatus) -> None:
        run.deployment.transition(status)
        self.events.publish(run.deployment.id, "status", {"status": status.value})
        if self.history:
            self.history.save(run.deployment)

    def _succeed(self, run: _Run) -> None:
        run.deployment.succeed()
        run.app.status = AppStatus.RUNNING
        run.app.last_error = None
        self._save_app(run.app)
        self._finish(run)

    def _fail(self, run: _Run, message: str) -> None:
        if run.deployment.is_terminal:
            return
        run.deployment.fail(message)
        run.app.status = AppStatus.FAILED
        run.app.last_error = message
        # a deleted app must not be resurrected by its failing deployment
        if self.registry.get(run.app.id) is not None:
            self._save_app(run.app)
        self._finish(run)

    def _finish(self, run: _Run) -> None:
        deployment = run.deployment
        DEPLOYMENT_COUNTER.labels(status=deployment.status.value).inc()
        if self.history:
            self.history.save(deployment, commit_hash=run.commit)
        self.events.close(
            deployment.id,
            deployment.status.value,
            {
                "deployment_id": deployment.id,
                "status": deployment.status.value,
                "error": deployment.error,
                "finished_at": deployment.finished_at,
            },
        )
        self._trim()
        if deployment.status == DeploymentStatus.SUCCESS:
            logger.success(f"Deployment {deployment.id} of {run.app.name} succeeded")
        else:
            logger.error(f"Deployment {deployment.id} of {run.app.name} failed: {deployment.error}")

    def _remember(self, deployment: Deployment) -> None:
        self._deployments[deployment.id] = deployment
        self._trim()

    def _trim(self) -> None:
        excess = len(self._deployments) - self.memory_limit
        if excess <= 0:
            return
        for deployment_id in [d.id for d in self._deployments.values() if d.is_terminal][:excess]:
            del self._deployments[deployment_id]

    def recover_interrupted(self) -> List[str]:
        """Mark apps and deployments left mid-deployment by a previous process as failed.

        Returns the recovered app ids.
        """
        if self.history:
            stale = self.history.fail_unfinished(INTERRUPTED_MESSAGE, exclude=self._tasks.keys())
            for deployment_id in stale:
                self._deployments.pop(deployment_id, None)
            if stale:
                logger.warning(f"Marked {len(stale)} unfinished deployment record(s) as failed")
        recovered = []
        for app in self.registry.list():
            if app.status in (AppStatus.BUILDING, AppStatus.DEPLOYING) and not self.is_deploying(app.id):
                app.status = AppStatus.FAILED
                app.last_error = INTERRUPTED_MESSAGE
                self._save_app(app)
                recovered.append(app.id)
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted deployment(s) as failed")
        return recovered

    # -------------------------
    # read side
    # -------------------------
    def get_deployment(self, deployment_id: str) -> Deployment:
        deployment = self._deployments.get(deployment_id)
        if deployment is None and self.history:
            deployment = self.history.get(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)
        return deployment

    def list_deployments(self, app_id: str) -> List[Deployment]:
        """Newest first."""
        found = {}
        if self.history:
            found.update({d.id: d for d in self.history.list_for_app(app_id)})
        found.update({d.id: d for d in self._deployments.values() if d.app_id == app_id})
        return sorted(found.values(), key=lambda d: d.started_at, reverse=True)

    # -------------------------
    # lifecycle verbs
    # -------------------------
    async def _compose_verb(self, app_id: str, verb: str, status: AppStatus) -> ApplicationRecord:
        app = self._require_app(app_id)
        result = await self.compose.run(app.path, verb)
        if not result.ok:
            message = f"docker compose {verb} failed: {result.output or f'exit code {result.returncode}'}"
            app.status = AppStatus.ERROR
            app.last_error = message
            self._save_app(app)
            raise ComposeError(message, result.returncode, result.output)
        app.status = status
        self._save_app(app)
        logger.info(f"{verb.capitalize()} {app.name}: now {status.value}")
        return app

    async def stop(self, app_id: str) -> ApplicationRecord:
        return await self._compose_verb(app_id, "stop", AppStatus.STOPPED)

    async def start(self, app_id: str) -> ApplicationRecord:
        return await self._compose_verb(app_id, "start", AppStatus.RUNNING)

    async def restart(self, app_id: str) -> ApplicationRecord:
        return await self._compose_verb(app_id, "restart", AppStatus.RUNNING)

    async def app_logs(self, app_id: str, tail: int = 100) -> str:
        app = self._require_app(app_id)
        result = await self.compose.run(app.path, "logs", "--no-color", f"--tail={tail}")
        if not result.ok:
            raise ComposeError(f"docker compose logs failed: {result.output}", result.returncode)
        return result.stdout

    async def teardown(self, app: ApplicationRecord) -> None:
        """Stop and remove the app's containers, images and volumes. Best effort."""
        if self.cancel(app.id):
            logger.info(f"Cancelled in-flight deployment of {app.name}")
        if app.status == AppStatus.RUNNING:
            try:
                await self.stop(app.id)
            except Exception as e:
                logger.warning(f"Failed to stop {app.name} before removal: {e}")
        try:
            result = await self.compose.down(app.path, "--rmi", "local", "-v")
            if not result.ok:
                logger.warning(f"compose down failed for {app.name}: {result.output}")
        except Exception as e:
            logger.warning(f"compose down failed for {app.name}: {e}")


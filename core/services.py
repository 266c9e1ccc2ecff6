"""Wiring: build every component from a ``Settings`` instance."""
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from core.apps import ApplicationService
from core.compose import ComposeRunner
from core.config import Settings
from core.deployment import DeploymentEngine
from core.engine import ContainerEngine
from core.events import DeploymentEventBus
from core.git_manager import GitManager
from core.git_source import GitSourceResolver
from core.history import DeploymentHistory
from core.logs import ContainerLogService
from core.models import DatabaseManager
from core.monitor import StatusMonitor
from core.network import PortAllocator
from core.registry import ApplicationRegistry, JsonDocumentStore


@dataclass
class Services:
    settings: Settings
    registry: ApplicationRegistry
    allocator: PortAllocator
    engine: ContainerEngine
    logs: ContainerLogService
    compose: ComposeRunner
    git: GitManager
    events: DeploymentEventBus
    db: DatabaseManager
    history: DeploymentHistory
    deployments: DeploymentEngine
    apps: ApplicationService
    monitor: StatusMonitor

    def close(self) -> None:
        self.monitor.stop()
        self.db.dispose()


def build_services(settings: Settings, engine: Optional[ContainerEngine] = None) -> Services:
    settings.config_dir.mkdir(parents=True, exist_ok=True)
    settings.apps_root.mkdir(parents=True, exist_ok=True)

    resolver = GitSourceResolver()
    registry = ApplicationRegistry(JsonDocumentStore(settings.apps_file, "apps"))
    allocator = PortAllocator(
        JsonDocumentStore(settings.ports_file, "allocations"),
        start_port=settings.port_range_start,
        end_port=settings.port_range_end,
    )
    engine = engine or ContainerEngine(
        network=settings.docker_network, timeout=settings.docker_timeout
    )
    compose = ComposeRunner()
    git_manager = GitManager(resolver, clone_timeout=settings.clone_timeout)
    events = DeploymentEventBus()

    db = DatabaseManager(settings.resolved_database_url)
    db.create_tables()
    history = DeploymentHistory(db)

    deployments = DeploymentEngine(
        registry,
        git_manager,
        compose,
        history=history,
        events=events,
        resolver=resolver,
        network=settings.docker_network,
        memory_limit=settings.deployment_memory_limit,
    )
    apps = ApplicationService(
        registry,
        allocator,
        deployments,
        settings.apps_root,
        container_prefix=settings.container_prefix,
        resolver=resolver,
    )
    monitor = StatusMonitor(registry, engine, allocator, interval=settings.monitor_interval)

    logger.debug(
        f"Services ready: {len(registry)} app(s), ports "
        f"{settings.port_range_start}-{settings.port_range_end}"
    )
    return Services(
        settings=settings,
        registry=registry,
        allocator=allocator,
        engine=engine,
        logs=ContainerLogService(engine, heartbeat_interval=settings.heartbeat_interval),
        compose=compose,
        git=git_manager,
        events=events,
        db=db,
        history=history,
        deployments=deployments,
        apps=apps,
        monitor=monitor,
    )

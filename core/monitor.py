import asyncio
from typing import Dict, List

from loguru import logger

from core.engine import ContainerEngine
from core.metrics import ACTIVE_CONTAINERS_GAUGE, MONITOR_SYNC_COUNTER
from core.network import PortAllocator
from core.registry import ApplicationRegistry
from core.schemas import AppStatus

# statuses owned by the deployment pipeline
_UNTOUCHED = frozenset({AppStatus.BUILDING, AppStatus.DEPLOYING, AppStatus.FAILED, AppStatus.ERROR})


class StatusMonitor:
    """Keeps application status and port allocations in line with reality."""

    def __init__(
        self,
        registry: ApplicationRegistry,
        engine: ContainerEngine,
        allocator: PortAllocator,
        interval: int = 30,
    ):
        self.registry = registry
        self.engine = engine
        self.allocator = allocator
        self.interval = interval
        self._stopping = False

    async def start(self):
        logger.info(f"Status monitor started (every {self.interval}s)")
        while not self._stopping:
            try:
                await self.sync()
            except Exception as e:
                logger.error(f"Status monitor error: {e}")

            await asyncio.sleep(self.interval)

    def stop(self):
        self._stopping = True

    def _probe(self, names: List[str]) -> Dict[str, bool]:
        return {name: self.engine.container_running(name) for name in names}

    async def sync(self) -> Dict[str, int]:
        apps = [
            app for app in self.registry.list()
            if app.container_name and app.status not in _UNTOUCHED
        ]
        states = await asyncio.to_thread(self._probe, [a.container_name for a in apps])

        changed = 0
        running = 0
        for app in apps:
            if states.get(app.container_name):
                running += 1
                target = AppStatus.RUNNING
            elif app.status == AppStatus.RUNNING:
                logger.warning(f"{app.name} is no longer running")
                target = AppStatus.STOPPED
            else:
                continue
            if app.status != target:
                app.status = target
                app.touch()
                changed += 1

        if changed:
            self.registry.flush()
        ACTIVE_CONTAINERS_GAUGE.set(running)

        released = self.allocator.reconcile(self.registry.ids())
        MONITOR_SYNC_COUNTER.inc()
        return {"checked": len(apps), "changed": changed, "released_ports": len(released)}

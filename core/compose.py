"""Docker Compose invocation for an application's working directory."""
from typing import Callable, Dict, List, Optional

from loguru import logger

from core import process
from core.exceptions import DockerUnavailableError
from core.process import ProcessResult

COMPOSE_FILE = "docker-compose.yml"


class ComposeRunner:
    """Runs compose verbs against ``<work_dir>/docker-compose.yml``.

    The standalone ``docker-compose`` binary is preferred; the ``docker
    compose`` plugin is the fallback. Detection runs once per runner.
    """

    def __init__(self, command_timeout: Optional[float] = None):
        self.command_timeout = command_timeout
        self._command: Optional[List[str]] = None

    async def docker_available(self) -> bool:
        result = await process.run(["docker", "--version"], timeout=15)
        if not result.ok:
            logger.warning(f"docker --version failed: {result.output}")
        return result.ok

    async def detect(self) -> List[str]:
        if self._command is not None:
            return self._command

        if (await process.run(["docker-compose", "--version"], timeout=15)).ok:
            self._command = ["docker-compose"]
        elif (await process.run(["docker", "compose", "version"], timeout=15)).ok:
            self._command = ["docker", "compose"]
        else:
            raise DockerUnavailableError("Docker Compose is not installed")

        logger.info(f"Using compose command: {' '.join(self._command)}")
        return self._command

    async def _cmd(self, args: List[str]) -> List[str]:
        return [*(await self.detect()), "-f", COMPOSE_FILE, *args]

    async def run(
        self, work_dir, *args: str, env: Optional[Dict[str, str]] = None
    ) -> ProcessResult:
        cmd = await self._cmd(list(args))
        return await process.run(cmd, cwd=work_dir, env=env, timeout=self.command_timeout)

    async def stream(
        self,
        work_dir,
        args: List[str],
        on_line: Callable[[str], None],
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        cmd = await self._cmd(args)
        return await process.stream(cmd, on_line, cwd=work_dir, env=env)

    async def build(self, work_dir, on_line: Callable[[str], None]) -> int:
        return await self.stream(
            work_dir, ["build", "--no-cache"], on_line, env={"DOCKER_BUILDKIT": "1"}
        )

    async def up(self, work_dir) -> ProcessResult:
        return await self.run(work_dir, "up", "-d")

    async def down(self, work_dir, *extra: str) -> ProcessResult:
        return await self.run(work_dir, "down", *extra)

    async def container_id(self, work_dir) -> Optional[str]:
        result = await self.run(work_dir, "ps", "-q")
        if not result.ok or not result.stdout:
            return None
        return result.stdout.splitlines()[0].strip() or None

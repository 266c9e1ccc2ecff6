# tests/conftest.py
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from httpx import AsyncClient as _orig_AsyncClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.config import Settings  # noqa: E402
from core.network import PortAllocator  # noqa: E402
from core.process import ProcessResult  # noqa: E402
from core.services import build_services  # noqa: E402

# ---------------------------------------------------------------------------
# Custom AsyncClient wrapper
# ---------------------------------------------------------------------------
ASGITransport = getattr(httpx, "ASGITransport", None)


class AsyncClient(_orig_AsyncClient):
    """Injects ASGITransport(app=...) when tests pass `app=...` to AsyncClient."""

    def __init__(self, *args, app=None, **kwargs):
        if app is not None and ASGITransport is not None and "transport" not in kwargs:
            kwargs["transport"] = ASGITransport(app=app)
        super().__init__(*args, **kwargs)


@pytest.fixture(autouse=True)
def patch_httpx_async_client(monkeypatch):
    monkeypatch.setattr(httpx, "AsyncClient", AsyncClient)
    yield


# ---------------------------------------------------------------------------
# Keep docker off the host
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def patch_docker():
    """Prevent docker.from_env() from contacting the host."""
    fake_client = MagicMock()
    fake_client.ping.return_value = True
    fake_client.api.containers.return_value = []
    with patch("docker.from_env", return_value=fake_client):
        yield fake_client


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeCompose:
    """Stands in for ComposeRunner; records every verb it is asked to run."""

    def __init__(self):
        self.calls = []
        self.available = True
        self.build_lines = ["Step 1/4 : FROM node:20-alpine", "Successfully built 0f3c1d2e"]
        self.build_code = 0
        self.build_gate = None
        self.results = {}
        self.container = "abc123def456"

    async def docker_available(self):
        return self.available

    async def detect(self):
        return ["docker", "compose"]

    async def run(self, work_dir, *args, env=None):
        self.calls.append(tuple(args))
        return self.results.get(args[0], ProcessResult(0, "", ""))

    async def build(self, work_dir, on_line):
        self.calls.append(("build",))
        if self.build_gate is not None:
            await self.build_gate.wait()
        for line in self.build_lines:
            on_line(line)
        return self.build_code

    async def up(self, work_dir):
        return await self.run(work_dir, "up", "-d")

    async def down(self, work_dir, *extra):
        return await self.run(work_dir, "down", *extra)

    async def container_id(self, work_dir):
        return self.container


def make_fake_engine():
    engine = MagicMock()
    engine.ping.return_value = True
    engine.list_containers.return_value = []
    engine.get_container.return_value = None
    engine.container_running.return_value = False
    return engine


# ---------------------------------------------------------------------------
# Settings / services
# ---------------------------------------------------------------------------
@pytest.fixture
def settings(tmp_path):
    return Settings(
        config_dir=tmp_path / "config",
        apps_root=tmp_path / "apps",
        port_range_start=15000,
        port_range_end=15010,
        rate_limit_enabled=False,
        enable_monitor=False,
        heartbeat_interval=1,
    )


@pytest.fixture
def all_ports_free(monkeypatch):
    monkeypatch.setattr(PortAllocator, "is_port_available", lambda self, port: True)


@pytest.fixture
def fake_engine():
    return make_fake_engine()


@pytest.fixture
def fake_compose():
    return FakeCompose()


@pytest.fixture
def fake_git():
    git_manager = MagicMock()
    git_manager.clone_async = AsyncMock(return_value="9fceb02d0ae598e95dc970b74767f19372d61af8")
    return git_manager


@pytest.fixture
def services(settings, all_ports_free, fake_engine, fake_compose, fake_git):
    svc = build_services(settings, engine=fake_engine)
    svc.compose = fake_compose
    svc.deployments.compose = fake_compose
    svc.git = fake_git
    svc.deployments.git = fake_git
    yield svc
    svc.close()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    from api.limits import limiter

    limiter.reset()
    yield

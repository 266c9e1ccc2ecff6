"""Runtime configuration read from the environment (and a local .env file)."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from loguru import logger

try:
    load_dotenv()
except Exception as e:  # pragma: no cover
    logger.warning(f"Failed to load .env file: {e}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    config_dir: Path = Path("/var/app/.shipyard")
    apps_root: Path = Path("/var/app/apps")

    port_range_start: int = 10000
    port_range_end: int = 20000

    docker_network: str = "shipyard-network"
    container_prefix: str = "shipyard"
    docker_timeout: int = 30

    clone_timeout: int = 180
    heartbeat_interval: int = 30
    deployment_memory_limit: int = 200

    database_url: Optional[str] = None

    log_level: str = "INFO"
    log_file: Optional[str] = None

    api_host: str = "0.0.0.0"  # nosec B104
    api_port: int = 3001
    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    rate_limit_enabled: bool = True

    enable_monitor: bool = True
    monitor_interval: int = 30

    @property
    def apps_file(self) -> Path:
        return self.config_dir / "apps.json"

    @property
    def ports_file(self) -> Path:
        return self.config_dir / "ports.json"

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or f"sqlite:///{self.config_dir / 'deployments.db'}"

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            config_dir=Path(os.getenv("SHIPYARD_CONFIG_DIR", "/var/app/.shipyard")),
            apps_root=Path(os.getenv("APPS_ROOT", "/var/app/apps")),
            port_range_start=_env_int("PORT_RANGE_START", 10000),
            port_range_end=_env_int("PORT_RANGE_END", 20000),
            docker_network=os.getenv("DOCKER_NETWORK", "shipyard-network"),
            container_prefix=os.getenv("CONTAINER_PREFIX", "shipyard"),
            docker_timeout=_env_int("DOCKER_TIMEOUT", 30),
            clone_timeout=_env_int("CLONE_TIMEOUT", 180),
            heartbeat_interval=_env_int("HEARTBEAT_INTERVAL", 30),
            deployment_memory_limit=_env_int("DEPLOYMENT_MEMORY_LIMIT", 200),
            database_url=os.getenv("DATABASE_URL") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
            api_host=os.getenv("API_HOST", "0.0.0.0"),  # nosec B104
            api_port=_env_int("API_PORT", 3001),
            api_key=os.getenv("API_KEY") or None,
            webhook_secret=os.getenv("GITHUB_WEBHOOK_SECRET") or None,
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
            enable_monitor=_env_bool("ENABLE_MONITOR", True),
            monitor_interval=_env_int("MONITOR_INTERVAL", 30),
        )
        if settings.port_range_start > settings.port_range_end:
            raise ValueError(
                f"PORT_RANGE_START ({settings.port_range_start}) must not exceed "
                f"PORT_RANGE_END ({settings.port_range_end})"
            )
        return settings

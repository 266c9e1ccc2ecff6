# core/engine.py
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

import docker
from docker.errors import APIError, DockerException, NotFound
from loguru import logger

from core.exceptions import (
    ContainerAlreadyRunningError,
    ContainerNotFoundError,
    ContainerNotRunningError,
    DockerUnavailableError,
)


def _health_from_status(status: str) -> str:
    # e.g. "Up 2 hours (healthy)"
    if "(healthy)" in status:
        return "healthy"
    if "(unhealthy)" in status:
        return "unhealthy"
    if "(health: starting)" in status:
        return "starting"
    return "none"


def _state_from_inspect(state: Dict[str, Any]) -> str:
    if state.get("Running"):
        return "running"
    if state.get("Paused"):
        return "paused"
    if state.get("Restarting"):
        return "restarting"
    if state.get("Dead"):
        return "dead"
    return "exited"


def container_summary(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Shape one entry of ``GET /containers/json``."""
    names = raw.get("Names") or []
    ports = [
        {
            "private_port": p.get("PrivatePort"),
            "public_port": p.get("PublicPort"),
            "type": p.get("Type", "tcp"),
        }
        for p in raw.get("Ports") or []
    ]
    created = raw.get("Created")
    return {
        "id": (raw.get("Id") or "")[:12],
        "name": names[0].lstrip("/") if names else "unknown",
        "image": raw.get("Image"),
        "state": raw.get("State"),
        "status": raw.get("Status"),
        "health": _health_from_status(raw.get("Status") or ""),
        "created": (
            datetime.fromtimestamp(created, tz=timezone.utc).isoformat()
            if isinstance(created, (int, float))
            else created
        ),
        "ports": ports,
    }


def container_details(inspect: Dict[str, Any]) -> Dict[str, Any]:
    """Shape the result of ``GET /containers/{id}/json``."""
    state = inspect.get("State") or {}
    bindings = (inspect.get("HostConfig") or {}).get("PortBindings") or {}
    ports = []
    for container_port, host_ports in bindings.items():
        port, _, protocol = container_port.partition("/")
        entry = {"private_port": int(port or 0), "type": protocol or "tcp"}
        if host_ports:
            entry["public_port"] = int(host_ports[0].get("HostPort") or 0)
        ports.append(entry)
    health = (state.get("Health") or {}).get("Status", "none")
    config = inspect.get("Config") or {}
    return {
        "id": (inspect.get("Id") or "")[:12],
        "name": (inspect.get("Name") or "").lstrip("/"),
        "image": config.get("Image"),
        "state": _state_from_inspect(state),
        "status": state.get("Status"),
        "health": health,
        "created": inspect.get("Created"),
        "ports": ports,
        "tty": bool(config.get("Tty")),
    }


class ContainerEngine:
    """Thin wrapper over the Docker control API."""

    def __init__(
        self,
        client: Optional[Any] = None,
        network: str = "shipyard-network",
        timeout: int = 30,
    ):
        self._client = client
        self.network = network
        self.timeout = timeout

    def _ensure_client(self):
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=self.timeout)
            except DockerException as e:
                raise DockerUnavailableError(f"Docker is not reachable: {e}") from e
        return self._client

    @property
    def client(self):
        return self._ensure_client()

    @client.setter
    def client(self, value):
        self._client = value

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception as e:
            logger.debug(f"Docker ping failed: {e}")
            return False

    # -------------------------
    # inspection
    # -------------------------
    def list_containers(self, all: bool = True) -> List[Dict[str, Any]]:
        return [container_summary(c) for c in self.client.api.containers(all=all)]

    def _inspect(self, container_id: str) -> Dict[str, Any]:
        try:
            return self.client.api.inspect_container(container_id)
        except NotFound as e:
            raise ContainerNotFoundError(container_id) from e

    def get_container(self, container_id: str) -> Optional[Dict[str, Any]]:
        try:
            return container_details(self._inspect(container_id))
        except ContainerNotFoundError:
            return None

    def container_running(self, name: str) -> bool:
        try:
            inspect = self._inspect(name)
        except ContainerNotFoundError:
            return False
        return bool((inspect.get("State") or {}).get("Running"))

    # -------------------------
    # lifecycle
    # -------------------------
    def start_container(self, container_id: str) -> None:
        inspect = self._inspect(container_id)
        if (inspect.get("State") or {}).get("Running"):
            raise ContainerAlreadyRunningError(container_id)
        self.client.api.start(container_id)
        logger.info(f"Started container {container_id}")

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        inspect = self._inspect(container_id)
        if not (inspect.get("State") or {}).get("Running"):
            raise ContainerNotRunningError(container_id)
        self.client.api.stop(container_id, timeout=timeout)
        logger.info(f"Stopped container {container_id}")

    def restart_container(self, container_id: str, timeout: int = 10) -> None:
        self._inspect(container_id)
        self.client.api.restart(container_id, timeout=timeout)
        logger.info(f"Restarted container {container_id}")

    # -------------------------
    # logs
    # -------------------------
    def logs(
        self,
        container_id: str,
        follow: bool = False,
        tail: int = 100,
        since: int = 0,
        until: int = 0,
        timestamps: bool = True,
        stdout: bool = True,
        stderr: bool = True,
    ) -> Union[bytes, Any]:
        """Raw log bytes with the multiplexing headers intact.

        ``container.logs()`` strips the frame headers, so the HTTP endpoint is
        called directly. With ``follow`` the streaming response is returned;
        iterate it with ``iter_raw`` and close it when done.
        """
        api = self.client.api
        params = {
            "stdout": int(stdout),
            "stderr": int(stderr),
            "timestamps": int(timestamps),
            "follow": int(follow),
            "tail": tail,
            "since": since,
        }
        if until > 0:
            params["until"] = until
        # APIClient.logs() strips the frame headers, so the raw body is read
        # through the client helpers, pinned below docker 8 in pyproject.toml
        url = api._url("/containers/{0}/logs", container_id)
        try:
            response = api._get(url, params=params, stream=follow)
            api._raise_for_status(response)
        except NotFound as e:
            raise ContainerNotFoundError(container_id) from e
        if follow:
            return response
        return response.content

    @staticmethod
    def iter_raw(response) -> Iterator[bytes]:
        return response.iter_content(chunk_size=None)

    # -------------------------
    # network
    # -------------------------
    def ensure_network(self) -> None:
        """Create the shared bridge network that application compose files join."""
        try:
            self.client.networks.get(self.network)
            return
        except NotFound:
            pass
        try:
            self.client.networks.create(self.network, driver="bridge")
            logger.info(f"Created Docker network {self.network}")
        except APIError as e:
            logger.error(f"Failed to create Docker network {self.network}: {e}")
            raise

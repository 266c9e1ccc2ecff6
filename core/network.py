import socket
import threading
from contextlib import closing
from typing import Dict, Iterable, List, Optional

from loguru import logger

from core.exceptions import PortExhaustedError, ValidationError
from core.metrics import ALLOCATED_PORTS_GAUGE
from core.registry import JsonDocumentStore
from core.schemas import PortAllocation, PortRange


def validate_port(value) -> Optional[int]:
    """Return ``value`` as an int TCP port, or None if it is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            return None
    if not isinstance(value, int):
        return None
    return value if 1 <= value <= 65535 else None


class PortAllocator:
    """Hands out host ports from ``[start_port, end_port]``, one per application.

    Bookkeeping lives in memory and is flushed to ``ports.json`` after every
    mutation. Candidate ports are also probed at the OS level because the
    bookkeeping can drift from reality (crash between allocation and use,
    ports bound by unrelated processes).
    """

    def __init__(
        self,
        store: JsonDocumentStore,
        start_port: int = 10000,
        end_port: int = 20000,
        probe_host: str = "0.0.0.0",  # nosec B104
    ):
        if start_port > end_port:
            raise ValidationError(f"Invalid port range {start_port}-{end_port}")
        self.store = store
        self.start_port = start_port
        self.end_port = end_port
        self.probe_host = probe_host
        self._allocations: Dict[int, PortAllocation] = {}
        self._lock = threading.RLock()
        self._load()

    # -------------------------
    # persistence
    # -------------------------
    def _load(self) -> None:
        try:
            document = self.store.load_document()
        except Exception as e:
            logger.error(f"Failed to load port allocations: {e}")
            return
        for raw in document.get(self.store.collection, []):
            try:
                allocation = PortAllocation.model_validate(raw)
            except Exception as e:
                logger.warning(f"Skipping unreadable port allocation: {e}")
                continue
            self._allocations[allocation.port] = allocation
        stored_range = document.get("port_range")
        if stored_range and (
            stored_range.get("start") != self.start_port
            or stored_range.get("end") != self.end_port
        ):
            logger.info(
                f"Configured port range {self.start_port}-{self.end_port} replaces "
                f"stored range {stored_range.get('start')}-{stored_range.get('end')}"
            )
        if self._allocations:
            logger.info(f"Loaded {len(self._allocations)} port allocation(s)")
        ALLOCATED_PORTS_GAUGE.set(len(self._allocations))

    def _flush(self) -> None:
        records = [a.model_dump(mode="json") for a in self._allocations.values()]
        ALLOCATED_PORTS_GAUGE.set(len(records))
        try:
            self.store.save(records, port_range=self.port_range.model_dump())
        except Exception as e:
            logger.error(f"Failed to persist port allocations: {e}")

    # -------------------------
    # OS probe
    # -------------------------
    def is_port_available(self, port: int) -> bool:
        """Try to bind a listener on ``port`` and release it immediately."""
        with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
            try:
                sock.bind((self.probe_host, port))
                sock.listen(1)
            except OSError:
                return False
            return True

    # -------------------------
    # allocation
    # -------------------------
    def _in_range(self, port: int) -> bool:
        return self.start_port <= port <= self.end_port

    def _port_for(self, app_id: str) -> Optional[int]:
        for port, allocation in self._allocations.items():
            if allocation.app_id == app_id:
                return port
        return None

    def _bind(self, port: int, app_id: str, app_name: str) -> int:
        self._allocations[port] = PortAllocation(port=port, app_id=app_id, app_name=app_name)
        self._flush()
        logger.info(f"Allocated port {port} to {app_name} ({app_id})")
        return port

    def allocate(self, app_id: str, app_name: str, preferred_port: Optional[int] = None) -> int:
        with self._lock:
            current = self._port_for(app_id)
            if current is not None:
                if self.is_port_available(current):
                    return current
                logger.warning(
                    f"Port {current} held by {app_name} is no longer free, releasing it"
                )
                del self._allocations[current]
                self._flush()

            preferred = validate_port(preferred_port) if preferred_port is not None else None
            if (
                preferred is not None
                and self._in_range(preferred)
                and preferred not in self._allocations
                and self.is_port_available(preferred)
            ):
                return self._bind(preferred, app_id, app_name)
            if preferred_port is not None and preferred is None:
                logger.debug(f"Ignoring invalid preferred port {preferred_port!r}")

            for port in range(self.start_port, self.end_port + 1):
                if port in self._allocations:
                    continue
                if self.is_port_available(port):
                    return self._bind(port, app_id, app_name)

        raise PortExhaustedError(self.start_port, self.end_port)

    def release(self, app_id: str) -> None:
        with self._lock:
            owned = [p for p, a in self._allocations.items() if a.app_id == app_id]
            if not owned:
                return
            for port in owned:
                del self._allocations[port]
                logger.info(f"Released port {port} ({app_id})")
            self._flush()

    def get_allocation(self, app_id: str) -> Optional[int]:
        with self._lock:
            return self._port_for(app_id)

    def list_allocations(self) -> List[PortAllocation]:
        with self._lock:
            return sorted(self._allocations.values(), key=lambda a: a.port)

    def list_available(self, count: int = 10) -> List[int]:
        """Sample of free ports for display. Nothing is reserved."""
        available: List[int] = []
        if count <= 0:
            return available
        with self._lock:
            taken = set(self._allocations)
        for port in range(self.start_port, self.end_port + 1):
            if len(available) >= count:
                break
            if port not in taken and self.is_port_available(port):
                available.append(port)
        return available

    def reconcile(self, live_app_ids: Iterable[str]) -> List[int]:
        """Drop allocations owned by apps that no longer exist."""
        live = set(live_app_ids)
        with self._lock:
            stale = [p for p, a in self._allocations.items() if a.app_id not in live]
            for port in stale:
                logger.info(
                    f"Dropping stale allocation {port} ({self._allocations[port].app_name})"
                )
                del self._allocations[port]
            if stale:
                self._flush()
        return stale

    @property
    def port_range(self) -> PortRange:
        return PortRange(start=self.start_port, end=self.end_port)

    def set_port_range(self, start: int, end: int) -> None:
        if validate_port(start) is None or validate_port(end) is None or start > end:
            raise ValidationError(f"Invalid port range {start}-{end}")
        with self._lock:
            self.start_port = start
            self.end_port = end
            self._flush()

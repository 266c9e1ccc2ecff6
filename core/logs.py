"""Container log retrieval: one-shot fetch and live tail."""
import asyncio
import threading
from typing import Any, AsyncIterator, Dict, List, Tuple

from loguru import logger

from core.engine import ContainerEngine
from core.exceptions import ContainerNotFoundError
from core.log_codec import LogDemultiplexer, TextLineDecoder, parse_logs
from core.schemas import LogEntry, utc_now_iso

MAX_TAIL = 10000
DEFAULT_TAIL = 100
DEFAULT_STREAM_TAIL = 50


def clamp_tail(tail) -> int:
    try:
        value = int(tail)
    except (TypeError, ValueError):
        return DEFAULT_TAIL
    return max(1, min(value, MAX_TAIL))


class ContainerLogService:
    def __init__(self, engine: ContainerEngine, heartbeat_interval: float = 30):
        self.engine = engine
        self.heartbeat_interval = heartbeat_interval

    def fetch(
        self,
        container_id: str,
        tail: int = DEFAULT_TAIL,
        since: int = 0,
        until: int = 0,
        timestamps: bool = True,
        stdout: bool = True,
        stderr: bool = True,
    ) -> List[LogEntry]:
        info = self.engine.get_container(container_id)
        if info is None:
            raise ContainerNotFoundError(container_id)
        raw = self.engine.logs(
            container_id,
            follow=False,
            tail=clamp_tail(tail),
            since=since,
            until=until,
            timestamps=timestamps,
            stdout=stdout,
            stderr=stderr,
        )
        if info.get("tty"):
            # TTY containers do not multiplex their output
            return parse_logs(raw.decode("utf-8", errors="replace"))
        return parse_logs(raw)

    async def stream(
        self,
        container_id: str,
        tail: int = DEFAULT_STREAM_TAIL,
        since: int = 0,
        timestamps: bool = True,
        stdout: bool = True,
        stderr: bool = True,
    ) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """Yield ``(event, data)`` pairs until the log stream ends.

        Events are ``connected``, ``log``, ``error``, ``heartbeat`` and ``end``.
        Closing the generator closes the Docker response.
        """
        info = await asyncio.to_thread(self.engine.get_container, container_id)
        if info is None:
            yield "error", {"message": f"Container '{container_id}' not found"}
            yield "end", {"container_id": container_id}
            return

        try:
            response = await asyncio.to_thread(
                self.engine.logs,
                container_id,
                follow=True,
                tail=clamp_tail(tail),
                since=since,
                timestamps=timestamps,
                stdout=stdout,
                stderr=stderr,
            )
        except Exception as e:
            logger.error(f"Failed to open log stream for {container_id}: {e}")
            yield "error", {"message": str(e)}
            yield "end", {"container_id": container_id}
            return

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def post(kind: str, payload) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, (kind, payload))
            except RuntimeError:
                # event loop already closed
                pass

        def pump() -> None:
            try:
                for chunk in self.engine.iter_raw(response):
                    post("data", chunk)
            except Exception as e:
                post("error", e)
            finally:
                post("eof", None)

        reader = threading.Thread(target=pump, name=f"logs-{container_id[:12]}", daemon=True)
        reader.start()

        decoder = TextLineDecoder() if info.get("tty") else LogDemultiplexer()
        try:
            yield "connected", {"container_id": container_id, "timestamp": utc_now_iso()}
            while True:
                try:
                    kind, payload = await asyncio.wait_for(
                        queue.get(), timeout=self.heartbeat_interval
                    )
                except asyncio.TimeoutError:
                    yield "heartbeat", {"timestamp": utc_now_iso()}
                    continue

                if kind == "data":
                    for entry in decoder.feed(payload):
                        yield "log", entry.model_dump(mode="json")
                elif kind == "error":
                    logger.warning(f"Log stream for {container_id} failed: {payload}")
                    yield "error", {"message": str(payload)}
                    break
                else:
                    if isinstance(decoder, TextLineDecoder):
                        for entry in decoder.flush():
                            yield "log", entry.model_dump(mode="json")
                    break
            yield "end", {"container_id": container_id}
        finally:
            response.close()

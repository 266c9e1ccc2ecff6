"""Tests for ContainerLogService (one-shot fetch and live streaming)."""
import threading
from unittest.mock import MagicMock

import pytest

from core.exceptions import ContainerNotFoundError
from core.log_codec import encode_frame
from core.logs import ContainerLogService, clamp_tail


@pytest.mark.parametrize("value, expected", [(50, 50), (0, 1), (99999, 10000), ("abc", 100), (None, 100)])
def test_clamp_tail(value, expected):
    assert clamp_tail(value) == expected


def test_fetch_missing_container(fake_engine):
    service = ContainerLogService(fake_engine)
    with pytest.raises(ContainerNotFoundError):
        service.fetch("ghost")


def test_fetch_demultiplexes(fake_engine):
    fake_engine.get_container.return_value = {"id": "abc", "tty": False}
    fake_engine.logs.return_value = encode_frame(1, "2024-05-01T10:00:00Z up\n") + encode_frame(2, "2024-05-01T10:00:01Z oops\n")
    entries = ContainerLogService(fake_engine).fetch("abc", tail=999999)

    assert [(e.stream.value, e.message) for e in entries] == [("stdout", "up"), ("stderr", "oops")]
    assert fake_engine.logs.call_args.kwargs["tail"] == 10000


def test_fetch_tty_container_is_plain_text(fake_engine):
    fake_engine.get_container.return_value = {"id": "abc", "tty": True}
    fake_engine.logs.return_value = b"2024-05-01T10:00:00Z hello\n"
    entries = ContainerLogService(fake_engine).fetch("abc")
    assert entries[0].message == "hello"


async def _collect(stream):
    return [item async for item in stream]


async def test_stream_emits_connected_logs_and_end(fake_engine):
    payload = encode_frame(1, "2024-05-01T10:00:00Z first\n") + encode_frame(2, "2024-05-01T10:00:01Z second\n")
    response = MagicMock()
    fake_engine.get_container.return_value = {"id": "abc", "tty": False}
    fake_engine.logs.return_value = response
    # split mid-frame to exercise buffering
    fake_engine.iter_raw.return_value = iter([payload[:10], payload[10:]])

    events = await _collect(ContainerLogService(fake_engine).stream("abc"))

    names = [e for e, _ in events]
    assert names[0] == "connected"
    assert names[-1] == "end"
    logs = [d for e, d in events if e == "log"]
    assert [(d["stream"], d["message"]) for d in logs] == [("stdout", "first"), ("stderr", "second")]
    response.close.assert_called_once()


async def test_stream_tty_container_joins_split_lines(fake_engine):
    data = "2024-05-01T10:00:00Z caf\u00e9 ready\npartial".encode("utf-8")
    cut = data.index(b"\xc3") + 1
    fake_engine.get_container.return_value = {"id": "abc", "tty": True}
    fake_engine.logs.return_value = MagicMock()
    fake_engine.iter_raw.return_value = iter([data[:cut], data[cut:]])

    events = await _collect(ContainerLogService(fake_engine).stream("abc"))

    logs = [d["message"] for e, d in events if e == "log"]
    assert logs == ["caf\u00e9 ready", "partial"]
    assert events[-1][0] == "end"


async def test_stream_missing_container(fake_engine):
    events = await _collect(ContainerLogService(fake_engine).stream("ghost"))
    assert [e for e, _ in events] == ["error", "end"]


async def test_stream_reports_reader_errors(fake_engine):
    def broken():
        yield encode_frame(1, "one\n")
        raise ConnectionError("daemon went away")

    fake_engine.get_container.return_value = {"id": "abc", "tty": False}
    fake_engine.logs.return_value = MagicMock()
    fake_engine.iter_raw.return_value = broken()

    events = await _collect(ContainerLogService(fake_engine).stream("abc"))
    names = [e for e, _ in events]
    assert names == ["connected", "log", "error", "end"]


async def test_stream_heartbeat_when_idle(fake_engine):
    release = threading.Event()

    def slow():
        release.wait(5)
        return
        yield

    fake_engine.get_container.return_value = {"id": "abc", "tty": False}
    fake_engine.logs.return_value = MagicMock()
    fake_engine.iter_raw.return_value = slow()

    stream = ContainerLogService(fake_engine, heartbeat_interval=0.05).stream("abc")
    assert (await stream.__anext__())[0] == "connected"
    assert (await stream.__anext__())[0] == "heartbeat"
    release.set()
    await stream.aclose()

"""Decoder for Docker's multiplexed container log stream.

Each frame is an 8-byte header followed by the payload::

    [stream, 0, 0, 0, size1, size2, size3, size4][payload...]

``stream`` is 0 (stdin), 1 (stdout) or 2 (stderr); the size is a big-endian
uint32. Stdin frames are reported as stdout.
"""
import codecs
import re
import struct
from typing import List, Optional, Tuple, Union

from core.schemas import LogEntry, LogStream, utc_now_iso

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxL")

STREAM_STDIN = 0
STREAM_STDOUT = 1
STREAM_STDERR = 2

_TIMESTAMP_LINE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?)\s+(.*)$", re.DOTALL
)


def encode_frame(stream: int, payload: Union[bytes, str]) -> bytes:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return _HEADER.pack(stream, len(payload)) + payload


def iter_frames(buffer: bytes) -> Tuple[List[Tuple[int, bytes]], int]:
    """Split ``buffer`` into complete ``(stream, payload)`` frames.

    Returns the frames and the number of bytes consumed; a trailing partial
    frame is left unconsumed.
    """
    frames: List[Tuple[int, bytes]] = []
    offset = 0
    total = len(buffer)
    while total - offset >= HEADER_SIZE:
        stream, size = _HEADER.unpack_from(buffer, offset)
        end = offset + HEADER_SIZE + size
        if end > total:
            break
        frames.append((stream, bytes(buffer[offset + HEADER_SIZE:end])))
        offset = end
    return frames, offset


def _stream_for(tag: int) -> LogStream:
    return LogStream.STDERR if tag == STREAM_STDERR else LogStream.STDOUT


def parse_log_line(line: str, stream: LogStream = LogStream.STDOUT) -> Optional[LogEntry]:
    """Split an optional leading ISO-8601 timestamp off ``line``.

    Returns None for blank lines.
    """
    line = line.rstrip("\r\n")
    if not line.strip():
        return None
    match = _TIMESTAMP_LINE.match(line)
    if match:
        return LogEntry(timestamp=match.group(1), message=match.group(2), stream=stream)
    return LogEntry(timestamp=utc_now_iso(), message=line, stream=stream)


def _entries_for(stream: LogStream, payload: bytes) -> List[LogEntry]:
    entries: List[LogEntry] = []
    for line in payload.decode("utf-8", errors="replace").split("\n"):
        entry = parse_log_line(line, stream)
        if entry is not None:
            entries.append(entry)
    return entries


class LogDemultiplexer:
    """Incremental decoder: chunks may split frames anywhere."""

    def __init__(self):
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[LogEntry]:
        if chunk:
            self._buffer.extend(chunk)
        frames, consumed = iter_frames(self._buffer)
        if consumed:
            del self._buffer[:consumed]
        entries: List[LogEntry] = []
        for tag, payload in frames:
            entries.extend(_entries_for(_stream_for(tag), payload))
        return entries


class TextLineDecoder:
    """Incremental decoder for raw (TTY) log output.

    Lines and multi-byte characters split across chunks are held back until
    they are complete.
    """

    def __init__(self, stream: LogStream = LogStream.STDOUT):
        self.stream = stream
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    def feed(self, chunk: bytes) -> List[LogEntry]:
        text = self._partial + self._decoder.decode(chunk or b"")
        *lines, self._partial = text.split("\n")
        return self._parse(lines)

    def flush(self) -> List[LogEntry]:
        """Emit whatever is left once the stream has ended."""
        text = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        return self._parse([text])

    def _parse(self, lines: List[str]) -> List[LogEntry]:
        entries = []
        for line in lines:
            entry = parse_log_line(line, self.stream)
            if entry is not None:
                entries.append(entry)
        return entries


def parse_logs(data: Union[bytes, bytearray, str, None]) -> List[LogEntry]:
    """Decode a complete log dump.

    Text input is treated as plain stdout lines. A trailing partial frame in
    binary input is dropped.
    """
    if not data:
        return []
    if isinstance(data, str):
        return _entries_for(LogStream.STDOUT, data.encode("utf-8"))
    return LogDemultiplexer().feed(bytes(data))

import logging
from dataclasses import dataclass
from typing import List, Union

from .config import MAX_BYTE_COUNT, MAX_HOSTNAME_LENGTH, MAX_LINE_BYTES

log = logging.getLogger("TrafficMonitor.LogProcessor")

LINE_TERMINATOR = b'\n'


@dataclass(frozen=True)
class TrafficRecord:
    hostname: str
    byte_count: int


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    line: str


class LineBuffer:
    """
    Splits a byte stream into complete lines.

    Bytes after the last terminator are kept until a later chunk completes
    them. A pending fragment larger than `max_line_bytes` is discarded and the
    line it belongs to is dropped when its terminator finally arrives.
    """

    def __init__(self, max_line_bytes: int = MAX_LINE_BYTES):
        self.max_line_bytes = max_line_bytes
        self._pending = bytearray()
        self._overflowed = False
        self._discarded = 0  # Bytes of the unterminated line already thrown away
        self.dropped_lines = 0

    @property
    def pending(self) -> bytes:
        return bytes(self._pending)

    @property
    def unterminated_bytes(self) -> int:
        """Length of the unfinished last line, including any part discarded for being too long."""
        return len(self._pending) + self._discarded

    def reset(self):
        self._pending.clear()
        self._overflowed = False
        self._discarded = 0

    def extract(self, chunk: bytes) -> List[bytes]:
        """Returns the lines completed by `chunk`, without their terminators."""
        lines = []
        start = 0
        while True:
            end = chunk.find(LINE_TERMINATOR, start)
            if end == -1:
                break
            if self._overflowed or len(self._pending) + (end - start) > self.max_line_bytes:
                self._overflowed = False
                self._discarded = 0
                self._pending.clear()
                self.dropped_lines += 1
                log.warning(f"Dropped a line longer than {self.max_line_bytes} bytes.")
            elif self._pending:
                self._pending += chunk[start:end]
                lines.append(bytes(self._pending))
                self._pending.clear()
            else:
                lines.append(chunk[start:end])
            start = end + 1

        if self._overflowed:
            self._discarded += len(chunk) - start
        else:
            self._pending += chunk[start:]
            if len(self._pending) > self.max_line_bytes:
                self._discarded = len(self._pending)
                self._pending.clear()
                self._overflowed = True
        return lines


def parse_traffic_line(line: str) -> Union[TrafficRecord, ParseFailure]:
    """
    Parses '<hostname> <request_bytes> <response_bytes>' into a TrafficRecord.
    Never raises; anything else yields a ParseFailure.
    """
    fields = line.split()
    if len(fields) != 3:
        return ParseFailure("malformed", line)

    hostname, request_str, response_str = fields
    if len(hostname) > MAX_HOSTNAME_LENGTH:
        return ParseFailure("hostname too long", line)
    # str.isdigit() accepts non-ASCII digits that int() may reject or misread
    if not (request_str.isascii() and request_str.isdigit() and response_str.isascii() and response_str.isdigit()):
        return ParseFailure("malformed", line)

    try:
        request_bytes, response_bytes = int(request_str), int(response_str)
    except ValueError:
        return ParseFailure("byte count out of range", line)

    byte_count = request_bytes + response_bytes
    if byte_count > MAX_BYTE_COUNT:
        return ParseFailure("byte count out of range", line)
    return TrafficRecord(hostname=hostname, byte_count=byte_count)

import enum
import logging
import os
import threading
from typing import Optional, Union

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import (FOLLOWER_POLL_INTERVAL_SECONDS, FOLLOWER_RETRY_DELAY_SECONDS, MAX_LINE_BYTES,
                     READ_CHUNK_SIZE)
from .log_processor import LineBuffer, ParseFailure, parse_traffic_line
from .state import HostByteAggregator

log = logging.getLogger("TrafficMonitor.Follower")


class FollowerState(enum.Enum):
    OPENING = 'opening'
    FOLLOWING = 'following'
    REOPENING = 'reopening'
    STOPPED = 'stopped'


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, changed: threading.Event):
        self._changed = changed

    def on_any_event(self, event):
        self._changed.set()


class FileFollower:
    """
    Follows one growing file and feeds every complete line into the aggregator.

    Runs in its own thread via run(). Waits on watchdog notifications for the
    file's directory, with a timed wait as fallback. Truncation, rotation and
    read errors close the handle and re-open the file; none of them leave the
    loop. Only stop() does.
    """

    def __init__(self, path: str, aggregator: HostByteAggregator,
                 start_position: Union[str, int] = 'end', expected_inode: Optional[int] = None,
                 max_line_bytes: int = MAX_LINE_BYTES,
                 poll_interval: float = FOLLOWER_POLL_INTERVAL_SECONDS,
                 retry_delay: float = FOLLOWER_RETRY_DELAY_SECONDS,
                 chunk_size: int = READ_CHUNK_SIZE):
        self.path = path
        self.aggregator = aggregator
        self.start_position = start_position
        self.expected_inode = expected_inode
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay
        self.chunk_size = chunk_size

        self.state = FollowerState.OPENING
        self.offset = 0
        self.inode: Optional[int] = None
        self.parse_failures = 0

        self._buffer = LineBuffer(max_line_bytes)
        self._file = None
        self._use_start_position = True
        self._resume_at = None  # (inode, offset) to continue from after a read error
        self._changed = threading.Event()
        self._shutdown = threading.Event()

    # --- Opening ---

    def _start_offset(self, st: os.stat_result) -> int:
        if self._resume_at is not None:
            inode, offset = self._resume_at
            self._resume_at = None
            if inode == st.st_ino and offset <= st.st_size:
                return offset
            log.warning(f"[{self.path}] File changed while re-opening. Reading from the start.")
            return 0

        if not self._use_start_position:
            return 0
        if self.start_position == 'start':
            return 0
        if isinstance(self.start_position, int):
            offset = self.start_position
            if (self.expected_inode is None or self.expected_inode == st.st_ino) and offset <= st.st_size:
                log.info(f"[{self.path}] Resuming from stored offset {offset}.")
                return offset
            log.warning(f"[{self.path}] Stored offset {offset} does not match the current file. "
                        f"Starting at the end.")
        return st.st_size

    def open(self) -> bool:
        """Opens the file and seeks to the start offset. Returns False on failure."""
        try:
            f = open(self.path, 'rb')
        except FileNotFoundError:
            if self._use_start_position:
                log.warning(f"[{self.path}] Log file does not exist yet. Will read it from the start once it appears.")
                self._use_start_position = False
            return False
        except OSError as e:
            log.error(f"[{self.path}] Error opening log file: {e}. Retrying in {self.retry_delay}s.")
            return False

        try:
            st = os.fstat(f.fileno())
            offset = self._start_offset(st)
            f.seek(offset)
        except OSError as e:
            f.close()
            log.error(f"[{self.path}] Error seeking in log file: {e}. Retrying in {self.retry_delay}s.")
            return False

        self._file = f
        self.inode = st.st_ino
        self.offset = offset
        self._buffer.reset()
        self._use_start_position = False
        self.state = FollowerState.FOLLOWING
        self.aggregator.commit_offset(self.path, self.inode, self.offset)
        log.info(f"Following '{self.path}' (inode {self.inode}) from offset {self.offset}.")
        return True

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def reopen(self):
        """Re-opens the file from the start with an empty parse buffer."""
        self.state = FollowerState.REOPENING
        self.close()
        self.offset = 0
        self._buffer.reset()
        if not self.open():
            self.state = FollowerState.OPENING

    # --- Following ---

    def process_chunk(self, chunk: bytes):
        self.offset += len(chunk)
        dropped_before = self._buffer.dropped_lines
        lines = self._buffer.extract(chunk)
        # Over-long lines are dropped by the buffer; count them as malformed
        self.parse_failures += self._buffer.dropped_lines - dropped_before
        counts = {}
        for raw_line in lines:
            line = raw_line.decode('utf-8', errors='replace')
            if not line.strip():
                continue
            result = parse_traffic_line(line)
            if isinstance(result, ParseFailure):
                self.parse_failures += 1
                log.warning(f"[{self.path}] Skipping {result.reason} line: {line[:100]!r}")
                continue
            counts[result.hostname] = counts.get(result.hostname, 0) + result.byte_count
            log.debug(f"[{self.path}] host: {result.hostname} bytes: {result.byte_count}")
        self.aggregator.record(counts, self.path, self.inode, self.committed_offset)

    @property
    def committed_offset(self) -> int:
        """Start of the unfinished last line, even when part of it was discarded as too long."""
        return self.offset - self._buffer.unterminated_bytes

    def read_available(self) -> int:
        """Reads and processes everything appended since the last call. Returns the number of bytes read."""
        total = 0
        while True:
            chunk = self._file.read(self.chunk_size)
            if not chunk:
                return total
            self.process_chunk(chunk)
            total += len(chunk)

    def check_file(self):
        """Detects rotation, truncation and disappearance of the followed path."""
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            log.warning(f"[{self.path}] Log file disappeared. Will attempt to re-open.")
            self.read_available()
            self.close()
            self.state = FollowerState.OPENING
            return

        if st.st_ino != self.inode:
            log.warning(f"[{self.path}] Log rotation by inode change detected. Re-opening.")
            # Whatever was appended to the old file before the switch still counts
            self.read_available()
            self.reopen()
        elif st.st_size < self.offset:
            log.warning(f"[{self.path}] Log truncation detected ({st.st_size} < {self.offset}). "
                        f"Reading from the start.")
            self.reopen()

    def _start_observer(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        observer = Observer()
        try:
            observer.schedule(_ChangeHandler(self._changed), directory, recursive=False)
            observer.start()
        except OSError as e:
            log.error(f"[{self.path}] Cannot watch directory '{directory}': {e}. "
                      f"Falling back to polling every {self.poll_interval}s.")
            return None
        return observer

    def run(self):
        log.info(f"Starting event-driven follower for {self.path}")
        observer = self._start_observer()
        try:
            while not self._shutdown.is_set():
                if self._file is None:
                    if not self.open():
                        self._shutdown.wait(self.retry_delay)
                        continue
                try:
                    self._changed.clear()
                    if self.read_available():
                        continue
                    self._changed.wait(timeout=self.poll_interval)
                    if self._shutdown.is_set():
                        break
                    self.check_file()
                except Exception as e:
                    log.error(f"[{self.path}] Error while following: {e}. Re-opening in {self.retry_delay}s.",
                              exc_info=True)
                    if self._file is not None:
                        self._resume_at = (self.inode, self.committed_offset)
                    self.close()
                    self.state = FollowerState.OPENING
                    self._shutdown.wait(self.retry_delay)
        finally:
            if observer is not None:
                observer.stop()
                observer.join()
            self.close()
            self.state = FollowerState.STOPPED
            log.info(f"Follower for {self.path} has stopped.")

    def stop(self):
        self._shutdown.set()
        self._changed.set()

    def status(self) -> dict:
        return {
            'path': self.path,
            'state': self.state.value,
            'offset': self.offset,
            'inode': self.inode,
            'parse_failures': self.parse_failures,
        }

"""Incremental, rotation-tolerant log reading."""

import os
from typing import List

from models import LogSource, Outcome, ReadResult
from utils.logger import get_logger

logger = get_logger("log_reader")

# Cap on a single buffered partial line; longer garbage is discarded.
MAX_LINE_BYTES = 64 * 1024


class LogReader:
    """
    Reads bytes appended to log files since the previous poll.

    The first poll of a source only fingerprints it and jumps to its end,
    so history written before the daemon started is never judged again.
    A changed (device, inode) or a file shorter than the saved offset is
    a rotation or truncation: the offset goes back to zero and the new file
    is read from its start.

    Usage:
        reader = LogReader(read_budget_bytes=1024 * 1024)
        result = reader.poll(source)
        for line in result.lines:
            ...
    """

    def __init__(self, read_budget_bytes: int = 1024 * 1024):
        """
        Initialize reader.

        Args:
            read_budget_bytes: Maximum bytes consumed from one source per poll
        """
        self.read_budget_bytes = max(1, read_budget_bytes)

    def poll(self, source: LogSource) -> ReadResult:
        """
        Return complete new lines of source; never blocks waiting for data.

        Args:
            source: Source to read; its offset and fingerprint are updated

        Returns:
            ReadResult with lines and OK or RECOVERABLE outcome
        """
        try:
            st = os.stat(source.path)
        except FileNotFoundError:
            return self._missing(source)
        except OSError as e:
            return ReadResult([], Outcome.recoverable(f"Cannot stat {source.path}: {e}"))

        identity = (st.st_dev, st.st_ino)

        if source.missing:
            logger.info(f"Log source {source.path} is back")
            source.missing = False
            self._reset(source, identity, st.st_size)
        elif source.last_offset is None:
            # Start at the current end of the file
            source.last_offset = st.st_size
            source.last_inode = identity
            source.last_size = st.st_size
            source.pending = b""
            return ReadResult([], Outcome.success())
        elif identity != source.last_inode:
            logger.info(f"Log source {source.path} rotated (inode changed), reading new file from start")
            self._reset(source, identity, st.st_size)
        elif st.st_size < source.last_offset:
            logger.info(f"Log source {source.path} truncated, reading from start")
            self._reset(source, identity, st.st_size)

        source.last_size = st.st_size
        if st.st_size == source.last_offset:
            return ReadResult([], Outcome.success())

        try:
            with open(source.path, "rb") as f:
                # Opened file may differ from the one we stat'ed if rotated in between
                opened = os.fstat(f.fileno())
                if (opened.st_dev, opened.st_ino) != source.last_inode:
                    return ReadResult([], Outcome.success())
                f.seek(source.last_offset)
                data = f.read(self.read_budget_bytes)
        except FileNotFoundError:
            return self._missing(source)
        except OSError as e:
            return ReadResult([], Outcome.recoverable(f"Cannot read {source.path}: {e}"))

        source.last_offset += len(data)
        return ReadResult(self._split(source, data), Outcome.success())

    def _reset(self, source: LogSource, identity, size: int) -> None:
        source.last_offset = 0
        source.last_inode = identity
        source.last_size = size
        source.pending = b""

    def _missing(self, source: LogSource) -> ReadResult:
        if not source.missing:
            logger.warning(f"Log source {source.path} is missing, will keep polling")
            source.missing = True
            source.pending = b""
        return ReadResult([], Outcome.recoverable(f"{source.path} missing"))

    def _split(self, source: LogSource, data: bytes) -> List[str]:
        """Split data into lines, keeping an unterminated tail for later."""
        buffer = source.pending + data
        *complete, tail = buffer.split(b"\n")
        if len(tail) > MAX_LINE_BYTES:
            tail = b""
        source.pending = tail
        return [
            raw.rstrip(b"\r").decode("utf-8", errors="replace")
            for raw in complete
            if raw.strip()
        ]

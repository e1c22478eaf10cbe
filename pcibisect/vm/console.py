#!/usr/bin/env python3
"""Guest console capture.

Copies the VM process output into a bounded in-memory buffer on a
background thread, optionally teeing it to a log file.
"""

import logging
import threading
import time
from collections import deque
from pathlib import Path
from typing import IO, Callable, Deque, Optional


logger = logging.getLogger(__name__)

# Constants
DEFAULT_MAX_BUFFER_CHUNKS = 65536  # ~256MB at 4K chunks, keeps the tail
READ_CHUNK_SIZE = 4096
DEFAULT_JOIN_TIMEOUT = 10.0


class ConsoleCapture:
    """Background reader for a guest console stream.

    Attributes:
        name: Label used for the reader thread and log messages
        log_path: Optional file receiving a copy of the stream
        is_active: Whether the reader thread is running
        truncated: Whether the oldest output was dropped to bound memory
    """

    def __init__(
        self,
        stream: IO[bytes],
        name: str,
        log_path: Optional[Path] = None,
        line_callback: Optional[Callable[[str], None]] = None,
        max_buffer_chunks: int = DEFAULT_MAX_BUFFER_CHUNKS,
    ) -> None:
        """Initialize console capture.

        Args:
            stream: Binary stream to read (VM stdout)
            name: Label used for the reader thread and log messages
            log_path: Optional file receiving a copy of the stream
            line_callback: Called with every decoded console line
            max_buffer_chunks: Maximum chunks kept in memory
        """
        self.stream = stream
        self.name = name
        self.log_path = log_path
        self.line_callback = line_callback
        self.is_active = False
        self.buffer: Deque[bytes] = deque(maxlen=max_buffer_chunks)
        self.truncated = False
        self.start_time: Optional[float] = None
        self.lock = threading.Lock()
        self._partial = b""
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the reader thread."""
        self._thread = threading.Thread(
            target=self._capture, daemon=True, name=f"console-{self.name}"
        )
        self.is_active = True
        self.start_time = time.time()
        self._thread.start()
        logger.debug(f"Started console capture for {self.name}")

    def _capture(self) -> None:
        log_file = None
        try:
            if self.log_path:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = self.log_path.open("wb")

            while True:
                chunk = self.stream.read1(READ_CHUNK_SIZE)
                if not chunk:
                    break
                with self.lock:
                    if len(self.buffer) == self.buffer.maxlen and not self.truncated:
                        self.truncated = True
                        logger.warning(
                            f"Console output of {self.name} exceeds the capture buffer, "
                            "dropping the oldest output"
                        )
                    self.buffer.append(chunk)
                if log_file:
                    log_file.write(chunk)
                    log_file.flush()
                self._emit_lines(chunk)

            if self._partial:
                self._emit_line(self._partial)
                self._partial = b""

        except (OSError, ValueError) as exc:
            # Stream closed underneath us after a kill
            logger.debug(f"Console capture for {self.name} ended: {exc}")
        finally:
            if log_file:
                log_file.close()
            self.is_active = False

    def _emit_lines(self, chunk: bytes) -> None:
        data = self._partial + chunk
        *lines, self._partial = data.split(b"\n")
        for line in lines:
            self._emit_line(line)

    def _emit_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        logger.debug(f"[{self.name}] {line}")
        if self.line_callback:
            self.line_callback(line)

    def join(self, timeout: float = DEFAULT_JOIN_TIMEOUT) -> None:
        """Wait for the reader to reach end of stream."""
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(
                    f"Console reader for {self.name} still running after {timeout}s, "
                    "output may be incomplete"
                )

    def get_output(self) -> bytes:
        """Get everything captured so far as one byte string."""
        with self.lock:
            return b"".join(self.buffer)

    def get_duration(self) -> Optional[float]:
        """Get capture duration in seconds, or None if not started."""
        if self.start_time:
            return time.time() - self.start_time
        return None

"""Process handle: the supervised record of one spawned subprocess.

A handle owns its status, its timestamps and a size-capped output buffer.
Status only moves forward (starting → running → terminal); the first
terminal transition wins and resolves the handle's completion future
exactly once. Later transitions are ignored.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

TRUNCATION_MARKER = "[OUTPUT TRUNCATED] Buffer limit reached. Further output omitted."

OutputObserver = Callable[[str], None]


class ProcessStatus(str, Enum):
    """Lifecycle status of a supervised process."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({ProcessStatus.COMPLETED, ProcessStatus.ERROR, ProcessStatus.CANCELLED})


class OutputBuffer:
    """Ordered text chunks, capped by total bytes and by chunk count.

    Once either cap would be exceeded the buffer stores a single truncation
    marker and drops everything after it. Markers added with
    ``add_marker()`` bypass the caps.
    """

    def __init__(self, max_bytes: int = 10_000_000, max_chunks: int = 10_000) -> None:
        self.max_bytes = max_bytes
        self.max_chunks = max_chunks
        self._chunks: list[str] = []
        self._output_count = 0
        self._byte_size = 0
        self._truncated = False

    @property
    def truncated(self) -> bool:
        return self._truncated

    @property
    def byte_size(self) -> int:
        """Bytes of stored output, markers excluded."""
        return self._byte_size

    @property
    def output_count(self) -> int:
        """Chunks of stored output, markers excluded."""
        return self._output_count

    @property
    def chunks(self) -> list[str]:
        return list(self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)

    def append(self, text: str) -> bool:
        """Store ``text`` unless a cap is hit. Returns True if it was stored."""
        if self._truncated:
            return False
        size = len(text.encode("utf-8"))
        if self._byte_size + size > self.max_bytes or self._output_count >= self.max_chunks:
            self._chunks.append(TRUNCATION_MARKER)
            self._truncated = True
            return False
        self._chunks.append(text)
        self._output_count += 1
        self._byte_size += size
        return True

    def add_marker(self, text: str) -> None:
        self._chunks.append(text)

    def text(self, separator: str = "\n") -> str:
        return separator.join(self._chunks)


@dataclass
class ProcessResult:
    """Snapshot returned by ``ProcessSupervisor.wait()``."""

    handle_id: int
    pid: int | None
    status: ProcessStatus
    exit_code: int | None
    exit_signal: int | None
    output: str
    duration_seconds: float
    timed_out: bool = False
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.status == ProcessStatus.COMPLETED


@dataclass
class ProcessHandle:
    """One spawned subprocess.

    ``handle_id`` is assigned by the registry and never reused; ``pid`` is
    only meaningful to the OS and is used solely for signal delivery.
    """

    handle_id: int
    working_dir: Path
    argv: list[str]
    output: OutputBuffer
    prompt: str | None = None
    pid: int | None = None
    on_output: OutputObserver | None = None
    status: ProcessStatus = ProcessStatus.STARTING
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    exit_code: int | None = None
    exit_signal: int | None = None
    timed_out: bool = False
    _started_monotonic: float = field(default_factory=time.monotonic, repr=False)
    _ended_monotonic: float | None = field(default=None, repr=False)
    _done: asyncio.Future[ProcessStatus] | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float:
        end = self._ended_monotonic if self._ended_monotonic is not None else time.monotonic()
        return end - self._started_monotonic

    def mark_running(self) -> bool:
        """starting → running. False if the handle has already moved on."""
        if self.status != ProcessStatus.STARTING:
            return False
        self.status = ProcessStatus.RUNNING
        return True

    def finish(self, status: ProcessStatus) -> bool:
        """Enter a terminal status. Only the first call has any effect."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        if self.is_terminal:
            return False
        self.status = status
        self.ended_at = time.time()
        self._ended_monotonic = time.monotonic()
        if self._done is not None and not self._done.done():
            self._done.set_result(status)
        return True

    def completion(self) -> asyncio.Future[ProcessStatus]:
        """Future resolved with the terminal status. Must be called inside a loop."""
        if self._done is None:
            self._done = asyncio.get_running_loop().create_future()
            if self.is_terminal:
                self._done.set_result(self.status)
        return self._done

    def to_result(self) -> ProcessResult:
        return ProcessResult(
            handle_id=self.handle_id,
            pid=self.pid,
            status=self.status,
            exit_code=self.exit_code,
            exit_signal=self.exit_signal,
            output=self.output.text(),
            duration_seconds=self.duration_seconds,
            timed_out=self.timed_out,
            truncated=self.output.truncated,
        )


__all__ = [
    "OutputBuffer",
    "OutputObserver",
    "ProcessHandle",
    "ProcessResult",
    "ProcessStatus",
    "TRUNCATION_MARKER",
]

"""Lookup table of live subprocesses, keyed by an internal handle id.

The registry is a back-reference used to route kill and timeout signals
to the OS process behind a handle. It never owns handles: entries are
removed once the process exits, and every removal is delete-if-present,
because spawn, timeout and exit callbacks can arrive in any order.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass

from foreman.supervisor.handle import ProcessHandle


@dataclass
class _Entry:
    handle: ProcessHandle
    process: asyncio.subprocess.Process


class ProcessRegistry:
    """Handle-id → (handle, OS process) map.

    Handle ids come from a monotonic counter, so a pid the OS recycles
    after exit can never alias an older entry.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._entries: dict[int, _Entry] = {}

    def next_id(self) -> int:
        return next(self._ids)

    def register(self, handle: ProcessHandle, process: asyncio.subprocess.Process) -> None:
        self._entries[handle.handle_id] = _Entry(handle=handle, process=process)

    def remove(self, handle_id: int) -> bool:
        """Drop an entry. Returns False if it was already gone."""
        return self._entries.pop(handle_id, None) is not None

    def get(self, handle_id: int) -> ProcessHandle | None:
        entry = self._entries.get(handle_id)
        return entry.handle if entry is not None else None

    def process_for(self, handle_id: int) -> asyncio.subprocess.Process | None:
        entry = self._entries.get(handle_id)
        return entry.process if entry is not None else None

    def handles(self) -> list[ProcessHandle]:
        return [entry.handle for entry in self._entries.values()]

    def __contains__(self, handle_id: object) -> bool:
        return handle_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["ProcessRegistry"]

"""Pytest fixtures for Foreman tests."""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator, Generator
from pathlib import Path

import pytest
import structlog

from foreman.core.config import QueueConfig, SupervisorConfig
from foreman.supervisor.supervisor import ProcessSupervisor
from foreman.tasks.queue import TaskQueue
from foreman.tasks.store import InMemoryStateStore


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset CLI option state, structlog and root handlers around each test."""
    from foreman.cli import helpers as cli_helpers

    cli_helpers.reset_cli_state()
    structlog.reset_defaults()
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    cli_helpers.reset_cli_state()
    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A temporary working directory for spawned processes."""
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def python_argv() -> list[str]:
    """argv prefix that runs inline Python in a child interpreter."""
    return [sys.executable, "-c"]


@pytest.fixture
async def supervisor() -> AsyncIterator[ProcessSupervisor]:
    """Supervisor with a short grace period; everything is killed on teardown."""
    sup = ProcessSupervisor(SupervisorConfig(grace_period_seconds=0.5, wait_timeout_seconds=30))
    yield sup
    await sup.shutdown()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
async def queue(store: InMemoryStateStore) -> TaskQueue:
    """Loaded queue over an in-memory store. The loop is not started."""
    q = TaskQueue(store, QueueConfig(tick_interval_seconds=0.05))
    await q.load()
    return q

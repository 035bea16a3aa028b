"""Subprocess supervision: spawn, bound output, time out, kill and wait."""

from foreman.supervisor.command import (
    CliInvocation,
    build_cli_command,
    build_prompt,
    invocation_from_config,
)
from foreman.supervisor.handle import (
    TRUNCATION_MARKER,
    OutputBuffer,
    ProcessHandle,
    ProcessResult,
    ProcessStatus,
)
from foreman.supervisor.registry import ProcessRegistry
from foreman.supervisor.supervisor import ProcessSupervisor

__all__ = [
    "CliInvocation",
    "OutputBuffer",
    "ProcessHandle",
    "ProcessRegistry",
    "ProcessResult",
    "ProcessStatus",
    "ProcessSupervisor",
    "TRUNCATION_MARKER",
    "build_cli_command",
    "build_prompt",
    "invocation_from_config",
]

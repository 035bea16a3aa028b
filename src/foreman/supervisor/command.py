"""Argument vectors and prompts for the supervised CLI.

Commands are always built as lists and handed to
``asyncio.create_subprocess_exec``; nothing is ever interpreted by a shell,
so prompts need no quoting.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from foreman.core.config import PermissionMode, SupervisorConfig

_ROLE_LABELS = {
    "system": "System",
    "user": "User",
    "assistant": "Assistant",
}


@dataclass(frozen=True)
class CliInvocation:
    """Options for one non-interactive run of the CLI."""

    prompt: str
    model: str | None = None
    output_format: str | None = None
    permission_mode: PermissionMode = "acceptEdits"


def build_cli_command(executable: str, invocation: CliInvocation) -> list[str]:
    """Build ``[executable, --print, ..., prompt]`` with the prompt last."""
    cmd = [executable, "--print", "--permission-mode", invocation.permission_mode]
    if invocation.model:
        cmd.extend(["--model", invocation.model])
    if invocation.output_format:
        cmd.extend(["--output-format", invocation.output_format])
    cmd.append(invocation.prompt)
    return cmd


def invocation_from_config(
    config: SupervisorConfig,
    prompt: str,
    *,
    model: str | None = None,
) -> CliInvocation:
    return CliInvocation(
        prompt=prompt,
        model=model or config.default_model,
        output_format=config.output_format,
        permission_mode=config.permission_mode,
    )


def build_prompt(
    user_prompt: str,
    history: Sequence[Mapping[str, str]],
    max_history_messages: int = 10,
) -> str:
    """Prefix ``user_prompt`` with the most recent conversation turns.

    ``history`` entries are ``{"role": ..., "content": ...}`` mappings.
    Unknown roles are skipped.
    """
    if not history or max_history_messages <= 0:
        return user_prompt

    lines = []
    for message in list(history)[-max_history_messages:]:
        label = _ROLE_LABELS.get(message.get("role", ""))
        if label is not None:
            lines.append(f"{label}: {message.get('content', '')}")

    if not lines:
        return user_prompt
    return "Previous conversation:\n" + "\n\n".join(lines) + "\n\n---\n\n" + user_prompt


__all__ = ["CliInvocation", "build_cli_command", "build_prompt", "invocation_from_config"]

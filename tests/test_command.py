"""Tests for foreman.supervisor.command module."""

from foreman.core.config import SupervisorConfig
from foreman.supervisor.command import (
    CliInvocation,
    build_cli_command,
    build_prompt,
    invocation_from_config,
)


class TestBuildCliCommand:
    """Tests for argv construction."""

    def test_minimal(self):
        argv = build_cli_command("claude", CliInvocation(prompt="hi"))
        assert argv == ["claude", "--print", "--permission-mode", "acceptEdits", "hi"]

    def test_all_options_prompt_last(self):
        argv = build_cli_command(
            "claude",
            CliInvocation(
                prompt="do it; rm -rf /",
                model="m1",
                output_format="json",
                permission_mode="plan",
            ),
        )
        assert argv == [
            "claude", "--print", "--permission-mode", "plan",
            "--model", "m1", "--output-format", "json", "do it; rm -rf /",
        ]

    def test_invocation_from_config_defaults_model(self):
        config = SupervisorConfig(default_model="dflt", output_format="text")
        inv = invocation_from_config(config, "p")
        assert inv.model == "dflt"
        assert inv.output_format == "text"
        assert invocation_from_config(config, "p", model="other").model == "other"


class TestBuildPrompt:
    """Tests for conversation prompt assembly."""

    def test_no_history_returns_prompt(self):
        assert build_prompt("hello", []) == "hello"

    def test_history_prefix(self):
        prompt = build_prompt(
            "next",
            [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "hello"},
            ],
        )
        assert prompt == (
            "Previous conversation:\nUser: hi\n\nAssistant: hello\n\n---\n\nnext"
        )

    def test_keeps_most_recent_messages(self):
        history = [{"role": "user", "content": str(i)} for i in range(5)]
        prompt = build_prompt("q", history, max_history_messages=2)
        assert "User: 3" in prompt and "User: 4" in prompt
        assert "User: 2" not in prompt

    def test_unknown_roles_skipped(self):
        assert build_prompt("q", [{"role": "tool", "content": "x"}]) == "q"

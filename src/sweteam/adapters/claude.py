"""Claude Code CLI backend."""

from __future__ import annotations

from sweteam.adapters.base import CLIBackend


class ClaudeBackend(CLIBackend):
    name = "claude"
    binary = "claude"

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self.binary, "-p", "--output-format", "json"]
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.extend(self.extra_flags)
        cmd.append(prompt)
        return cmd

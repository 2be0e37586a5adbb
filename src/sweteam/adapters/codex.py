"""Codex CLI backend."""

from __future__ import annotations

from sweteam.adapters.base import CLIBackend


class CodexBackend(CLIBackend):
    name = "codex"
    binary = "codex"

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self.binary, "exec", "--json"]
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.extend(self.extra_flags)
        cmd.append(prompt)
        return cmd

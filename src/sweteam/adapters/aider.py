"""Aider CLI backend."""

from __future__ import annotations

from sweteam.adapters.base import CLIBackend


class AiderBackend(CLIBackend):
    name = "aider"
    binary = "aider"

    def build_command(self, prompt: str) -> list[str]:
        # Commits are harvested by the workspace, so aider's own git handling is off.
        cmd = [self.binary, "--yes-always", "--no-git", "--message", prompt]
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.extend(self.extra_flags)
        return cmd

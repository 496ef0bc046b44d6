"""System prompt assembly from the base text and generated sections."""

from __future__ import annotations

import platform
from pathlib import Path

from mash.registry import RegistrySnapshot, format_capability_listing
from mash.tasks import format_task_prompt

BASE_PROMPT = """You are mash, a coding agent working in the user's terminal.

You have exactly one tool, `bash`, which runs a shell command and returns its
stdout, stderr and exit status. Everything else is done through it: read files
with cat/sed/grep, edit them with heredocs, patch or sed, search with find/rg,
run builds and tests, manage the task list and call external tools.

Rules:
- Run one command per turn and read its result before deciding the next step.
- Prefer small, verifiable steps. Check your edits.
- A non-zero exit status or a timeout is information, not a reason to stop:
  look at the output and adapt.
- When the work is finished, reply with a short summary and no tool call."""


def environment_section(cwd: Path | None = None) -> str:
    cwd = cwd or Path.cwd()
    return (
        "\n\n## Environment\n"
        f"Working directory: {cwd}\n"
        f"Platform: {platform.system()} {platform.release()}"
    )


def build_system_prompt(
    *,
    task_file: Path | None = None,
    snapshot: RegistrySnapshot | None = None,
    proxy_url: str | None = None,
    cwd: Path | None = None,
) -> str:
    """Join the base prompt with the environment, tool listing and task sections.

    Deterministic for a given registry snapshot, task path and directory.
    """
    parts = [BASE_PROMPT, environment_section(cwd)]
    if snapshot is not None and proxy_url:
        parts.append(format_capability_listing(snapshot, proxy_url))
    if task_file is not None:
        parts.append(format_task_prompt(task_file))
    return "".join(parts)

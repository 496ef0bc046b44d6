"""Task file store: a markdown checklist shared by the model and the UI."""

from __future__ import annotations

import logging
import os
import re
import stat
import tempfile
import time
from pathlib import Path

from pydantic import ValidationError

from mash.config import mash_home
from mash.schemas import TaskEntry

logger = logging.getLogger(__name__)

# - [ ] 3. Description   /   - [x] 3. Description
TASK_LINE = re.compile(r"^- \[(?P<mark>[ x])\] (?P<ordinal>[1-9]\d*)\. (?P<description>.*)$")

# Lines that look like checklist items must match TASK_LINE
CHECKLIST_PREFIX = "- ["

DEFAULT_FILE_MODE = 0o644


class TaskStoreError(Exception):
    """Base class for task file failures."""

    pass


class TaskNotFoundError(TaskStoreError):
    """Raised when no entry carries the requested ordinal."""

    pass


class TaskFormatError(TaskStoreError):
    """Raised when the file does not follow the checklist grammar."""

    pass


class TaskWriteError(TaskStoreError):
    """Raised when the task file cannot be written."""

    pass


def project_name(cwd: Path | None = None) -> str:
    """Project name derived from the working directory."""
    return (cwd or Path.cwd()).name or "unknown"


def _format_line(entry: TaskEntry) -> str:
    mark = "x" if entry.completed else " "
    return f"- [{mark}] {entry.ordinal}. {entry.description}"


def _parse_line(line: str, line_number: int) -> TaskEntry | None:
    """Parse one line. Returns None for inert commentary lines."""
    match = TASK_LINE.match(line)
    if match:
        try:
            return TaskEntry(
                ordinal=int(match.group("ordinal")),
                description=match.group("description"),
                completed=match.group("mark") == "x",
            )
        except ValidationError as e:
            raise TaskFormatError(f"Line {line_number} is not a valid task entry: {line!r}") from e
    if line.lstrip().startswith(CHECKLIST_PREFIX):
        raise TaskFormatError(f"Line {line_number} is not a valid task entry: {line!r}")
    return None


def parse_tasks(content: str) -> list[TaskEntry]:
    """Parse checklist content into entries, in file order."""
    entries: list[TaskEntry] = []
    seen: set[int] = set()
    for number, line in enumerate(content.splitlines(), 1):
        entry = _parse_line(line, number)
        if entry is None:
            continue
        if entry.ordinal in seen:
            raise TaskFormatError(f"Duplicate task number {entry.ordinal} on line {number}")
        seen.add(entry.ordinal)
        entries.append(entry)
    return entries


class TaskFileStore:
    """Reads and atomically rewrites a single task checklist file.

    The file is the only representation of the task list; nothing is cached
    between calls. Every write goes to a temporary file in the same
    directory and is moved into place with ``os.replace``, so concurrent
    readers see either the old or the new file, never a partial one.
    """

    def __init__(self, path: Path | str, *, title: str | None = None):
        self.path = Path(path)
        self.title = title or project_name()

    def heading(self) -> str:
        return f"# Tasks — {self.title}"

    def _read_text(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except UnicodeDecodeError as e:
            raise TaskFormatError(f"Task file {self.path} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise TaskStoreError(f"Cannot read task file {self.path}: {e}") from e

    def _file_mode(self) -> int:
        try:
            return stat.S_IMODE(os.stat(self.path).st_mode)
        except FileNotFoundError:
            return DEFAULT_FILE_MODE

    def _write_atomic(self, content: str) -> None:
        directory = self.path.parent
        tmp_name = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                dir=directory,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                # mkstemp creates 0600; keep the mode readers already rely on
                os.fchmod(f.fileno(), self._file_mode())
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise TaskWriteError(f"Cannot write task file {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def create(self, descriptions: list[str]) -> list[TaskEntry]:
        """Replace the file with a freshly numbered, all-open checklist."""
        entries = []
        for ordinal, description in enumerate(descriptions, 1):
            if not description.strip():
                raise ValueError(f"Task {ordinal} has an empty description")
            if description.splitlines() != [description]:
                raise ValueError(f"Task {ordinal} description must be a single line")
            entries.append(TaskEntry(ordinal=ordinal, description=description))

        lines = [self.heading(), ""]
        lines.extend(_format_line(entry) for entry in entries)
        self._write_atomic("\n".join(lines) + "\n")

        logger.info(f"Created task list with {len(entries)} entries at {self.path}")
        return entries

    def complete(self, ordinal: int) -> TaskEntry:
        """Mark one entry complete, keeping every other line verbatim."""
        content = self._read_text()
        lines = content.splitlines()
        seen: set[int] = set()
        target: int | None = None

        for index, line in enumerate(lines):
            entry = _parse_line(line, index + 1)
            if entry is None:
                continue
            if entry.ordinal in seen:
                raise TaskFormatError(f"Duplicate task number {entry.ordinal} on line {index + 1}")
            seen.add(entry.ordinal)
            if entry.ordinal == ordinal:
                target = index

        if target is None:
            raise TaskNotFoundError(f"No task numbered {ordinal} in {self.path}")

        entry = _parse_line(lines[target], target + 1)
        updated = entry.model_copy(update={"completed": True})
        lines[target] = _format_line(updated)

        trailing_newline = content.endswith("\n")
        self._write_atomic("\n".join(lines) + ("\n" if trailing_newline else ""))

        logger.info(f"Marked task {ordinal} complete in {self.path}")
        return updated

    def read(self) -> list[TaskEntry]:
        """Return all entries in file order; empty when the file is absent."""
        return parse_tasks(self._read_text())

    def summary(self) -> tuple[int, int] | None:
        """(completed, total), or None when there are no entries."""
        entries = self.read()
        if not entries:
            return None
        return sum(1 for e in entries if e.completed), len(entries)


def tasks_dir() -> Path:
    directory = mash_home() / "tasks"
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def init_session_file(project: str | None = None) -> Path:
    """Create a heading-only task file for a new session and return its path."""
    name = project or project_name()
    path = tasks_dir() / f"{name}_{int(time.time())}.md"
    store = TaskFileStore(path, title=name)
    store._write_atomic(store.heading() + "\n\n")
    return path


def format_task_prompt(task_file: Path) -> str:
    """Model-facing instructions for managing the task list through the shell."""
    path = str(task_file)
    return f"""

## Task List

Task file: `{path}`

All task operations are shell commands run through the bash tool. Do not
write the task list into your reply text.

1. Create the list once, in your first response, for multi-step work:

   mash tasks create --file "{path}" "First step" "Second step" "Third step"

2. Mark step N done as soon as it is finished:

   mash tasks done --file "{path}" N

3. Show the current list:

   mash tasks list --file "{path}"

The file is a checklist of `- [ ] N. description` lines (`- [x]` when
done). The UI watches it and refreshes automatically."""

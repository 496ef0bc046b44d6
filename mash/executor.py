"""Command executor: runs one shell command with bounded capture and teardown."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import time

from mash.config import DEFAULT_COMMAND_TIMEOUT
from mash.schemas import ActionRequest, ActionResult, ExecStatus

logger = logging.getLogger(__name__)

# Capture limit per stream
MAX_OUTPUT_BYTES = 64 * 1024  # 64KB

READ_CHUNK_BYTES = 64 * 1024

# Grace period between SIGTERM and SIGKILL for the process group
TERMINATE_GRACE_SECONDS = 2.0

# How long to wait for pipes to close after the process group is gone
DRAIN_TIMEOUT_SECONDS = 1.0

# Polling interval while waiting for the shell itself to exit
EXIT_POLL_SECONDS = 0.02


def _default_shell() -> str:
    if shutil.which("bash"):
        return "bash"
    if shutil.which("sh"):
        return "sh"
    return "bash"


SHELL = _default_shell()


class _BoundedCapture:
    """Keeps the first ``limit`` bytes of a stream and counts the rest."""

    def __init__(self, limit: int):
        self.limit = limit
        self.truncated = False
        self._chunks: list[bytes] = []
        self._size = 0

    def feed(self, data: bytes) -> None:
        remaining = self.limit - self._size
        if remaining > 0:
            kept = data[:remaining]
            self._chunks.append(kept)
            self._size += len(kept)
        if len(data) > max(remaining, 0):
            self.truncated = True

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


async def _pump(stream: asyncio.StreamReader, capture: _BoundedCapture) -> None:
    """Read a stream to EOF; output past the bound is discarded."""
    while True:
        data = await stream.read(READ_CHUNK_BYTES)
        if not data:
            return
        capture.feed(data)


def _signal_group(pgid: int, sig: signal.Signals) -> bool:
    """Send a signal to a whole process group. False if it is already gone."""
    try:
        os.killpg(pgid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.warning(f"Cannot signal process group {pgid}: {e}")
        return False


async def _wait_exit(proc: asyncio.subprocess.Process) -> int:
    """Wait for the shell process itself to exit.

    ``Process.wait()`` only returns once every pipe is closed, and a
    backgrounded child that inherited stdout keeps it open after the shell
    is gone. The return code is set as soon as the shell is reaped.
    """
    while proc.returncode is None:
        await asyncio.sleep(EXIT_POLL_SECONDS)
    return proc.returncode


async def _terminate_group(proc: asyncio.subprocess.Process) -> None:
    """SIGTERM the process group, escalate to SIGKILL, then wait for the leader."""
    _signal_group(proc.pid, signal.SIGTERM)
    try:
        await asyncio.wait_for(_wait_exit(proc), timeout=TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"Process group {proc.pid} ignored SIGTERM, sending SIGKILL")
    # Children may survive their parent's exit; the group kill reaches them too.
    _signal_group(proc.pid, signal.SIGKILL)
    await _wait_exit(proc)


async def _drain(readers: list[asyncio.Task]) -> None:
    _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT_SECONDS)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def execute(
    command: str,
    *,
    timeout: float | None = None,
    working_dir: str | None = None,
    max_output_bytes: int = MAX_OUTPUT_BYTES,
    shell: str | None = None,
) -> ActionResult:
    """Run a command through the shell and return a structured result.

    Args:
        command: Command text handed verbatim to ``<shell> -c``
        timeout: Wall-clock limit in seconds (defaults to DEFAULT_COMMAND_TIMEOUT)
        working_dir: Directory to run in (defaults to the current directory)
        max_output_bytes: Capture bound applied to stdout and stderr independently
        shell: Shell executable (defaults to bash, falling back to sh)

    Returns:
        ActionResult. Command failures, signals and timeouts are results,
        as is a failure to spawn the shell at all.

    Raises:
        asyncio.CancelledError: after the process group has been torn down,
            when the awaiting task is cancelled.
    """
    timeout = timeout or DEFAULT_COMMAND_TIMEOUT
    shell = shell or SHELL

    logger.info(f"Executing command: {command} (timeout: {timeout}s)")
    started = time.monotonic()

    try:
        proc = await asyncio.create_subprocess_exec(
            shell,
            "-c",
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=working_dir,
            start_new_session=True,
        )
    except OSError as e:
        logger.error(f"Failed to spawn {shell}: {e}")
        return ActionResult(
            command=command,
            status=ExecStatus.SPAWN_FAILED,
            stderr=f"{type(e).__name__}: {e}",
            duration_seconds=time.monotonic() - started,
        )

    stdout = _BoundedCapture(max_output_bytes)
    stderr = _BoundedCapture(max_output_bytes)
    readers = [
        asyncio.create_task(_pump(proc.stdout, stdout)),
        asyncio.create_task(_pump(proc.stderr, stderr)),
    ]

    timed_out = False
    try:
        await asyncio.wait_for(_wait_exit(proc), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Command timed out after {timeout}s: {command}")
        timed_out = True
        await _terminate_group(proc)
    except asyncio.CancelledError:
        logger.info(f"Command cancelled: {command}")
        await _terminate_group(proc)
        await _drain(readers)
        raise

    # Backgrounded children must not outlive the action, and may still hold
    # the pipes open.
    _signal_group(proc.pid, signal.SIGKILL)
    await _drain(readers)

    duration = time.monotonic() - started
    returncode = proc.returncode

    if timed_out:
        status, exit_code, signum = ExecStatus.TIMED_OUT, None, None
    elif returncode is not None and returncode < 0:
        status, exit_code, signum = ExecStatus.SIGNALED, None, -returncode
    else:
        status, exit_code, signum = ExecStatus.EXITED, returncode, None

    result = ActionResult(
        command=command,
        status=status,
        exit_code=exit_code,
        signal=signum,
        stdout=stdout.text(),
        stderr=stderr.text(),
        duration_seconds=duration,
        stdout_truncated=stdout.truncated,
        stderr_truncated=stderr.truncated,
    )
    logger.info(
        f"Command finished: status={result.status.value} exit_code={result.exit_code} "
        f"duration={duration:.3f}s truncated={result.truncated}"
    )
    return result


async def execute_action(request: ActionRequest) -> ActionResult:
    """Run a decoded ActionRequest."""
    return await execute(
        request.command,
        timeout=request.timeout,
        working_dir=request.working_dir,
    )


def run_command(
    command: str,
    *,
    timeout: float | None = None,
    working_dir: str | None = None,
    max_output_bytes: int = MAX_OUTPUT_BYTES,
) -> ActionResult:
    """Blocking wrapper around :func:`execute` for synchronous callers."""
    return asyncio.run(
        execute(
            command,
            timeout=timeout,
            working_dir=working_dir,
            max_output_bytes=max_output_bytes,
        )
    )

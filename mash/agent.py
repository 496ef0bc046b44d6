"""Conversation loop: turns model output into one shell action at a time."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from mash.executor import execute_action
from mash.llm import BASH_TOOL, BASH_TOOL_NAME, ModelResponse, ProviderError
from mash.schemas import (
    AbortReason,
    ActionRequest,
    ActionResult,
    LoopState,
    SessionOutcome,
    Turn,
    TurnRole,
)
from mash.tasks import TaskFileStore, TaskStoreError

logger = logging.getLogger(__name__)

DEFAULT_MAX_PROTOCOL_VIOLATIONS = 3


class ModelClient(Protocol):
    async def send(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelResponse: ...


Executor = Callable[[ActionRequest], Awaitable[ActionResult]]


class EventKind(str, Enum):
    """Events emitted to the UI while a session runs."""

    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    PROTOCOL_ERROR = "protocol_error"
    TASKS_UPDATED = "tasks_updated"


@dataclass
class AgentEvent:
    kind: EventKind
    text: str = ""
    done: int | None = None
    total: int | None = None


EventCallback = Callable[[AgentEvent], None]


class ProtocolViolation(Exception):
    """Raised when a model turn does not decode to exactly one valid action."""

    pass


class _Cancelled(Exception):
    pass


def decode_action(tool_uses: list[dict[str, Any]]) -> ActionRequest:
    """Validate the model's tool-use blocks and decode the single action.

    Raises:
        ProtocolViolation: for several tool uses, an unknown tool, or a
            malformed input
    """
    if len(tool_uses) != 1:
        raise ProtocolViolation(
            f"Received {len(tool_uses)} tool calls in one turn. None were executed; "
            f"issue exactly one {BASH_TOOL_NAME} command per turn."
        )

    block = tool_uses[0]
    name = block.get("name")
    if name != BASH_TOOL_NAME:
        raise ProtocolViolation(f"Unknown tool '{name}'. The only tool is '{BASH_TOOL_NAME}'.")

    tool_input = block.get("input")
    if not isinstance(tool_input, dict):
        raise ProtocolViolation("Tool input must be an object with a 'command' string.")

    command = tool_input.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ProtocolViolation("Missing or empty 'command' string in tool input.")

    timeout = tool_input.get("timeout")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
    ):
        raise ProtocolViolation("'timeout' must be a positive number of seconds.")

    working_dir = tool_input.get("working_dir")
    if working_dir is not None and not isinstance(working_dir, str):
        raise ProtocolViolation("'working_dir' must be a string path.")

    return ActionRequest(
        command=command,
        timeout=timeout,
        working_dir=working_dir or None,
        tool_use_id=block.get("id"),
    )


def _as_blocks(payload: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(payload, str):
        return [{"type": "text", "text": payload}]
    return list(payload)


class ConversationLoop:
    """Strict state machine over one agent session.

    AWAITING_MODEL -> EXECUTING_ACTION -> AWAITING_MODEL ... -> DONE | ABORTED.
    At most one action is outstanding, and its result is appended to the
    history before the model is asked again.
    """

    def __init__(
        self,
        client: ModelClient,
        executor: Executor = execute_action,
        *,
        max_protocol_violations: int = DEFAULT_MAX_PROTOCOL_VIOLATIONS,
        max_steps: int | None = None,
        default_timeout: float | None = None,
        working_dir: str | None = None,
        task_store: TaskFileStore | None = None,
        on_event: EventCallback | None = None,
    ):
        self.client = client
        self.executor = executor
        self.max_protocol_violations = max_protocol_violations
        self.max_steps = max_steps
        self.default_timeout = default_timeout
        self.working_dir = working_dir
        self.task_store = task_store
        self.on_event = on_event

        self.state = LoopState.AWAITING_MODEL
        self.turns: list[Turn] = []
        self._pending_user: list[str] = []
        self._cancel = asyncio.Event()
        self._last_task_summary: tuple[int, int] | None = None

    # --- External controls ---

    def cancel(self) -> None:
        """Request cancellation; takes effect at the current await point."""
        self._cancel.set()

    def submit_user_message(self, text: str) -> None:
        """Queue user text to send along with the next tool result."""
        self._pending_user.append(text)

    # --- History ---

    def _append(self, role: TurnRole, payload: str | list[dict[str, Any]]) -> Turn:
        turn = Turn(index=len(self.turns), role=role, payload=payload)
        self.turns.append(turn)
        return turn

    def messages(self) -> list[dict[str, Any]]:
        """Conversation as API messages; adjacent user-side turns are merged."""
        messages: list[dict[str, Any]] = []
        for turn in self.turns:
            role = "assistant" if turn.role == TurnRole.MODEL else "user"
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(_as_blocks(turn.payload))
            else:
                messages.append({"role": role, "content": _as_blocks(turn.payload)})
        return messages

    # --- Helpers ---

    def _emit(self, kind: EventKind, text: str = "", **fields: Any) -> None:
        if self.on_event is not None:
            self.on_event(AgentEvent(kind=kind, text=text, **fields))

    async def _await_or_cancel(self, awaitable: Awaitable[Any]) -> Any:
        """Await work unless cancel() fires first; then cancel the work and wait for teardown."""
        task = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            cancel_wait.cancel()

        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise _Cancelled()

    def _abort(self, reason: AbortReason, detail: str) -> SessionOutcome:
        self.state = LoopState.ABORTED
        logger.warning(f"Session aborted ({reason.value}): {detail}")
        return SessionOutcome(
            state=LoopState.ABORTED,
            abort_reason=reason,
            detail=detail,
            turns=list(self.turns),
        )

    def _prepare(self, request: ActionRequest) -> ActionRequest:
        return request.model_copy(
            update={
                "timeout": request.timeout or self.default_timeout,
                "working_dir": request.working_dir or self.working_dir,
            }
        )

    def _drain_pending_user(self) -> list[dict[str, Any]]:
        pending, self._pending_user = self._pending_user, []
        if not pending:
            return []
        return [{"type": "text", "text": "\n\n".join(pending)}]

    def _report_tasks(self) -> None:
        if self.task_store is None:
            return
        try:
            summary = self.task_store.summary()
        except TaskStoreError as e:
            logger.warning(f"Task file unreadable: {e}")
            return
        if summary is not None and summary != self._last_task_summary:
            self._last_task_summary = summary
            done, total = summary
            self._emit(EventKind.TASKS_UPDATED, done=done, total=total)

    # --- Main loop ---

    async def run(self, goal: str) -> SessionOutcome:
        """Run the session until the model answers without an action, or abort."""
        self._append(TurnRole.USER, goal)
        violations = 0
        steps = 0

        try:
            while True:
                if self._cancel.is_set():
                    return self._abort(AbortReason.CANCELLED, "Cancelled while awaiting the model")

                self.state = LoopState.AWAITING_MODEL
                try:
                    response: ModelResponse = await self._await_or_cancel(
                        self.client.send(self.messages(), [BASH_TOOL])
                    )
                except _Cancelled:
                    return self._abort(AbortReason.CANCELLED, "Cancelled while awaiting the model")
                except ProviderError as e:
                    return self._abort(AbortReason.PROVIDER_FAULT, str(e))

                self._append(TurnRole.MODEL, response.content)
                text = response.text()
                if text:
                    self._emit(EventKind.TEXT, text)

                tool_uses = response.tool_uses()
                if not tool_uses:
                    self.state = LoopState.DONE
                    logger.info(f"Session done after {steps} action(s)")
                    return SessionOutcome(
                        state=LoopState.DONE,
                        final_answer=text,
                        turns=list(self.turns),
                    )

                try:
                    request = decode_action(tool_uses)
                except ProtocolViolation as e:
                    violations += 1
                    logger.warning(f"Protocol violation {violations}/{self.max_protocol_violations}: {e}")
                    self._append(
                        TurnRole.TOOL_RESULT,
                        [
                            {
                                "type": "tool_result",
                                "tool_use_id": block.get("id", ""),
                                "content": f"Error: {e}",
                                "is_error": True,
                            }
                            for block in tool_uses
                        ],
                    )
                    self._emit(EventKind.PROTOCOL_ERROR, str(e))
                    if violations >= self.max_protocol_violations:
                        return self._abort(AbortReason.PROTOCOL_VIOLATION, str(e))
                    continue

                violations = 0
                if self.max_steps is not None and steps >= self.max_steps:
                    return self._abort(
                        AbortReason.STEP_BUDGET_EXHAUSTED,
                        f"Reached the limit of {self.max_steps} actions",
                    )
                steps += 1

                request = self._prepare(request)
                self.state = LoopState.EXECUTING_ACTION
                self._emit(EventKind.TOOL_CALL, request.command)

                try:
                    result: ActionResult = await self._await_or_cancel(self.executor(request))
                except _Cancelled:
                    return self._abort(AbortReason.CANCELLED, "Cancelled while executing an action")

                rendered = result.render()
                blocks: list[dict[str, Any]] = [
                    {
                        "type": "tool_result",
                        "tool_use_id": request.tool_use_id or "",
                        "content": rendered,
                        "is_error": result.is_error,
                    }
                ]
                blocks.extend(self._drain_pending_user())
                self._append(TurnRole.TOOL_RESULT, blocks)

                self._emit(EventKind.TOOL_RESULT, rendered.splitlines()[0] if rendered else "")
                self._report_tasks()
        except asyncio.CancelledError:
            self.state = LoopState.ABORTED
            raise

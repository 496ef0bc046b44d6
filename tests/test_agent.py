"""Tests for the conversation loop."""

import asyncio

import pytest

from conftest import ScriptedClient, action_reply, bash_call, text_reply
from mash.agent import ConversationLoop, EventKind, ProtocolViolation, decode_action
from mash.llm import ProviderError
from mash.schemas import AbortReason, ActionResult, ExecStatus, LoopState, TurnRole
from mash.tasks import TaskFileStore


class RecordingExecutor:
    """Executor double that records requests and checks they never overlap."""

    def __init__(self, stdout="ok\n", exit_code=0, hook=None):
        self.requests = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.stdout = stdout
        self.exit_code = exit_code
        self.hook = hook

    async def __call__(self, request):
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.hook is not None:
                await self.hook(request)
            await asyncio.sleep(0)
            return ActionResult(
                command=request.command,
                status=ExecStatus.EXITED,
                exit_code=self.exit_code,
                stdout=self.stdout,
            )
        finally:
            self.in_flight -= 1


def _tool_results(turn):
    return [block for block in turn.payload if block.get("type") == "tool_result"]


class TestDecodeAction:
    """Tests for decode_action()."""

    def test_single_bash_call(self):
        request = decode_action([bash_call("ls -la", "toolu_9", timeout=30, working_dir="/tmp")])

        assert request.command == "ls -la"
        assert request.timeout == 30
        assert request.working_dir == "/tmp"
        assert request.tool_use_id == "toolu_9"

    def test_multiple_calls(self):
        with pytest.raises(ProtocolViolation, match="2 tool calls"):
            decode_action([bash_call("ls", "a"), bash_call("pwd", "b")])

    def test_unknown_tool(self):
        with pytest.raises(ProtocolViolation, match="Unknown tool"):
            decode_action([{"type": "tool_use", "id": "a", "name": "edit", "input": {}}])

    @pytest.mark.parametrize("tool_input", [{}, {"command": ""}, {"command": "   "}, {"command": 5}, "ls"])
    def test_bad_command(self, tool_input):
        with pytest.raises(ProtocolViolation):
            decode_action([{"type": "tool_use", "id": "a", "name": "bash", "input": tool_input}])

    @pytest.mark.parametrize("timeout", [0, -5, "10", True])
    def test_bad_timeout(self, timeout):
        with pytest.raises(ProtocolViolation, match="timeout"):
            decode_action([bash_call("ls", timeout=timeout)])

    def test_bad_working_dir(self):
        with pytest.raises(ProtocolViolation, match="working_dir"):
            decode_action([bash_call("ls", working_dir=["/tmp"])])


class TestConversationLoop:
    """Tests for ConversationLoop.run()."""

    def test_answer_without_action_is_done(self):
        """Test a reply with no action ends the session with its exact text."""
        client = ScriptedClient([text_reply("All finished.")])
        executor = RecordingExecutor()
        loop = ConversationLoop(client, executor)

        outcome = asyncio.run(loop.run("say hi"))

        assert outcome.state == LoopState.DONE
        assert outcome.final_answer == "All finished."
        assert outcome.abort_reason is None
        assert executor.requests == []
        assert loop.state == LoopState.DONE
        assert [t.role for t in outcome.turns] == [TurnRole.USER, TurnRole.MODEL]

    def test_single_action_then_done(self):
        client = ScriptedClient([action_reply(bash_call("ls", "toolu_1")), text_reply("Done.")])
        executor = RecordingExecutor(stdout="a.txt\n")
        loop = ConversationLoop(client, executor)

        outcome = asyncio.run(loop.run("list files"))

        assert outcome.state == LoopState.DONE
        assert [r.command for r in executor.requests] == ["ls"]
        result_turn = outcome.turns[2]
        assert result_turn.role == TurnRole.TOOL_RESULT
        assert _tool_results(result_turn) == [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "a.txt\n", "is_error": False}
        ]

    def test_result_is_in_history_before_next_request(self):
        """Test each result is sent to the model before the next action runs."""
        client = ScriptedClient(
            [
                action_reply(bash_call("echo 1", "t1")),
                action_reply(bash_call("echo 2", "t2")),
                text_reply("Done."),
            ]
        )
        executor = RecordingExecutor()
        loop = ConversationLoop(client, executor)

        asyncio.run(loop.run("count"))

        assert executor.max_in_flight == 1
        assert [r.command for r in executor.requests] == ["echo 1", "echo 2"]
        second_request = client.requests[1]["messages"]
        assert second_request[-1]["role"] == "user"
        assert second_request[-1]["content"][0]["tool_use_id"] == "t1"
        third_request = client.requests[2]["messages"]
        assert third_request[-1]["content"][0]["tool_use_id"] == "t2"

    def test_failed_command_is_error_result_not_abort(self):
        client = ScriptedClient([action_reply(bash_call("false")), text_reply("Noted.")])
        loop = ConversationLoop(client, RecordingExecutor(stdout="", exit_code=1))

        outcome = asyncio.run(loop.run("try"))

        assert outcome.state == LoopState.DONE
        block = _tool_results(outcome.turns[2])[0]
        assert block["is_error"] is True
        assert "[exit code: 1]" in block["content"]

    def test_multiple_actions_execute_nothing(self):
        """Test several tool calls in one turn are rejected as a whole."""
        client = ScriptedClient(
            [
                action_reply(bash_call("ls", "a"), bash_call("pwd", "b")),
                text_reply("Sorry."),
            ]
        )
        executor = RecordingExecutor()
        events = []
        loop = ConversationLoop(client, executor, on_event=events.append)

        outcome = asyncio.run(loop.run("go"))

        assert outcome.state == LoopState.DONE
        assert executor.requests == []
        blocks = _tool_results(outcome.turns[2])
        assert [b["tool_use_id"] for b in blocks] == ["a", "b"]
        assert all(b["is_error"] for b in blocks)
        assert any(e.kind == EventKind.PROTOCOL_ERROR for e in events)

    def test_repeated_violations_abort(self):
        bad = action_reply(bash_call("ls", "a"), bash_call("pwd", "b"))
        client = ScriptedClient([bad, bad, bad])
        executor = RecordingExecutor()
        loop = ConversationLoop(client, executor, max_protocol_violations=3)

        outcome = asyncio.run(loop.run("go"))

        assert outcome.state == LoopState.ABORTED
        assert outcome.abort_reason == AbortReason.PROTOCOL_VIOLATION
        assert executor.requests == []

    def test_valid_action_resets_violation_count(self):
        bad = action_reply(bash_call("ls", "a"), bash_call("pwd", "b"))
        client = ScriptedClient(
            [bad, action_reply(bash_call("ls")), bad, text_reply("Done.")]
        )
        loop = ConversationLoop(client, RecordingExecutor(), max_protocol_violations=2)

        outcome = asyncio.run(loop.run("go"))

        assert outcome.state == LoopState.DONE

    def test_provider_fault_aborts(self):
        client = ScriptedClient([ProviderError("API error (401): unauthorized")])
        loop = ConversationLoop(client, RecordingExecutor())

        outcome = asyncio.run(loop.run("go"))

        assert outcome.state == LoopState.ABORTED
        assert outcome.abort_reason == AbortReason.PROVIDER_FAULT
        assert "401" in outcome.detail

    def test_step_budget(self):
        client = ScriptedClient([action_reply(bash_call("ls")), action_reply(bash_call("pwd"))])
        executor = RecordingExecutor()
        loop = ConversationLoop(client, executor, max_steps=1)

        outcome = asyncio.run(loop.run("go"))

        assert outcome.state == LoopState.ABORTED
        assert outcome.abort_reason == AbortReason.STEP_BUDGET_EXHAUSTED
        assert [r.command for r in executor.requests] == ["ls"]

    def test_defaults_applied_to_request(self):
        client = ScriptedClient(
            [
                action_reply(bash_call("ls", "a")),
                action_reply(bash_call("pwd", "b", timeout=3, working_dir="/var")),
                text_reply("Done."),
            ]
        )
        executor = RecordingExecutor()
        loop = ConversationLoop(client, executor, default_timeout=7, working_dir="/tmp")

        asyncio.run(loop.run("go"))

        first, second = executor.requests
        assert (first.timeout, first.working_dir) == (7, "/tmp")
        assert (second.timeout, second.working_dir) == (3, "/var")

    def test_pending_user_message_follows_tool_result(self):
        client = ScriptedClient([action_reply(bash_call("ls", "t1")), text_reply("Done.")])
        holder = {}

        async def interject(request):
            holder["loop"].submit_user_message("Also check the README.")

        loop = ConversationLoop(client, RecordingExecutor(hook=interject))
        holder["loop"] = loop

        asyncio.run(loop.run("go"))

        last = client.requests[1]["messages"][-1]
        assert last["role"] == "user"
        assert [b["type"] for b in last["content"]] == ["tool_result", "text"]
        assert last["content"][1]["text"] == "Also check the README."

    def test_messages_alternate_roles(self):
        bad = action_reply(bash_call("ls", "a"), bash_call("pwd", "b"))
        client = ScriptedClient([action_reply(bash_call("ls")), bad, text_reply("Done.")])
        loop = ConversationLoop(client, RecordingExecutor())

        asyncio.run(loop.run("go"))

        roles = [m["role"] for m in loop.messages()]
        assert roles == ["user", "assistant", "user", "assistant", "user", "assistant"]

    def test_events(self):
        client = ScriptedClient(
            [action_reply(bash_call("ls"), text="Looking."), text_reply("Done.")]
        )
        events = []
        loop = ConversationLoop(client, RecordingExecutor(stdout="a\nb\n"), on_event=events.append)

        asyncio.run(loop.run("go"))

        assert [(e.kind, e.text) for e in events] == [
            (EventKind.TEXT, "Looking."),
            (EventKind.TOOL_CALL, "ls"),
            (EventKind.TOOL_RESULT, "a"),
            (EventKind.TEXT, "Done."),
        ]

    def test_task_progress_events(self, task_file):
        store = TaskFileStore(task_file, title="demo")

        async def touch_tasks(request):
            if request.command == "create":
                store.create(["A", "B"])
            else:
                store.complete(1)

        client = ScriptedClient(
            [
                action_reply(bash_call("create", "t1")),
                action_reply(bash_call("done", "t2")),
                text_reply("Done."),
            ]
        )
        events = []
        loop = ConversationLoop(
            client,
            RecordingExecutor(hook=touch_tasks),
            task_store=store,
            on_event=events.append,
        )

        asyncio.run(loop.run("go"))

        progress = [(e.done, e.total) for e in events if e.kind == EventKind.TASKS_UPDATED]
        assert progress == [(0, 2), (1, 2)]

    @pytest.mark.parametrize(
        "corrupt",
        [
            lambda path: path.write_text("- [ ] 0. zero\n"),
            lambda path: path.write_bytes(b"\xff\xfe garbage"),
            lambda path: path.mkdir(),
        ],
        ids=["ordinal-zero", "invalid-utf8", "directory"],
    )
    def test_unreadable_task_file_does_not_end_session(self, task_file, corrupt):
        """Test a task file the model wrote badly is reported, not fatal."""

        async def write_bad_file(request):
            corrupt(task_file)

        client = ScriptedClient([action_reply(bash_call("edit tasks")), text_reply("Done.")])
        events = []
        loop = ConversationLoop(
            client,
            RecordingExecutor(hook=write_bad_file),
            task_store=TaskFileStore(task_file, title="demo"),
            on_event=events.append,
        )

        outcome = asyncio.run(loop.run("go"))

        assert outcome.state == LoopState.DONE
        assert outcome.final_answer == "Done."
        assert not any(e.kind == EventKind.TASKS_UPDATED for e in events)

    def test_real_executor(self):
        client = ScriptedClient([action_reply(bash_call("echo hi", "t1")), text_reply("Done.")])
        loop = ConversationLoop(client)

        outcome = asyncio.run(loop.run("go"))

        block = _tool_results(outcome.turns[2])[0]
        assert block["content"] == "hi\n"
        assert block["is_error"] is False


class TestCancellation:
    """Tests for ConversationLoop.cancel()."""

    def test_cancel_while_executing(self):
        cancelled = asyncio.Event()
        holder = {}

        async def hang(request):
            holder["loop"].cancel()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        client = ScriptedClient([action_reply(bash_call("sleep 30"))])
        loop = ConversationLoop(client, RecordingExecutor(hook=hang))
        holder["loop"] = loop

        outcome = asyncio.run(loop.run("go"))

        assert outcome.state == LoopState.ABORTED
        assert outcome.abort_reason == AbortReason.CANCELLED
        assert cancelled.is_set()
        assert loop.state == LoopState.ABORTED

    def test_cancel_while_awaiting_model(self):
        holder = {}

        async def slow_reply():
            holder["loop"].cancel()
            await asyncio.sleep(30)

        client = ScriptedClient([slow_reply])
        executor = RecordingExecutor()
        loop = ConversationLoop(client, executor)
        holder["loop"] = loop

        outcome = asyncio.run(loop.run("go"))

        assert outcome.state == LoopState.ABORTED
        assert outcome.abort_reason == AbortReason.CANCELLED
        assert executor.requests == []

    def test_cancel_before_run(self):
        client = ScriptedClient([text_reply("never")])
        loop = ConversationLoop(client, RecordingExecutor())
        loop.cancel()

        outcome = asyncio.run(loop.run("go"))

        assert outcome.abort_reason == AbortReason.CANCELLED
        assert client.requests == []

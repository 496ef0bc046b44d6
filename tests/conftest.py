"""Pytest configuration and fixtures for mash tests."""

from pathlib import Path

import pytest

from mash.llm import ModelResponse, ProviderError
from mash.schemas import CapabilityCallResponse, CapabilityDescriptor


class FakeProvider:
    """In-process capability provider with scripted behavior."""

    def __init__(self, name, tools=None, handler=None):
        self.name = name
        self.tools = tuple(
            CapabilityDescriptor(
                server=name,
                name=tool["name"],
                description=tool.get("description"),
                input_schema=tool.get("input_schema", {}),
            )
            for tool in (tools or [{"name": "echo", "description": "Echo the input"}])
        )
        self.handler = handler
        self.calls = []
        self.closed = False

    async def call_tool(self, tool, arguments):
        self.calls.append((tool, arguments))
        if self.handler is not None:
            return await self.handler(tool, arguments)
        return CapabilityCallResponse(
            server=self.name,
            tool=tool,
            content=f"{tool}:{arguments}",
        )

    async def close(self):
        self.closed = True


class ScriptedClient:
    """Model client that replays a fixed list of responses."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def send(self, messages, tools=None):
        self.requests.append({"messages": messages, "tools": tools})
        item = self.responses.pop(0)
        if isinstance(item, ProviderError):
            raise item
        if callable(item):
            return await item()
        return item


def text_reply(text):
    return ModelResponse(content=[{"type": "text", "text": text}], stop_reason="end_turn")


def bash_call(command, tool_id="toolu_1", **extra):
    return {"type": "tool_use", "id": tool_id, "name": "bash", "input": {"command": command, **extra}}


def action_reply(*tool_uses, text=""):
    content = [{"type": "text", "text": text}] if text else []
    content.extend(tool_uses)
    return ModelResponse(content=content, stop_reason="tool_use")


@pytest.fixture
def tmp_workspace(tmp_path: Path) -> Path:
    """Create a temporary workspace directory for tests."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def task_file(tmp_workspace: Path) -> Path:
    """Path for a task file that does not exist yet."""
    return tmp_workspace / "tasks.md"


@pytest.fixture
def mash_home(tmp_path: Path, monkeypatch) -> Path:
    """Point MASH_HOME at an empty temporary directory."""
    home = tmp_path / "mash-home"
    home.mkdir()
    monkeypatch.setenv("MASH_HOME", str(home))
    return home

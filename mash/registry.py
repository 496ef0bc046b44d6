"""Registry of connected capability providers (MCP servers over stdio)."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Protocol

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from mash.config import McpServerConfig, load_mcp_config
from mash.schemas import CapabilityCallResponse, CapabilityDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0  # seconds
DEFAULT_CALL_TIMEOUT = 60.0  # seconds

CLIENT_NAME = "mash"


class RegistryError(Exception):
    """Base class for registry lookup and call failures."""

    pass


class UnknownProviderError(RegistryError):
    """Raised when no connected provider has the requested name."""

    pass


class UnknownCapabilityError(RegistryError):
    """Raised when a provider does not offer the requested capability."""

    pass


class CapabilityTimeoutError(RegistryError):
    """Raised when a provider call exceeds its time budget."""

    pass


class ProviderCallError(RegistryError):
    """Raised when the provider transport fails during a call."""

    pass


class ProviderConnectError(RegistryError):
    """Raised when a provider cannot be started or initialized."""

    pass


class CapabilityProvider(Protocol):
    """A connected provider the proxy can forward calls to."""

    name: str
    tools: tuple[CapabilityDescriptor, ...]

    async def call_tool(self, tool: str, arguments: dict[str, Any]) -> CapabilityCallResponse: ...

    async def close(self) -> None: ...


def normalize_call_result(server: str, tool: str, result: Any) -> CapabilityCallResponse:
    """Translate an MCP ``CallToolResult`` into the proxy's response shape."""
    texts = []
    for block in result.content:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            texts.append(block.text)
        elif block_type in ("image", "audio"):
            texts.append(f"[{block_type}: {getattr(block, 'mimeType', 'unknown')}]")
        elif block_type == "resource":
            resource = block.resource
            texts.append(getattr(resource, "text", None) or f"[resource: {resource.uri}]")

    if texts:
        content = "\n".join(texts)
    else:
        content = json.dumps(result.model_dump(mode="json", exclude_none=True), indent=2)

    return CapabilityCallResponse(
        server=server,
        tool=tool,
        is_error=bool(result.isError),
        content=content,
        structured=getattr(result, "structuredContent", None),
    )


class McpProvider:
    """Stdio MCP server connection owned by a dedicated task.

    The ``mcp`` client context managers must be entered and exited by the
    same task, so one background task holds the session open until
    :meth:`close` is called. Calls from any task go through the session,
    which multiplexes concurrent requests by id.
    """

    def __init__(
        self,
        name: str,
        config: McpServerConfig,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        self.name = name
        self.config = config
        self.connect_timeout = connect_timeout
        self.tools: tuple[CapabilityDescriptor, ...] = ()
        self._session: ClientSession | None = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Launch the server process, initialize the session and fetch tools."""
        self._task = asyncio.create_task(self._run(), name=f"mcp-provider-{self.name}")
        ready = asyncio.create_task(self._ready.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, self._task},
                timeout=self.connect_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready.cancel()

        if self._task in done:
            exc = self._task.exception()
            raise ProviderConnectError(f"MCP server '{self.name}' failed to start: {exc}") from exc
        if not self._ready.is_set():
            await self.close()
            raise ProviderConnectError(
                f"MCP server '{self.name}' did not initialize within {self.connect_timeout}s"
            )

    async def _run(self) -> None:
        params = StdioServerParameters(
            command=self.config.command,
            args=self.config.args,
            env={**os.environ, **self.config.env},
        )
        with open(os.devnull, "w") as errlog:
            async with stdio_client(params, errlog=errlog) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    listing = await session.list_tools()
                    self.tools = tuple(
                        CapabilityDescriptor(
                            server=self.name,
                            name=tool.name,
                            description=tool.description,
                            input_schema=tool.inputSchema or {},
                        )
                        for tool in listing.tools
                    )
                    self._session = session
                    self._ready.set()
                    logger.info(f"Connected MCP server '{self.name}' ({len(self.tools)} tools)")
                    try:
                        await self._stop.wait()
                    finally:
                        self._session = None

    async def call_tool(self, tool: str, arguments: dict[str, Any]) -> CapabilityCallResponse:
        session = self._session
        if session is None:
            raise ProviderCallError(f"MCP server '{self.name}' is not connected")
        try:
            result = await session.call_tool(tool, arguments)
        except Exception as e:
            raise ProviderCallError(f"MCP server '{self.name}' failed calling '{tool}': {e}") from e
        return normalize_call_result(self.name, tool, result)

    async def close(self) -> None:
        self._stop.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        except Exception as e:
            logger.warning(f"MCP server '{self.name}' shut down with error: {e}")
        logger.info(f"Disconnected MCP server '{self.name}'")


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of the connected providers at one registry version."""

    version: int = 0
    providers: Mapping[str, CapabilityProvider] = field(
        default_factory=lambda: MappingProxyType({})
    )
    tools: Mapping[str, tuple[CapabilityDescriptor, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def provider_names(self) -> list[str]:
        return sorted(self.providers)

    def capabilities(self) -> list[CapabilityDescriptor]:
        """All capabilities, sorted by provider then name."""
        result = []
        for server in self.provider_names():
            result.extend(sorted(self.tools[server], key=lambda t: t.name))
        return result

    def lookup(self, server: str, tool: str) -> CapabilityProvider:
        provider = self.providers.get(server)
        if provider is None:
            raise UnknownProviderError(f"MCP server '{server}' not connected")
        if not any(t.name == tool for t in self.tools[server]):
            raise UnknownCapabilityError(f"MCP server '{server}' has no tool '{tool}'")
        return provider


class ProviderRegistry:
    """Copy-on-write registry of connected providers.

    Readers take the current :class:`RegistrySnapshot` without locking.
    Connect and disconnect build a new snapshot under a writer lock and
    publish it with a single reference swap.
    """

    def __init__(
        self,
        configs: Mapping[str, McpServerConfig] | None = None,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        self.configs: dict[str, McpServerConfig] = dict(configs or {})
        self.connect_timeout = connect_timeout
        self._snapshot = RegistrySnapshot()
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, path: Path | None = None, **kwargs: Any) -> ProviderRegistry:
        return cls(load_mcp_config(path), **kwargs)

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def _publish(self, providers: dict[str, CapabilityProvider]) -> RegistrySnapshot:
        snapshot = RegistrySnapshot(
            version=self._snapshot.version + 1,
            providers=MappingProxyType(dict(providers)),
            tools=MappingProxyType({name: tuple(p.tools) for name, p in providers.items()}),
        )
        self._snapshot = snapshot
        return snapshot

    async def register(self, provider: CapabilityProvider) -> None:
        """Add an already connected provider, replacing one with the same name."""
        async with self._write_lock:
            providers = dict(self._snapshot.providers)
            previous = providers.get(provider.name)
            providers[provider.name] = provider
            self._publish(providers)
        if previous is not None and previous is not provider:
            await previous.close()

    async def connect(self, name: str) -> CapabilityProvider:
        config = self.configs.get(name)
        if config is None:
            raise UnknownProviderError(f"MCP server '{name}' not found in config")
        if config.disabled:
            raise ProviderConnectError(f"MCP server '{name}' is disabled")

        provider = McpProvider(name, config, connect_timeout=self.connect_timeout)
        await provider.start()
        await self.register(provider)
        return provider

    async def connect_all(self) -> dict[str, str | None]:
        """Connect every enabled provider concurrently.

        Returns:
            Mapping of provider name to an error message, or None on success
        """
        names = sorted(name for name, cfg in self.configs.items() if not cfg.disabled)
        results = await asyncio.gather(
            *(self.connect(name) for name in names),
            return_exceptions=True,
        )
        status: dict[str, str | None] = {}
        for name, outcome in zip(names, results):
            if isinstance(outcome, BaseException):
                logger.warning(f"Could not connect MCP server '{name}': {outcome}")
                status[name] = str(outcome)
            else:
                status[name] = None
        return status

    async def disconnect(self, name: str) -> None:
        async with self._write_lock:
            providers = dict(self._snapshot.providers)
            provider = providers.pop(name, None)
            if provider is None:
                raise UnknownProviderError(f"MCP server '{name}' not connected")
            self._publish(providers)
        await provider.close()

    async def close(self) -> None:
        async with self._write_lock:
            providers = list(self._snapshot.providers.values())
            self._publish({})
        for provider in providers:
            await provider.close()

    async def call(
        self,
        server: str,
        tool: str,
        arguments: dict[str, Any],
        *,
        timeout: float = DEFAULT_CALL_TIMEOUT,
    ) -> CapabilityCallResponse:
        """Forward one capability call to its provider."""
        provider = self._snapshot.lookup(server, tool)
        try:
            return await asyncio.wait_for(provider.call_tool(tool, arguments), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CapabilityTimeoutError(
                f"Call to '{server}/{tool}' timed out after {timeout}s"
            ) from e


def _format_params(input_schema: dict[str, Any]) -> list[str]:
    properties = input_schema.get("properties")
    if not isinstance(properties, dict):
        return []
    required = set(input_schema.get("required") or [])
    lines = []
    for name in sorted(properties):
        schema = properties[name] if isinstance(properties[name], dict) else {}
        ptype = schema.get("type", "any")
        if isinstance(ptype, list):
            ptype = "|".join(str(t) for t in ptype)
        marker = " *" if name in required else ""
        lines.append(f"    {name}: {ptype}{marker}")
    return lines


def format_capability_listing(snapshot: RegistrySnapshot, base_url: str) -> str:
    """Render the capability listing embedded into the system prompt.

    Output depends only on the snapshot contents and the base URL, with
    providers and tools in sorted order, so the same registry state always
    yields the same text.
    """
    base = base_url.rstrip("/")
    blocks = []
    for tool in snapshot.capabilities():
        summary = " ".join((tool.description or "(no description)").splitlines()[:3]).strip()
        curl = (
            f"curl -s -X POST '{base}/mcp/call' -H 'Content-Type: application/json' "
            f"-d '{{\"server\":\"{tool.server}\",\"tool\":\"{tool.name}\",\"arguments\":{{...}}}}'"
        )
        lines = [f"- **mcp__{tool.server}__{tool.name}**", f"  description: {summary}"]
        params = _format_params(tool.input_schema)
        if params:
            lines.append("  params:")
            lines.extend(params)
        lines.append(f"  request: {curl}")
        blocks.append("\n".join(lines))

    if not blocks:
        return ""
    header = (
        "\n\n## External Tools (call with curl through bash)\n"
        "To use one of these tools, run a curl command with bash that POSTs to the "
        "/mcp/call endpoint. Parameters marked * are required.\n\n"
    )
    return header + "\n\n".join(blocks)

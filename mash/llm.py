"""Model provider client for the Anthropic Messages API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from mash.config import ApiConfig

logger = logging.getLogger(__name__)

API_VERSION = "2023-06-01"

# Retry policy for transient failures
MAX_RETRIES = 3
BACKOFF_BASE = 1.0  # seconds, doubled per attempt
BACKOFF_MAX = 8.0

REQUEST_TIMEOUT = 600.0  # seconds

TRANSIENT_STATUS = {408, 409, 429, 500, 502, 503, 504, 529}

BASH_TOOL_NAME = "bash"

BASH_TOOL = {
    "name": BASH_TOOL_NAME,
    "description": (
        "Run a shell command with bash and return its stdout, stderr and exit status. "
        "This is the only tool: use it for reading and editing files, searching, "
        "managing the task list and calling external tools."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The bash command to execute",
            },
            "timeout": {
                "type": "integer",
                "description": "Timeout in seconds. Default 120.",
            },
            "working_dir": {
                "type": "string",
                "description": "Directory to run the command in. Defaults to the session directory.",
            },
        },
        "required": ["command"],
    },
}


class ProviderError(Exception):
    """Raised when the model backend cannot produce a usable response."""

    def __init__(self, message: str, *, transient: bool = False):
        super().__init__(message)
        self.transient = transient


@dataclass
class ModelResponse:
    """One assistant message returned by the model."""

    content: list[dict[str, Any]] = field(default_factory=list)
    stop_reason: str | None = None

    def text(self) -> str:
        return "".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )

    def tool_uses(self) -> list[dict[str, Any]]:
        return [block for block in self.content if block.get("type") == "tool_use"]


def _parse_response(payload: Any) -> ModelResponse:
    if not isinstance(payload, dict) or not isinstance(payload.get("content"), list):
        raise ProviderError(f"Malformed model response: {str(payload)[:200]}")
    blocks = [block for block in payload["content"] if isinstance(block, dict)]
    return ModelResponse(content=blocks, stop_reason=payload.get("stop_reason"))


class AnthropicClient:
    """Sends the conversation to ``{base_url}/v1/messages`` with bounded retry."""

    def __init__(
        self,
        config: ApiConfig,
        system: str,
        *,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.system = system
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/v1/messages"

    async def _post_once(self, body: dict[str, Any]) -> ModelResponse:
        try:
            response = await self._client.post(
                self.url,
                json=body,
                headers={
                    "x-api-key": self.config.api_key,
                    "anthropic-version": API_VERSION,
                    "content-type": "application/json",
                },
            )
        except httpx.TransportError as e:
            raise ProviderError(f"Model backend unreachable: {e}", transient=True) from e

        if response.status_code >= 400:
            raise ProviderError(
                f"API error ({response.status_code}): {response.text[:500]}",
                transient=response.status_code in TRANSIENT_STATUS,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f"Model response is not JSON: {response.text[:200]}") from e
        return _parse_response(payload)

    async def send(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelResponse:
        """Send the conversation and return the model's next message.

        Transient failures (network errors, 429 and 5xx) are retried with
        exponential backoff up to ``max_retries`` times; anything else, or
        the last transient failure, is raised as ProviderError.
        """
        body = {
            "model": self.config.model,
            "system": self.system,
            "max_tokens": self.config.max_tokens,
            "messages": messages,
            "tools": tools if tools is not None else [BASH_TOOL],
        }

        attempt = 0
        while True:
            try:
                return await self._post_once(body)
            except ProviderError as e:
                if not e.transient or attempt >= self.max_retries:
                    logger.error(f"Model request failed after {attempt + 1} attempt(s): {e}")
                    raise
                delay = min(self.backoff_base * (2 ** attempt), BACKOFF_MAX)
                attempt += 1
                logger.warning(
                    f"Model request failed ({e}), retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    async def aclose(self) -> None:
        await self._client.aclose()

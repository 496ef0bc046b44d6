"""Pydantic schemas for mash request/response contracts."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class ExecStatus(str, Enum):
    """How a shell action ended."""

    EXITED = "exited"
    SIGNALED = "signaled"
    TIMED_OUT = "timed_out"
    SPAWN_FAILED = "spawn_failed"


class TurnRole(str, Enum):
    """Who produced a conversation turn."""

    USER = "user"
    MODEL = "model"
    TOOL_RESULT = "tool_result"


class LoopState(str, Enum):
    """Conversation loop states."""

    AWAITING_MODEL = "awaiting_model"
    EXECUTING_ACTION = "executing_action"
    DONE = "done"
    ABORTED = "aborted"


class AbortReason(str, Enum):
    """Why a session ended without a final answer."""

    PROVIDER_FAULT = "provider_fault"
    CANCELLED = "cancelled"
    PROTOCOL_VIOLATION = "protocol_violation"
    STEP_BUDGET_EXHAUSTED = "step_budget_exhausted"


class ProxyErrorCode(str, Enum):
    """Error kinds returned by the capability proxy."""

    UNKNOWN_PROVIDER = "unknown_provider"
    UNKNOWN_CAPABILITY = "unknown_capability"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    INTERNAL_ERROR = "internal_error"


# --- Command Executor ---


class ActionRequest(BaseModel):
    """A single decoded intent to run one shell command."""

    command: str = Field(..., min_length=1)
    working_dir: str | None = None
    timeout: float | None = Field(default=None, gt=0)
    tool_use_id: str | None = None


class ActionResult(BaseModel):
    """Outcome of one shell action."""

    command: str
    status: ExecStatus
    exit_code: int | None = None
    signal: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated

    @property
    def is_error(self) -> bool:
        """True when the action did not exit cleanly with status 0."""
        return not (self.status == ExecStatus.EXITED and self.exit_code == 0)

    def render(self) -> str:
        """Render the result as the text fed back to the model."""
        parts: list[str] = []
        if self.stdout:
            parts.append(self.stdout)
            if self.stdout_truncated:
                parts.append("[stdout truncated]")
        if self.stderr:
            parts.append("[stderr]\n" + self.stderr)
            if self.stderr_truncated:
                parts.append("[stderr truncated]")

        if self.status == ExecStatus.EXITED and self.exit_code != 0:
            parts.append(f"[exit code: {self.exit_code}]")
        elif self.status == ExecStatus.SIGNALED:
            parts.append(f"[terminated by signal {self.signal}]")
        elif self.status == ExecStatus.TIMED_OUT:
            parts.append(f"[timed out after {self.duration_seconds:.1f}s]")
        elif self.status == ExecStatus.SPAWN_FAILED:
            parts.append("[failed to start command]")

        text = "\n".join(parts)
        return text if text else "(no output)"


# --- Conversation ---


class Turn(BaseModel):
    """One entry in the append-only conversation history."""

    index: int = Field(..., ge=0)
    role: TurnRole
    payload: str | list[dict[str, Any]]


class SessionOutcome(BaseModel):
    """Terminal result of a conversation session."""

    state: LoopState
    final_answer: str | None = None
    abort_reason: AbortReason | None = None
    detail: str | None = None
    turns: list[Turn] = Field(default_factory=list)


# --- Task File ---


class TaskEntry(BaseModel):
    """A single checklist line of the task file."""

    ordinal: int = Field(..., ge=1)
    description: str
    completed: bool = False


# --- Capability Proxy ---


class CapabilityDescriptor(BaseModel):
    """One capability advertised by a connected provider."""

    server: str
    name: str
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=dict)


class CapabilityCallRequest(BaseModel):
    """Request body for ``POST /mcp/call``."""

    server: str = Field(..., min_length=1, description="Provider identifier")
    tool: str = Field(..., min_length=1, description="Capability name")
    arguments: dict[str, Any] = Field(
        default_factory=dict,
        description="Arguments forwarded to the capability",
    )


class CapabilityCallResponse(BaseModel):
    """Normalized result of a forwarded capability call."""

    server: str
    tool: str
    is_error: bool = False
    content: str = ""
    structured: Any | None = None


class ErrorResponse(BaseModel):
    """Error response for failed proxy requests."""

    detail: str
    error_code: ProxyErrorCode
    server: str | None = None
    tool: str | None = None


class ToolListing(BaseModel):
    """Structured listing of all connected capabilities."""

    registry_version: int
    capabilities: list[CapabilityDescriptor] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    proxy: Literal["healthy", "unhealthy"] = "healthy"
    providers: list[str] = Field(default_factory=list)
    capabilities: int = 0
    registry_version: int = 0

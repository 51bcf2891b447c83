"""Boundary types for the agent execution bridge.

The bridge runs the actual agent loop and is external to this package. The
dispatcher starts it with a BridgeRun and observes it only through the
run's callbacks: ``on_message`` zero or more times, then exactly one of
``on_error`` or ``on_complete``.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .config import PermissionMode
from .models import CancelHandle, PermissionResult


class BridgeUpdateKind(str, Enum):
    """Kind of message streamed back by the bridge."""

    INIT = "init"
    ASSISTANT = "assistant"
    RESULT = "result"


@dataclass
class ToolUse:
    """A tool call made by the agent."""

    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class BridgeUpdate:
    """One message from the agent's stream.

    ``init`` carries the resume handle in ``session_id``. ``assistant``
    carries text and tool calls. ``result`` carries raw usage counters,
    cost and duration, and ``is_error`` when the run ended in failure.
    """

    kind: BridgeUpdateKind
    session_id: str | None = None
    text: str = ""
    tool_uses: list[ToolUse] = field(default_factory=list)
    usage: dict[str, Any] | None = None
    cost_usd: float = 0.0
    duration_ms: int = 0
    is_error: bool = False


@dataclass
class BridgeRun:
    """Everything the bridge needs to run one agent turn."""

    thread_id: str
    prompt_text: str
    cwd: str
    model: str
    permission_mode: PermissionMode
    cancel: CancelHandle
    on_message: Callable[[BridgeUpdate], None]
    on_error: Callable[[BaseException], None]
    on_complete: Callable[[], None]
    can_use_tool: Callable[[str, dict[str, Any]], Awaitable[PermissionResult]]
    resume_session_id: str | None = None


class ExecutionBridge(Protocol):
    """Starts agent runs.

    ``start`` returns once the run is underway, with the resume handle if it
    is already known. The run keeps reporting through its callbacks.
    """

    async def start(self, run: BridgeRun) -> str | None: ...

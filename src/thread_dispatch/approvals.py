"""Tool permission requests and their response channel.

A PendingApproval on the session is plain data. The live response channel
is an asyncio.Future held by the ApprovalBroker, keyed by thread id and
tagged with the approval's ``request_id`` so a late answer for a replaced
approval can never resolve the new one.

When the agent asks to use a tool:
1. PermissionGate builds a PendingApproval and registers a Future here
2. The session moves to awaiting_permission and the adapter is notified
3. The user answers (or the timeout or a stop fires)
4. SessionRegistry.resolve_approval clears the record and resolves the Future
5. The agent continues with the allow/deny result
"""

import asyncio
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from .models import AskState, CancelHandle, PendingApproval, PermissionResult

if TYPE_CHECKING:
    from .sessions import SessionRegistry

logger = structlog.get_logger()

# Tool names answered through the multi-question flow
ASK_TOOL_NAMES = frozenset({"AskUserQuestion", "AskUser"})

DEFAULT_DENY_MESSAGE = "User denied"
STOPPED_MESSAGE = "Task has been stopped"
SUPERSEDED_MESSAGE = "Permission request was superseded"
SESSION_GONE_MESSAGE = "Session is no longer active"


class AskOutcome(str, Enum):
    """Result of an interaction with a multi-question approval."""

    EXPIRED = "expired"  # nothing pending for the thread
    STALE = "stale"  # question index no longer current
    EMPTY_SELECTION = "empty_selection"
    TOGGLED = "toggled"
    ADVANCED = "advanced"
    COMPLETED = "completed"
    AWAITING_TEXT = "awaiting_text"


def format_timeout_duration(ms: int) -> str:
    """Human readable duration, e.g. ``45 seconds`` or ``5 minutes``."""
    seconds = round(ms / 1000)
    if seconds < 60:
        return f"{seconds} seconds"
    minutes = round(ms / 60000)
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


class ApprovalBroker:
    """Registry of outstanding approval futures, one per thread."""

    def __init__(self) -> None:
        self._pending: dict[str, tuple[str, asyncio.Future[PermissionResult]]] = {}

    def register(self, thread_id: str, request_id: str) -> asyncio.Future[PermissionResult]:
        """Register the response channel for a new approval.

        A still-outstanding approval for the same thread is denied first.
        Must be called from a running event loop.
        """
        previous = self._pending.pop(thread_id, None)
        if previous:
            _, old_future = previous
            if not old_future.done():
                old_future.set_result(PermissionResult.deny(SUPERSEDED_MESSAGE))
                logger.warning("Replaced outstanding approval", thread_id=thread_id)

        future: asyncio.Future[PermissionResult] = asyncio.get_running_loop().create_future()
        self._pending[thread_id] = (request_id, future)
        logger.debug("Approval registered", thread_id=thread_id, request_id=request_id)
        return future

    def resolve(
        self,
        thread_id: str,
        result: PermissionResult,
        request_id: str | None = None,
    ) -> bool:
        """Deliver a result exactly once.

        Returns:
            False if nothing matching is pending or it was already resolved.
        """
        entry = self._pending.get(thread_id)
        if entry is None:
            return False
        pending_id, future = entry
        if request_id is not None and request_id != pending_id:
            logger.debug(
                "Ignoring result for replaced approval",
                thread_id=thread_id,
                request_id=request_id,
            )
            return False

        del self._pending[thread_id]
        if future.done():
            return False
        future.set_result(result)
        return True

    def has_pending(self, thread_id: str) -> bool:
        return thread_id in self._pending

    def pending_count(self) -> int:
        return len(self._pending)

    def deny_all(self, message: str) -> int:
        """Deny every outstanding approval. Returns how many were denied."""
        denied = 0
        for thread_id in list(self._pending):
            if self.resolve(thread_id, PermissionResult.deny(message)):
                denied += 1
        return denied


class PermissionGate:
    """Turns agent tool permission requests into pending approvals.

    ``request`` suspends until the user answers, the approval times out, or
    the session's cancel handle fires. Timeout and stop both deny, and only
    if the approval they were armed for is still the pending one.
    """

    def __init__(
        self,
        registry: "SessionRegistry",
        broker: ApprovalBroker,
        approval_timeout_ms: int = 0,
        on_request: Callable[[str, PendingApproval], None] | None = None,
    ) -> None:
        """Initialize the gate.

        Args:
            registry: Session registry owning the PendingApproval records
            broker: Response channel registry
            approval_timeout_ms: Auto-deny delay, 0 disables the timer
            on_request: Called with (thread_id, approval) once it is pending
        """
        self._registry = registry
        self._broker = broker
        self._timeout_ms = approval_timeout_ms
        self._on_request = on_request

    async def request(
        self,
        thread_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        cancel: CancelHandle | None = None,
    ) -> PermissionResult:
        """Ask the user whether the agent may use a tool."""
        if cancel is not None and cancel.cancelled:
            return PermissionResult.deny(STOPPED_MESSAGE)

        ask_state = AskState.from_tool_input(tool_input) if tool_name in ASK_TOOL_NAMES else None
        approval = PendingApproval(tool_name=tool_name, tool_input=tool_input, ask_state=ask_state)

        future = self._broker.register(thread_id, approval.request_id)
        if not self._registry.request_approval(thread_id, approval):
            self._broker.resolve(thread_id, PermissionResult.deny(SESSION_GONE_MESSAGE))
            return await future

        logger.info("Awaiting permission approval", thread_id=thread_id, tool=tool_name)

        timer: asyncio.TimerHandle | None = None
        if self._timeout_ms > 0:
            timer = asyncio.get_running_loop().call_later(
                self._timeout_ms / 1000,
                self._expire,
                thread_id,
                approval.request_id,
                tool_name,
            )

        def on_cancel() -> None:
            self._deny_if_current(thread_id, approval.request_id, STOPPED_MESSAGE)

        if cancel is not None:
            cancel.add_callback(on_cancel)

        if self._on_request:
            try:
                self._on_request(thread_id, approval)
            except Exception:
                logger.exception("Approval notification failed", thread_id=thread_id)

        try:
            result = await future
        finally:
            if timer:
                timer.cancel()
            if cancel is not None:
                cancel.remove_callback(on_cancel)

        if result.allowed:
            logger.info("User approved", thread_id=thread_id, tool=tool_name)
            updated = result.updated_input if result.updated_input is not None else tool_input
            return PermissionResult.allow(updated)

        logger.info("User denied", thread_id=thread_id, tool=tool_name)
        return PermissionResult.deny(result.message or DEFAULT_DENY_MESSAGE)

    def _expire(self, thread_id: str, request_id: str, tool_name: str) -> None:
        display = format_timeout_duration(self._timeout_ms)
        if self._deny_if_current(
            thread_id, request_id, f"Permission request timed out after {display}"
        ):
            logger.info(
                "Approval timed out",
                thread_id=thread_id,
                tool=tool_name,
                timeout_ms=self._timeout_ms,
            )

    def _deny_if_current(self, thread_id: str, request_id: str, message: str) -> bool:
        session = self._registry.get(thread_id)
        pending = session.pending_approval if session else None
        if pending is not None and pending.request_id == request_id:
            return self._registry.resolve_approval(thread_id, PermissionResult.deny(message))
        # The session is gone but the agent may still be waiting
        return self._broker.resolve(thread_id, PermissionResult.deny(message), request_id)

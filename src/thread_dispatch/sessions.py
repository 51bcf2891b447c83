"""Authoritative in-memory session map and lifecycle state machine.

    running -> awaiting_permission -> running        (approval loop)
    running -> waiting_input -> running              (follow-up loop)
    any non-terminal -> completed | error            (terminal)

Terminal sessions leave the live map immediately; the removed Session is
returned to the caller as a snapshot. Every status change is mirrored to
the RecoveryLedger, and a terminal transition or clear removes the
projection.

The registry does not check project exclusivity; callers admit sessions
through ProjectQueue.is_busy first.
"""

import dataclasses
from collections.abc import Callable
from datetime import datetime

import structlog

from .approvals import STOPPED_MESSAGE, ApprovalBroker, AskOutcome
from .exceptions import SessionConflictError
from .models import (
    TERMINAL_STATUSES,
    TRANSCRIPT_TEXT_LIMIT,
    TRANSCRIPT_TOOL_INPUT_LIMIT,
    PendingApproval,
    PermissionResult,
    Session,
    SessionStatus,
    TranscriptEntry,
    TranscriptType,
    utc_now,
)
from .recovery import RecoveryLedger

logger = structlog.get_logger()

# Fields callers may change through update()
_MUTABLE_FIELDS = frozenset(
    f.name for f in dataclasses.fields(Session) if f.name not in {"thread_id", "started_at"}
)


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class SessionRegistry:
    """Owns every live Session, keyed by thread id."""

    def __init__(
        self,
        recovery: RecoveryLedger | None = None,
        approvals: ApprovalBroker | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the registry.

        Args:
            recovery: Durable projection of non-terminal sessions
            approvals: Response channels for pending approvals
            clock: Source of the current time
        """
        self._sessions: dict[str, Session] = {}
        self._recovery = recovery
        self._approvals = approvals
        self._clock = clock

    def get(self, thread_id: str) -> Session | None:
        return self._sessions.get(thread_id)

    def create(
        self,
        thread_id: str,
        *,
        user_id: str,
        cwd: str,
        model: str,
        prompt_text: str,
        schedule_name: str | None = None,
    ) -> Session:
        """Insert a new running session.

        Raises:
            SessionConflictError: If the thread already has an active session.
        """
        existing = self._sessions.get(thread_id)
        if existing is not None and existing.is_active:
            raise SessionConflictError(f"Thread {thread_id} already has an active session")

        now = self._clock()
        session = Session(
            thread_id=thread_id,
            user_id=user_id,
            cwd=cwd,
            model=model,
            prompt_text=prompt_text,
            started_at=now,
            last_activity_at=now,
            schedule_name=schedule_name,
        )
        self._sessions[thread_id] = session
        self._persist(session)

        logger.info("Session created", thread_id=thread_id, user_id=user_id, cwd=cwd, model=model)
        return session

    def update(self, thread_id: str, **changes: object) -> Session | None:
        """Merge fields into a session and refresh ``last_activity_at``.

        Returns:
            The session (a removed snapshot if the change was terminal), or
            None if the thread is unknown.

        Raises:
            TypeError: If a field does not exist or cannot be changed.
        """
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise TypeError(f"Cannot update session fields: {', '.join(sorted(unknown))}")

        session = self._sessions.get(thread_id)
        if session is None:
            return None

        previous_status = session.status
        for name, value in changes.items():
            setattr(session, name, value)
        if "status" in changes:
            session.status = SessionStatus(session.status)
        session.last_activity_at = self._clock()

        if session.status != previous_status:
            logger.debug(
                "Session status changed",
                thread_id=thread_id,
                old_status=previous_status.value,
                new_status=session.status.value,
            )
            if session.status in TERMINAL_STATUSES:
                self._retire(session)
            else:
                self._persist(session)
        return session

    def set_status(self, thread_id: str, status: SessionStatus) -> Session | None:
        return self.update(thread_id, status=status)

    def complete(self, thread_id: str) -> Session | None:
        """Move a session to completed and remove it."""
        return self.update(thread_id, status=SessionStatus.COMPLETED)

    def fail(self, thread_id: str, error: str) -> Session | None:
        """Move a session to error and remove it."""
        self.append_transcript(thread_id, TranscriptType.ERROR, error)
        return self.update(thread_id, status=SessionStatus.ERROR)

    def clear(self, thread_id: str) -> Session | None:
        """Abort and drop a session regardless of status."""
        session = self._sessions.get(thread_id)
        if session is None:
            return None
        session.cancel.cancel()
        self._retire(session)
        logger.info("Session cleared", thread_id=thread_id)
        return session

    def _retire(self, session: Session) -> None:
        self._sessions.pop(session.thread_id, None)
        if session.pending_approval is not None:
            session.pending_approval = None
            if self._approvals:
                self._approvals.resolve(session.thread_id, PermissionResult.deny(STOPPED_MESSAGE))
        if self._recovery:
            self._recovery.remove(session.thread_id)

    def _persist(self, session: Session) -> None:
        if self._recovery:
            self._recovery.persist(session)

    def record_tool_use(self, thread_id: str, tool_name: str) -> None:
        session = self._sessions.get(thread_id)
        if session is None:
            return
        session.tool_count += 1
        session.tools[tool_name] = session.tools.get(tool_name, 0) + 1
        session.last_activity_at = self._clock()

    def append_transcript(
        self,
        thread_id: str,
        entry_type: TranscriptType,
        content: str,
        tool_name: str | None = None,
    ) -> None:
        session = self._sessions.get(thread_id)
        if session is None:
            return
        limit = (
            TRANSCRIPT_TOOL_INPUT_LIMIT
            if entry_type == TranscriptType.TOOL_USE
            else TRANSCRIPT_TEXT_LIMIT
        )
        session.transcript.append(
            TranscriptEntry(
                type=entry_type,
                content=truncate(content, limit),
                timestamp=self._clock(),
                tool_name=tool_name,
            )
        )

    def active_sessions(self) -> list[Session]:
        """All sessions whose status is not terminal."""
        return [s for s in self._sessions.values() if s.is_active]

    def active_count(self) -> int:
        return len(self.active_sessions())

    def sessions_for_cwd(self, cwd: str) -> list[Session]:
        return [s for s in self.active_sessions() if s.cwd == cwd]

    # Approval handshake

    def request_approval(self, thread_id: str, approval: PendingApproval) -> bool:
        """Attach a pending approval, replacing any prior one.

        Returns:
            False if the thread has no session.
        """
        session = self._sessions.get(thread_id)
        if session is None:
            return False
        session.pending_approval = approval
        self.update(thread_id, status=SessionStatus.AWAITING_PERMISSION)
        return True

    def pending_approval(self, thread_id: str) -> PendingApproval | None:
        session = self._sessions.get(thread_id)
        return session.pending_approval if session else None

    def resolve_approval(self, thread_id: str, result: PermissionResult) -> bool:
        """Deliver a decision for the pending approval.

        Returns:
            False (a no-op) if nothing is pending, so redelivered
            interactions are harmless.
        """
        session = self._sessions.get(thread_id)
        if session is None or session.pending_approval is None:
            return False

        approval = session.pending_approval
        session.pending_approval = None
        if session.status == SessionStatus.AWAITING_PERMISSION:
            self.update(thread_id, status=SessionStatus.RUNNING)

        if self._approvals:
            self._approvals.resolve(thread_id, result, approval.request_id)

        logger.info(
            "Approval resolved",
            thread_id=thread_id,
            tool=approval.tool_name,
            behavior=result.behavior.value,
        )
        return True

    def _ask_target(
        self, thread_id: str, question_index: int
    ) -> tuple[PendingApproval | None, AskOutcome | None]:
        approval = self.pending_approval(thread_id)
        if approval is None or approval.ask_state is None:
            return None, AskOutcome.EXPIRED
        if question_index != approval.ask_state.current_question_index:
            return None, AskOutcome.STALE
        return approval, None

    def select_option(self, thread_id: str, question_index: int, option_index: int) -> AskOutcome:
        """Handle an option click.

        Single-select questions record the label and advance. Multi-select
        questions toggle the option in the selection set.
        """
        approval, rejected = self._ask_target(thread_id, question_index)
        if rejected:
            return rejected
        state = approval.ask_state

        if state.is_multi_select:
            if option_index in state.selected_options:
                state.selected_options.discard(option_index)
            else:
                state.selected_options.add(option_index)
            return AskOutcome.TOGGLED

        state.collected_answers[question_index] = state.option_label(question_index, option_index)
        return self._advance_or_finalize(thread_id, approval)

    def submit_selection(self, thread_id: str, question_index: int) -> AskOutcome:
        """Finalize a multi-select answer from the current selection."""
        approval, rejected = self._ask_target(thread_id, question_index)
        if rejected:
            return rejected
        state = approval.ask_state

        if not state.selected_options:
            return AskOutcome.EMPTY_SELECTION

        labels = [state.option_label(question_index, i) for i in sorted(state.selected_options)]
        state.collected_answers[question_index] = ", ".join(labels)
        return self._advance_or_finalize(thread_id, approval)

    def request_other(self, thread_id: str, question_index: int) -> AskOutcome:
        """Check that free-text capture may open for a question."""
        _, rejected = self._ask_target(thread_id, question_index)
        return rejected or AskOutcome.AWAITING_TEXT

    def submit_text(self, thread_id: str, question_index: int, text: str) -> AskOutcome:
        """Record free text as the answer and advance."""
        approval, rejected = self._ask_target(thread_id, question_index)
        if rejected:
            return rejected
        approval.ask_state.collected_answers[question_index] = text
        return self._advance_or_finalize(thread_id, approval)

    def _advance_or_finalize(self, thread_id: str, approval: PendingApproval) -> AskOutcome:
        state = approval.ask_state
        next_index = state.current_question_index + 1

        if next_index >= state.total_questions:
            answers = state.answers_payload()
            self.resolve_approval(
                thread_id,
                PermissionResult.allow({**approval.tool_input, "answers": answers}),
            )
            logger.info("All questions answered", thread_id=thread_id, answers=answers)
            return AskOutcome.COMPLETED

        state.current_question_index = next_index
        state.selected_options = set()
        self.update(thread_id)
        logger.info("Advancing to next question", thread_id=thread_id, next_question=next_index)
        return AskOutcome.ADVANCED

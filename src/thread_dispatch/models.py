"""Data model shared across thread dispatch components.

In-memory objects use snake_case attributes. The durable JSON files use
camelCase keys and ISO-8601 UTC timestamps, converted in ``to_dict`` /
``from_dict``.
"""

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()

# Transcript content limits
TRANSCRIPT_TEXT_LIMIT = 2000
TRANSCRIPT_TOOL_INPUT_LIMIT = 500


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with a trailing Z."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_optional(value: str | None) -> datetime | None:
    return parse_iso(value) if value else None


class SessionStatus(str, Enum):
    """Lifecycle state of a session."""

    RUNNING = "running"
    AWAITING_PERMISSION = "awaiting_permission"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.ERROR})

# Statuses that hold exclusive use of a project directory. waiting_input is
# included: a follow-up can restart the agent at any moment.
BUSY_STATUSES = frozenset(
    {
        SessionStatus.RUNNING,
        SessionStatus.AWAITING_PERMISSION,
        SessionStatus.WAITING_INPUT,
    }
)


class PermissionBehavior(str, Enum):
    """Outcome of a tool permission request."""

    ALLOW = "allow"
    DENY = "deny"


class TranscriptType(str, Enum):
    """Kind of transcript entry."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL_USE = "tool_use"
    RESULT = "result"
    ERROR = "error"


class ScheduleType(str, Enum):
    """Recurrence of a scheduled prompt."""

    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"


class CancelHandle:
    """Single mechanism for aborting in-flight agent work.

    ``cancel`` is idempotent and never raises. Callbacks registered after
    cancellation run immediately.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            self._run(callback)
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run(callback)

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Cancel callback failed")


@dataclass
class TokenUsage:
    """Token counts and cost for one or more agent runs."""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    total: int = 0
    cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "input": self.input,
            "output": self.output,
            "cacheRead": self.cache_read,
            "cacheWrite": self.cache_write,
            "total": self.total,
            "costUsd": self.cost_usd,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenUsage":
        return cls(
            input=data.get("input", 0),
            output=data.get("output", 0),
            cache_read=data.get("cacheRead", 0),
            cache_write=data.get("cacheWrite", 0),
            total=data.get("total", 0),
            cost_usd=data.get("costUsd", 0.0),
        )


@dataclass
class TranscriptEntry:
    """A timestamped line in a session transcript."""

    type: TranscriptType
    content: str
    timestamp: datetime = field(default_factory=utc_now)
    tool_name: str | None = None


@dataclass
class PermissionResult:
    """Decision delivered to the agent for a tool permission request."""

    behavior: PermissionBehavior
    updated_input: dict[str, Any] | None = None
    message: str | None = None

    @classmethod
    def allow(cls, updated_input: dict[str, Any] | None = None) -> "PermissionResult":
        return cls(behavior=PermissionBehavior.ALLOW, updated_input=updated_input)

    @classmethod
    def deny(cls, message: str | None = None) -> "PermissionResult":
        return cls(behavior=PermissionBehavior.DENY, message=message)

    @property
    def allowed(self) -> bool:
        return self.behavior == PermissionBehavior.ALLOW


@dataclass
class AskOption:
    """One selectable option of an interactive question."""

    label: str
    description: str = ""


@dataclass
class AskQuestion:
    """One question of a multi-question approval."""

    question: str
    options: list[AskOption]
    header: str = ""
    multi_select: bool = False


@dataclass
class AskState:
    """Progress through a multi-question approval.

    ``current_question_index`` only moves forward and never exceeds
    ``len(questions)``. ``selected_options`` is only used by multi-select
    questions and is reset on every advance.
    """

    questions: list[AskQuestion]
    current_question_index: int = 0
    selected_options: set[int] = field(default_factory=set)
    collected_answers: dict[int, str] = field(default_factory=dict)

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def current_question(self) -> AskQuestion | None:
        if self.current_question_index >= len(self.questions):
            return None
        return self.questions[self.current_question_index]

    @property
    def is_multi_select(self) -> bool:
        question = self.current_question
        return bool(question and question.multi_select)

    def option_label(self, question_index: int, option_index: int) -> str:
        options = self.questions[question_index].options
        if 0 <= option_index < len(options):
            return options[option_index].label
        return f"Option {option_index + 1}"

    def answers_payload(self) -> dict[str, str]:
        """Answers keyed by stringified question index, as the tool expects."""
        return {str(idx): answer for idx, answer in sorted(self.collected_answers.items())}

    @classmethod
    def from_tool_input(cls, tool_input: dict[str, Any]) -> "AskState | None":
        """Build an ask state from an AskUserQuestion tool input.

        Returns None when the input has no questions or the first question
        has no options, in which case a plain allow/deny approval is used.
        """
        raw_questions = tool_input.get("questions")
        if not isinstance(raw_questions, list) or not raw_questions:
            return None
        first = raw_questions[0]
        if not isinstance(first, dict) or not first.get("options"):
            return None

        questions = []
        for raw in raw_questions:
            raw = raw if isinstance(raw, dict) else {}
            questions.append(
                AskQuestion(
                    question=raw.get("question") or "",
                    header=raw.get("header") or "",
                    options=[
                        AskOption(
                            label=opt.get("label") or "Option",
                            description=opt.get("description") or "",
                        )
                        for opt in raw.get("options") or []
                        if isinstance(opt, dict)
                    ],
                    multi_select=bool(raw.get("multiSelect", False)),
                )
            )
        return cls(questions=questions)


@dataclass
class PendingApproval:
    """An outstanding tool permission request attached to a session.

    The record is plain data; the live response channel is held by the
    ApprovalBroker under ``request_id``.
    """

    tool_name: str
    tool_input: dict[str, Any]
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    ask_state: AskState | None = None


@dataclass
class Session:
    """One active conversation thread bound to a project directory."""

    thread_id: str
    user_id: str
    cwd: str
    model: str
    prompt_text: str
    status: SessionStatus = SessionStatus.RUNNING
    session_id: str | None = None
    tool_count: int = 0
    tools: dict[str, int] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utc_now)
    last_activity_at: datetime = field(default_factory=utc_now)
    cancel: CancelHandle = field(default_factory=CancelHandle)
    transcript: list[TranscriptEntry] = field(default_factory=list)
    pending_approval: PendingApproval | None = None
    schedule_name: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_STATUSES

    @property
    def holds_project(self) -> bool:
        return self.status in BUSY_STATUSES


@dataclass
class QueueEntry:
    """A deferred session request waiting for its project to become free."""

    user_id: str
    prompt_text: str
    cwd: str
    model: str
    thread_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    queued_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "promptText": self.prompt_text,
            "cwd": self.cwd,
            "model": self.model,
            "threadId": self.thread_id,
            "queuedAt": to_iso(self.queued_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueueEntry":
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            user_id=data["userId"],
            prompt_text=data["promptText"],
            cwd=data["cwd"],
            model=data["model"],
            thread_id=data["threadId"],
            queued_at=parse_iso(data["queuedAt"]) if data.get("queuedAt") else utc_now(),
        )


@dataclass
class ScheduledPrompt:
    """A named, durable trigger that starts a session at computed times.

    ``time`` is ``HH:MM`` in UTC. ``day_of_week`` counts from Sunday (0)
    to Saturday (6). ``once_date`` is ``YYYY-MM-DD``.
    """

    name: str
    prompt_text: str
    cwd: str
    channel_id: str
    created_by: str
    schedule_type: ScheduleType
    time: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enabled: bool = True
    day_of_week: int | None = None
    once_date: str | None = None
    model: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "promptText": self.prompt_text,
            "cwd": self.cwd,
            "channelId": self.channel_id,
            "createdBy": self.created_by,
            "enabled": self.enabled,
            "scheduleType": self.schedule_type.value,
            "time": self.time,
            "dayOfWeek": self.day_of_week,
            "onceDate": self.once_date,
            "model": self.model,
            "createdAt": to_iso(self.created_at),
            "lastRunAt": to_iso(self.last_run_at) if self.last_run_at else None,
            "nextRunAt": to_iso(self.next_run_at) if self.next_run_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScheduledPrompt":
        return cls(
            id=data["id"],
            name=data["name"],
            prompt_text=data["promptText"],
            cwd=data["cwd"],
            channel_id=data.get("channelId", ""),
            created_by=data.get("createdBy", ""),
            enabled=data.get("enabled", True),
            schedule_type=ScheduleType(data["scheduleType"]),
            time=data["time"],
            day_of_week=data.get("dayOfWeek"),
            once_date=data.get("onceDate"),
            model=data.get("model"),
            created_at=_parse_optional(data.get("createdAt")) or utc_now(),
            last_run_at=_parse_optional(data.get("lastRunAt")),
            next_run_at=_parse_optional(data.get("nextRunAt")),
        )


@dataclass
class CompletedSessionRecord:
    """Cost and usage of one finished agent run."""

    thread_id: str
    user_id: str
    project_name: str
    project_path: str
    prompt_text: str
    cost_usd: float
    usage: TokenUsage
    duration_ms: int
    tool_count: int = 0
    completed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "userId": self.user_id,
            "projectName": self.project_name,
            "projectPath": self.project_path,
            "promptText": self.prompt_text,
            "costUsd": self.cost_usd,
            "usage": self.usage.to_dict(),
            "durationMs": self.duration_ms,
            "toolCount": self.tool_count,
            "completedAt": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompletedSessionRecord":
        return cls(
            thread_id=data["threadId"],
            user_id=data.get("userId", ""),
            project_name=data.get("projectName", ""),
            project_path=data.get("projectPath", ""),
            prompt_text=data.get("promptText", ""),
            cost_usd=data.get("costUsd", 0.0),
            usage=TokenUsage.from_dict(data.get("usage") or {}),
            duration_ms=data.get("durationMs", 0),
            tool_count=data.get("toolCount", 0),
            completed_at=_parse_optional(data.get("completedAt")) or utc_now(),
        )


@dataclass
class DailyRecord:
    """All completed runs for one UTC calendar date."""

    date: str
    sessions: list[CompletedSessionRecord] = field(default_factory=list)
    total_cost_usd: float = 0.0
    total_usage: TokenUsage = field(default_factory=TokenUsage)
    total_duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "sessions": [s.to_dict() for s in self.sessions],
            "totalCostUsd": self.total_cost_usd,
            "totalUsage": self.total_usage.to_dict(),
            "totalDurationMs": self.total_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailyRecord":
        return cls(
            date=data["date"],
            sessions=[CompletedSessionRecord.from_dict(s) for s in data.get("sessions", [])],
            total_cost_usd=data.get("totalCostUsd", 0.0),
            total_usage=TokenUsage.from_dict(data.get("totalUsage") or {}),
            total_duration_ms=data.get("totalDurationMs", 0),
        )


@dataclass
class RepoSummary:
    """Completed runs of one day grouped under a single project path."""

    project_name: str
    project_path: str
    sessions: list[CompletedSessionRecord] = field(default_factory=list)
    total_sessions: int = 0
    total_cost_usd: float = 0.0
    total_usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class RecoverableSession:
    """Durable projection of a non-terminal session, read at startup."""

    thread_id: str
    user_id: str
    prompt_text: str
    cwd: str
    model: str
    status: SessionStatus
    started_at: datetime
    last_activity_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "RecoverableSession":
        return cls(
            thread_id=session.thread_id,
            user_id=session.user_id,
            prompt_text=session.prompt_text,
            cwd=session.cwd,
            model=session.model,
            status=session.status,
            started_at=session.started_at,
            last_activity_at=session.last_activity_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "userId": self.user_id,
            "promptText": self.prompt_text,
            "cwd": self.cwd,
            "model": self.model,
            "status": self.status.value,
            "startedAt": to_iso(self.started_at),
            "lastActivityAt": to_iso(self.last_activity_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecoverableSession":
        return cls(
            thread_id=data["threadId"],
            user_id=data["userId"],
            prompt_text=data["promptText"],
            cwd=data["cwd"],
            model=data["model"],
            status=SessionStatus(data.get("status", "running")),
            started_at=parse_iso(data["startedAt"]),
            last_activity_at=parse_iso(data["lastActivityAt"]),
        )

"""Admission control and session orchestration.

Every request to start work passes through the same gates:

    authorization -> allowed project -> rate limit -> budget -> busy project

An admitted request becomes a running Session handed to the execution
bridge. The bridge reports back through callbacks, and whenever a session
leaves the busy set the project's queue is drained. Nothing here awaits
between the busy check and session creation, so admission is atomic with
respect to other admissions on the same event loop.

Denials are returned as AdmissionResult values, never raised.
"""

import asyncio
import contextlib
import json
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

import structlog

from .approvals import STOPPED_MESSAGE, ApprovalBroker, PermissionGate
from .budget import BudgetCheckResult, BudgetLedger, BudgetWarning
from .bridge import BridgeRun, BridgeUpdate, BridgeUpdateKind, ExecutionBridge
from .config import DispatchConfig, is_allowed_cwd, is_user_authorized
from .daily_summary import DailySummaryStore
from .models import (
    CancelHandle,
    CompletedSessionRecord,
    PendingApproval,
    QueueEntry,
    RecoverableSession,
    ScheduledPrompt,
    Session,
    SessionStatus,
    TranscriptType,
    utc_now,
)
from .queue import ProjectQueue
from .rate_limiter import RateLimitRegistry
from .recovery import RecoveryLedger
from .schedules import ScheduleRegistry
from .sessions import SessionRegistry
from .usage import UsageStore, calculate_token_usage

logger = structlog.get_logger()

T = TypeVar("T")


class AdmissionStatus(str, Enum):
    """Outcome of an admission attempt."""

    ADMITTED = "admitted"
    QUEUED = "queued"
    BUSY = "busy"
    RATE_LIMITED = "rate_limited"
    BUDGET_EXCEEDED = "budget_exceeded"
    UNAUTHORIZED = "unauthorized"
    CWD_NOT_ALLOWED = "cwd_not_allowed"


@dataclass
class AdmissionResult:
    """Typed admission decision for the adapter to report."""

    status: AdmissionStatus
    thread_id: str
    cwd: str | None = None
    session: Session | None = None
    queue_position: int | None = None
    retry_after_ms: float | None = None
    budget: BudgetCheckResult | None = None
    warnings: list[BudgetWarning] = field(default_factory=list)

    @property
    def admitted(self) -> bool:
        return self.status == AdmissionStatus.ADMITTED


@dataclass
class SessionRequest:
    """A request to start work in a thread.

    ``cwd`` and ``model`` fall back to the configured defaults. With
    ``queue_if_busy`` a busy project queues the request instead of
    reporting BUSY.
    """

    thread_id: str
    user_id: str
    prompt_text: str
    cwd: str | None = None
    model: str | None = None
    queue_if_busy: bool = False


class FollowUpStatus(str, Enum):
    """Outcome of a follow-up message."""

    ACCEPTED = "accepted"
    NOT_FOUND = "not_found"
    NOT_WAITING = "not_waiting"
    UNAUTHORIZED = "unauthorized"
    EMPTY = "empty"
    NO_RESUME_HANDLE = "no_resume_handle"


class StopOutcome(str, Enum):
    """Outcome of a stop request."""

    STOPPED = "stopped"
    DEQUEUED = "dequeued"
    NOT_FOUND = "not_found"


class DispatchListener:
    """Receives dispatcher events. Override what the adapter renders.

    Every hook is optional; the base implementation ignores the event.
    """

    def on_session_started(self, session: Session) -> None:
        pass

    def on_session_waiting(self, session: Session) -> None:
        pass

    def on_session_ended(self, session: Session) -> None:
        pass

    def on_session_error(self, session: Session, error: BaseException) -> None:
        pass

    def on_approval_requested(self, thread_id: str, approval: PendingApproval) -> None:
        pass

    def on_queue_admitted(self, entry: QueueEntry, result: AdmissionResult) -> None:
        pass

    def on_queue_rejected(self, entry: QueueEntry, result: AdmissionResult) -> None:
        pass


class KeyedInflight:
    """Shares one in-flight task between concurrent callers with the same key."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task

            def _forget(done: asyncio.Task[Any]) -> None:
                if self._tasks.get(key) is done:
                    del self._tasks[key]

            task.add_done_callback(_forget)
        return await asyncio.shield(task)

    def in_flight(self, key: str) -> bool:
        return key in self._tasks


class SessionDispatcher:
    """Admits, runs and retires sessions for one process."""

    def __init__(
        self,
        config: DispatchConfig,
        bridge: ExecutionBridge,
        listener: DispatchListener | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the dispatcher and its stores.

        Args:
            config: Dispatch configuration; ``data_dir`` locates the JSON stores
            bridge: Agent execution bridge
            listener: Receives session and queue events
            clock: Source of the current time
        """
        self.config = config
        self._bridge = bridge
        self.listener = listener or DispatchListener()
        self._clock = clock

        data_dir = config.get_data_dir()
        self.recovery = RecoveryLedger(data_dir)
        self.approvals = ApprovalBroker()
        self.registry = SessionRegistry(self.recovery, self.approvals, clock)
        self.queue = ProjectQueue(self.registry, data_dir)
        self.summary = DailySummaryStore(data_dir, clock)
        self.budget = BudgetLedger(self.summary, config.budget, clock)
        self.rate_limits = RateLimitRegistry()
        self.usage = UsageStore()
        self.schedules = ScheduleRegistry(data_dir, clock)
        self.permissions = PermissionGate(
            self.registry,
            self.approvals,
            config.approval_timeout_ms,
            on_request=self._on_approval_requested,
        )

        self._results: dict[str, BridgeUpdate] = {}
        self._runs: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._drains = KeyedInflight()
        self._running = False
        self._sweep_task: asyncio.Task[None] | None = None

    # Lifecycle

    async def start(self) -> None:
        """Start the idle sweeper."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

        orphaned = self.recoverable_sessions()
        logger.info(
            "Session dispatcher started",
            queued=self.queue.total_queued(),
            recoverable=len(orphaned),
        )

    async def shutdown(self) -> None:
        """Abort every active session and stop background work.

        Clearing the sessions empties the recovery ledger, so only an
        unclean stop leaves recoverable entries behind.
        """
        logger.info("Shutting down session dispatcher...")
        self._running = False

        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task

        for session in self.registry.active_sessions():
            self.registry.clear(session.thread_id)
        self.approvals.deny_all(STOPPED_MESSAGE)

        pending = [t for t in (*self._runs.values(), *self._background) if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._runs.clear()
        self._background.clear()

        logger.info("Session dispatcher stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.idle_sweep_interval)
                await self.sweep_idle()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Idle sweep failed")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def settle(self) -> None:
        """Wait until background drains and bridge starts have finished."""
        while True:
            pending = [t for t in (*self._runs.values(), *self._background) if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _notify(self, hook: str, *args: Any) -> None:
        try:
            getattr(self.listener, hook)(*args)
        except Exception:
            logger.exception("Dispatch listener failed", hook=hook)

    def now(self) -> datetime:
        return self._clock()

    def _now_ms(self) -> float:
        return self._clock().timestamp() * 1000

    # Admission

    async def submit(self, request: SessionRequest) -> AdmissionResult:
        """Admit, queue or deny a request to start work."""
        cwd = request.cwd or self.config.get_default_cwd()
        model = request.model or self.config.default_model
        thread_id = request.thread_id

        def deny(status: AdmissionStatus, **detail: Any) -> AdmissionResult:
            logger.info(
                "Request denied",
                thread_id=thread_id,
                user_id=request.user_id,
                cwd=cwd,
                reason=status.value,
            )
            return AdmissionResult(status=status, thread_id=thread_id, cwd=cwd, **detail)

        if not is_user_authorized(request.user_id, self.config.allowed_user_ids):
            return deny(AdmissionStatus.UNAUTHORIZED)
        if not cwd or not is_allowed_cwd(cwd, self.config.projects):
            return deny(AdmissionStatus.CWD_NOT_ALLOWED)

        now_ms = self._now_ms()
        rate = self.rate_limits.check(request.user_id, self.config.rate_limit, now_ms)
        if not rate.allowed:
            return deny(AdmissionStatus.RATE_LIMITED, retry_after_ms=rate.retry_after_ms)

        exceeded = self.budget.check_budget()
        if exceeded:
            return deny(AdmissionStatus.BUDGET_EXCEEDED, budget=exceeded)

        existing = self.registry.get(thread_id)
        if existing is not None and existing.is_active:
            return deny(AdmissionStatus.BUSY)

        if self.queue.is_busy(cwd):
            if not request.queue_if_busy:
                return deny(AdmissionStatus.BUSY)
            queued = self.queue.find_by_thread(thread_id)
            if queued is not None:
                return AdmissionResult(
                    status=AdmissionStatus.QUEUED,
                    thread_id=thread_id,
                    cwd=queued[0],
                    queue_position=queued[1],
                )
            self.rate_limits.record(request.user_id, self.config.rate_limit, now_ms)
            position = self.queue.enqueue(
                cwd,
                QueueEntry(
                    user_id=request.user_id,
                    prompt_text=request.prompt_text,
                    cwd=cwd,
                    model=model,
                    thread_id=thread_id,
                    queued_at=self._clock(),
                ),
            )
            return AdmissionResult(
                status=AdmissionStatus.QUEUED,
                thread_id=thread_id,
                cwd=cwd,
                queue_position=position,
            )

        self.rate_limits.record(request.user_id, self.config.rate_limit, now_ms)
        session = self._start_session(
            thread_id,
            user_id=request.user_id,
            cwd=cwd,
            model=model,
            prompt_text=request.prompt_text,
        )
        return AdmissionResult(
            status=AdmissionStatus.ADMITTED,
            thread_id=thread_id,
            cwd=cwd,
            session=session,
            warnings=self.budget.warnings(),
        )

    def preflight_scheduled(self, schedule: ScheduledPrompt) -> AdmissionResult:
        """Check whether a schedule could start now, without starting it.

        Scheduled runs are never queued: a busy project is reported as BUSY
        and the run is skipped.
        """
        result = AdmissionResult(status=AdmissionStatus.ADMITTED, thread_id="", cwd=schedule.cwd)
        if not is_allowed_cwd(schedule.cwd, self.config.projects):
            result.status = AdmissionStatus.CWD_NOT_ALLOWED
        elif self.queue.is_busy(schedule.cwd):
            result.status = AdmissionStatus.BUSY
        else:
            exceeded = self.budget.check_budget()
            if exceeded:
                result.status = AdmissionStatus.BUDGET_EXCEEDED
                result.budget = exceeded
        return result

    def start_scheduled(self, schedule: ScheduledPrompt, thread_id: str) -> AdmissionResult:
        """Start a scheduled run in a thread opened for it."""
        result = self.preflight_scheduled(schedule)
        result.thread_id = thread_id
        if not result.admitted:
            return result

        result.session = self._start_session(
            thread_id,
            user_id=schedule.created_by,
            cwd=schedule.cwd,
            model=schedule.model or self.config.default_model,
            prompt_text=schedule.prompt_text,
            schedule_name=schedule.name,
        )
        result.warnings = self.budget.warnings()
        return result

    def _start_session(
        self,
        thread_id: str,
        *,
        user_id: str,
        cwd: str,
        model: str,
        prompt_text: str,
        schedule_name: str | None = None,
    ) -> Session:
        session = self.registry.create(
            thread_id,
            user_id=user_id,
            cwd=cwd,
            model=model,
            prompt_text=prompt_text,
            schedule_name=schedule_name,
        )
        self.registry.append_transcript(thread_id, TranscriptType.USER, prompt_text)
        self._notify("on_session_started", session)
        self._launch(session, prompt_text)
        return session

    def _launch(self, session: Session, prompt_text: str) -> None:
        thread_id = session.thread_id
        cancel = session.cancel
        run = BridgeRun(
            thread_id=thread_id,
            prompt_text=prompt_text,
            cwd=session.cwd,
            model=session.model,
            permission_mode=self.config.default_permission_mode,
            cancel=cancel,
            on_message=lambda update: self.handle_bridge_update(thread_id, update, cancel),
            on_error=lambda error: self.on_error(thread_id, error, cancel),
            on_complete=lambda: self.on_complete(thread_id, cancel),
            can_use_tool=lambda name, tool_input: self.permissions.request(
                thread_id, name, tool_input, cancel
            ),
            resume_session_id=session.session_id,
        )
        logger.info(
            "Query started",
            thread_id=thread_id,
            model=session.model,
            cwd=session.cwd,
            resume=session.session_id is not None,
        )
        task = asyncio.get_running_loop().create_task(self._run_bridge(run))
        self._runs[thread_id] = task
        task.add_done_callback(
            lambda done: self._runs.pop(thread_id, None) if self._runs.get(thread_id) is done else None
        )

    async def _run_bridge(self, run: BridgeRun) -> None:
        try:
            session_id = await self._bridge.start(run)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Failed to start query", thread_id=run.thread_id)
            self.on_error(run.thread_id, e, run.cancel)
            return
        if session_id and self._current(run.thread_id, run.cancel):
            self.registry.update(run.thread_id, session_id=session_id)

    # Bridge callbacks

    def _current(self, thread_id: str, cancel: CancelHandle | None) -> Session | None:
        """The live session, if the callback belongs to its current run."""
        session = self.registry.get(thread_id)
        if session is None:
            return None
        if cancel is not None and session.cancel is not cancel:
            return None
        return session

    def handle_bridge_update(
        self,
        thread_id: str,
        update: BridgeUpdate,
        cancel: CancelHandle | None = None,
    ) -> None:
        """Apply one message from the agent stream to the session."""
        session = self._current(thread_id, cancel)
        if session is None:
            return

        if update.kind == BridgeUpdateKind.INIT:
            if update.session_id:
                self.registry.update(thread_id, session_id=update.session_id)
            self.usage.record_session_start()
            logger.info("Session initialized", thread_id=thread_id, session_id=update.session_id)

        elif update.kind == BridgeUpdateKind.ASSISTANT:
            if update.text:
                self.registry.append_transcript(thread_id, TranscriptType.ASSISTANT, update.text)
            for tool in update.tool_uses:
                self.registry.record_tool_use(thread_id, tool.name)
                self.registry.append_transcript(
                    thread_id,
                    TranscriptType.TOOL_USE,
                    json.dumps(tool.input, default=str),
                    tool_name=tool.name,
                )
                logger.info("Tool call", thread_id=thread_id, tool=tool.name)

        elif update.kind == BridgeUpdateKind.RESULT:
            usage = calculate_token_usage(update.usage)
            usage.cost_usd = update.cost_usd
            self.usage.record_result(
                thread_id, usage, update.cost_usd, update.duration_ms, session.user_id
            )
            self.registry.append_transcript(
                thread_id,
                TranscriptType.ERROR if update.is_error else TranscriptType.RESULT,
                update.text,
            )
            self._results[thread_id] = update
            if update.is_error:
                logger.warning("Error result received", thread_id=thread_id)
            else:
                logger.info(
                    "Result received",
                    thread_id=thread_id,
                    tokens=usage.total,
                    cost_usd=update.cost_usd,
                    duration_ms=update.duration_ms,
                )

    def on_complete(self, thread_id: str, cancel: CancelHandle | None = None) -> None:
        """The agent finished its turn; the thread now waits for input."""
        session = self._current(thread_id, cancel)
        if session is None or not session.is_active:
            return

        self._record_completion(session)
        elapsed_ms = int((self._clock() - session.started_at).total_seconds() * 1000)
        self.registry.update(thread_id, status=SessionStatus.WAITING_INPUT)
        logger.info("Query completed", thread_id=thread_id, duration_ms=elapsed_ms)
        self._notify("on_session_waiting", session)

    def on_error(
        self,
        thread_id: str,
        error: BaseException,
        cancel: CancelHandle | None = None,
    ) -> None:
        """The bridge failed. The session ends in error and is never retried."""
        session = self._current(thread_id, cancel)
        if session is None:
            return

        logger.error("Execution error", thread_id=thread_id, error=str(error))
        self._record_completion(session)
        self.registry.fail(thread_id, str(error))
        self._notify("on_session_error", session, error)
        self._spawn(self.drain(session.cwd))

    def _record_completion(self, session: Session) -> None:
        result = self._results.pop(session.thread_id, None)
        if result is None:
            return

        usage = calculate_token_usage(result.usage)
        usage.cost_usd = result.cost_usd
        project = self.config.find_project(session.cwd)
        self.summary.record_completed_session(
            CompletedSessionRecord(
                thread_id=session.thread_id,
                user_id=session.user_id,
                project_name=project.name if project else session.cwd,
                project_path=session.cwd,
                prompt_text=session.prompt_text,
                cost_usd=result.cost_usd,
                usage=usage,
                duration_ms=result.duration_ms,
                tool_count=session.tool_count,
                completed_at=self._clock(),
            )
        )

    def _on_approval_requested(self, thread_id: str, approval: PendingApproval) -> None:
        self._notify("on_approval_requested", thread_id, approval)

    # User actions

    async def follow_up(self, thread_id: str, user_id: str, text: str) -> FollowUpStatus:
        """Resume a waiting session with a new message."""
        session = self.registry.get(thread_id)
        if session is None:
            return FollowUpStatus.NOT_FOUND
        if session.status != SessionStatus.WAITING_INPUT:
            return FollowUpStatus.NOT_WAITING
        if not is_user_authorized(user_id, self.config.allowed_user_ids):
            return FollowUpStatus.UNAUTHORIZED
        text = text.strip()
        if not text:
            return FollowUpStatus.EMPTY
        if not session.session_id:
            logger.warning("Unable to resume conversation: missing session id", thread_id=thread_id)
            return FollowUpStatus.NO_RESUME_HANDLE

        self.registry.update(
            thread_id,
            status=SessionStatus.RUNNING,
            prompt_text=text,
            cancel=CancelHandle(),
            pending_approval=None,
        )
        self.registry.append_transcript(thread_id, TranscriptType.USER, text)
        self._launch(session, text)
        return FollowUpStatus.ACCEPTED

    async def stop(self, thread_id: str) -> StopOutcome:
        """Abort a live session, or withdraw a queued request."""
        session = self.registry.get(thread_id)
        if session is not None:
            session.cancel.cancel()
            self._record_completion(session)
            self.registry.complete(thread_id)
            logger.info("Session stopped", thread_id=thread_id)
            self._notify("on_session_ended", session)
            await self.drain(session.cwd)
            return StopOutcome.STOPPED

        queued = self.queue.find_by_thread(thread_id)
        if queued is not None and self.queue.cancel(queued[0], thread_id):
            return StopOutcome.DEQUEUED

        return StopOutcome.NOT_FOUND

    async def clear(self, thread_id: str) -> bool:
        """Drop a session regardless of status and free its project."""
        session = self.registry.clear(thread_id)
        if session is None:
            return False
        self._results.pop(thread_id, None)
        self._notify("on_session_ended", session)
        await self.drain(session.cwd)
        return True

    async def sweep_idle(self, now: datetime | None = None) -> list[str]:
        """Clear sessions left waiting for input past the idle timeout.

        Returns:
            Thread ids that were cleared.
        """
        now = now or self._clock()
        timeout = timedelta(milliseconds=self.config.session_idle_timeout_ms)
        idle = [
            s
            for s in self.registry.active_sessions()
            if s.status == SessionStatus.WAITING_INPUT and now - s.last_activity_at >= timeout
        ]

        cleared = []
        for session in idle:
            idle_ms = int((now - session.last_activity_at).total_seconds() * 1000)
            self.registry.clear(session.thread_id)
            self._results.pop(session.thread_id, None)
            logger.info("Auto-archived idle session", thread_id=session.thread_id, idle_ms=idle_ms)
            self._notify("on_session_ended", session)
            cleared.append(session.thread_id)

        for cwd in {s.cwd for s in idle}:
            await self.drain(cwd)
        return cleared

    # Queue drain

    async def drain(self, cwd: str) -> AdmissionResult | None:
        """Admit the next queued request for a project if it is free.

        Entries that can no longer be admitted (budget exhausted, project
        removed, thread already active) are dropped and reported to the
        listener; the next entry is tried.
        """
        return await self._drains.run(cwd, lambda: self._drain(cwd))

    async def _drain(self, cwd: str) -> AdmissionResult | None:
        while not self.queue.is_busy(cwd):
            entry = self.queue.dequeue(cwd)
            if entry is None:
                return None

            result = AdmissionResult(
                status=AdmissionStatus.ADMITTED,
                thread_id=entry.thread_id,
                cwd=cwd,
            )
            existing = self.registry.get(entry.thread_id)
            if not is_allowed_cwd(cwd, self.config.projects):
                result.status = AdmissionStatus.CWD_NOT_ALLOWED
            elif existing is not None and existing.is_active:
                result.status = AdmissionStatus.BUSY
            else:
                result.budget = self.budget.check_budget()
                if result.budget:
                    result.status = AdmissionStatus.BUDGET_EXCEEDED

            if not result.admitted:
                logger.warning(
                    "Dropping queued request",
                    cwd=cwd,
                    thread_id=entry.thread_id,
                    reason=result.status.value,
                )
                self._notify("on_queue_rejected", entry, result)
                continue

            result.session = self._start_session(
                entry.thread_id,
                user_id=entry.user_id,
                cwd=cwd,
                model=entry.model,
                prompt_text=entry.prompt_text,
            )
            result.warnings = self.budget.warnings()
            logger.info("Queued request admitted", cwd=cwd, thread_id=entry.thread_id)
            self._notify("on_queue_admitted", entry, result)
            return result
        return None

    # Queries

    def get_session(self, thread_id: str) -> Session | None:
        return self.registry.get(thread_id)

    def active_sessions(self) -> list[Session]:
        return self.registry.active_sessions()

    def queue_position(self, thread_id: str) -> tuple[str, int] | None:
        return self.queue.find_by_thread(thread_id)

    # Recovery

    def recoverable_sessions(self) -> list[RecoverableSession]:
        """Sessions left behind by an unclean stop and not running now."""
        return [
            entry
            for entry in self.recovery.recoverable_sessions()
            if self.registry.get(entry.thread_id) is None
        ]

    async def retry_recovered(
        self,
        thread_id: str,
        queue_if_busy: bool = False,
    ) -> AdmissionResult | None:
        """Re-submit a recovered prompt through the normal gates.

        Returns:
            The admission result, or None if nothing is recoverable for the
            thread. A denied retry leaves the entry in place.
        """
        entry = next((e for e in self.recoverable_sessions() if e.thread_id == thread_id), None)
        if entry is None:
            return None

        result = await self.submit(
            SessionRequest(
                thread_id=entry.thread_id,
                user_id=entry.user_id,
                prompt_text=entry.prompt_text,
                cwd=entry.cwd,
                model=entry.model,
                queue_if_busy=queue_if_busy,
            )
        )
        if result.status == AdmissionStatus.QUEUED:
            self.recovery.remove(thread_id)
        logger.info("Recovered session retried", thread_id=thread_id, status=result.status.value)
        return result

    def dismiss_recovered(self, thread_id: str) -> bool:
        """Forget a recovered session without running it."""
        if self.registry.get(thread_id) is not None:
            return False
        removed = self.recovery.remove(thread_id)
        if removed:
            logger.info("Recovered session dismissed", thread_id=thread_id)
        return removed

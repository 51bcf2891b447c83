"""Polling runner that fires due scheduled prompts.

Every ``schedule_poll_interval`` seconds the runner asks the registry for
due schedules and fires each one. Firing checks the project is still
allowed, that it is not busy and that the budget allows it; a run that
cannot start is skipped, never queued. A fired schedule gets a new
``next_run_at`` (daily/weekly) or is disabled (once).

Opening the thread the run reports into is the adapter's job and is
supplied as ``open_thread``.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

import structlog

from .dispatcher import AdmissionResult, AdmissionStatus, KeyedInflight, SessionDispatcher
from .exceptions import ScheduleError
from .models import ScheduledPrompt, ScheduleType
from .schedules import compute_next_run_at

logger = structlog.get_logger()

# Opens a thread for a scheduled run and returns its id
OpenThread = Callable[[ScheduledPrompt], Awaitable[str]]


class ScheduleRunner:
    """Fires due schedules through the dispatcher."""

    def __init__(
        self,
        dispatcher: SessionDispatcher,
        open_thread: OpenThread,
        poll_interval: float | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            dispatcher: Dispatcher owning the schedule registry and admission gates
            open_thread: Creates the thread a scheduled run reports into
            poll_interval: Seconds between scans (defaults to the configured value)
        """
        self._dispatcher = dispatcher
        self._schedules = dispatcher.schedules
        self._open_thread = open_thread
        self._poll_interval = poll_interval or dispatcher.config.schedule_poll_interval
        self._inflight = KeyedInflight()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Schedule runner started", interval=self._poll_interval)

    async def stop(self) -> None:
        """Stop the polling loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        logger.info("Schedule runner stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._poll_interval)
                await self.run_due()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Schedule runner error")

    async def run_due(self) -> list[AdmissionResult]:
        """Fire every due schedule once."""
        results = []
        for schedule in self._schedules.due_schedules():
            result = await self.fire(schedule)
            if result is not None:
                results.append(result)
        return results

    async def fire(self, schedule: ScheduledPrompt) -> AdmissionResult | None:
        """Fire one schedule. Concurrent calls for the same schedule share one run."""
        return await self._inflight.run(schedule.id, lambda: self._fire(schedule))

    async def _fire(self, schedule: ScheduledPrompt) -> AdmissionResult | None:
        preflight = self._dispatcher.preflight_scheduled(schedule)
        if not preflight.admitted:
            self._log_skip(schedule, preflight)
            return preflight

        try:
            thread_id = await self._open_thread(schedule)
        except Exception:
            logger.exception("Failed to open thread for scheduled prompt", schedule=schedule.name)
            return None

        # Opening the thread awaited, so the gates are checked again
        result = self._dispatcher.start_scheduled(schedule, thread_id)
        if not result.admitted:
            self._log_skip(schedule, result)
            return result

        logger.info("Scheduled prompt started", schedule=schedule.name, thread_id=thread_id)
        self._advance(schedule)
        return result

    def _advance(self, schedule: ScheduledPrompt) -> None:
        now = self._dispatcher.now()
        if schedule.schedule_type == ScheduleType.ONCE:
            self._schedules.update_run_times(schedule.id, now, None)
            self._schedules.set_enabled(schedule.name, False)
            return

        try:
            next_run = compute_next_run_at(schedule, now)
        except ScheduleError as e:
            logger.error("Invalid schedule, disabling", schedule=schedule.name, error=str(e))
            self._schedules.update_run_times(schedule.id, now, None)
            self._schedules.set_enabled(schedule.name, False)
            return
        self._schedules.update_run_times(schedule.id, now, next_run)

    @staticmethod
    def _log_skip(schedule: ScheduledPrompt, result: AdmissionResult) -> None:
        if result.budget:
            logger.warning(
                "Scheduled prompt blocked by budget limit",
                schedule=schedule.name,
                period=result.budget.period.value,
                spent=result.budget.spent,
                limit=result.budget.limit,
            )
        elif result.status == AdmissionStatus.BUSY:
            logger.info(
                "Project busy, skipping scheduled run",
                schedule=schedule.name,
                cwd=schedule.cwd,
            )
        else:
            logger.warning(
                "Scheduled prompt skipped",
                schedule=schedule.name,
                cwd=schedule.cwd,
                reason=result.status.value,
            )

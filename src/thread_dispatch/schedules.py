"""Durable scheduled prompts.

Schedules live in ``schedules.json``. Times are ``HH:MM`` in UTC and all
next-run arithmetic is done in UTC. ``day_of_week`` counts from Sunday (0)
to Saturday (6).
"""

import re
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path

import structlog

from .exceptions import ScheduleError
from .json_store import JsonFileStore
from .models import ScheduledPrompt, ScheduleType, utc_now

logger = structlog.get_logger()

SCHEDULES_FILE = "schedules.json"

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def validate_time(value: str) -> bool:
    """Whether a string is a 24-hour ``HH:MM`` time."""
    return bool(_TIME_RE.match(value))


def _parse_time(value: str) -> time:
    match = _TIME_RE.match(value)
    if not match:
        raise ScheduleError(f'Invalid time "{value}", expected HH:MM')
    return time(int(match.group(1)), int(match.group(2)), tzinfo=UTC)


def _sunday_based_weekday(value: datetime) -> int:
    return (value.weekday() + 1) % 7


def compute_next_run_at(schedule: ScheduledPrompt, now: datetime | None = None) -> datetime:
    """Next time a schedule should fire.

    ``daily`` and ``weekly`` always return a time strictly after ``now``.
    ``once`` returns the stored date at the stored time, even if past.

    Raises:
        ScheduleError: If the recurrence descriptor is incomplete.
    """
    now = (now or utc_now()).astimezone(UTC)
    at = _parse_time(schedule.time)

    if schedule.schedule_type == ScheduleType.ONCE:
        if not schedule.once_date:
            raise ScheduleError(f'Schedule "{schedule.name}" is missing its date')
        try:
            run_date = date.fromisoformat(schedule.once_date)
        except ValueError as e:
            raise ScheduleError(f'Invalid date "{schedule.once_date}"') from e
        return datetime.combine(run_date, at)

    candidate = datetime.combine(now.date(), at)

    if schedule.schedule_type == ScheduleType.DAILY:
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    if schedule.day_of_week is None or not 0 <= schedule.day_of_week <= 6:
        raise ScheduleError(f'Schedule "{schedule.name}" needs a day of week between 0 and 6')
    days_until = schedule.day_of_week - _sunday_based_weekday(candidate)
    if days_until < 0 or (days_until == 0 and candidate <= now):
        days_until += 7
    return candidate + timedelta(days=days_until)


def create_schedule(
    *,
    name: str,
    prompt_text: str,
    cwd: str,
    channel_id: str,
    created_by: str,
    schedule_type: ScheduleType | str,
    time: str,
    day_of_week: int | None = None,
    once_date: str | None = None,
    model: str | None = None,
    now: datetime | None = None,
) -> ScheduledPrompt:
    """Build a validated schedule with its first ``next_run_at`` computed.

    Raises:
        ScheduleError: If the name, time or recurrence is invalid.
    """
    if not name.strip():
        raise ScheduleError("Schedule name must not be empty")
    if not validate_time(time):
        raise ScheduleError(f'Invalid time "{time}", expected HH:MM')

    now = now or utc_now()
    schedule = ScheduledPrompt(
        name=name,
        prompt_text=prompt_text,
        cwd=cwd,
        channel_id=channel_id,
        created_by=created_by,
        schedule_type=ScheduleType(schedule_type),
        time=time,
        day_of_week=day_of_week,
        once_date=once_date,
        model=model,
        created_at=now,
    )
    schedule.next_run_at = compute_next_run_at(schedule, now)
    return schedule


class ScheduleRegistry:
    """CRUD store of scheduled prompts, persisted on every change."""

    def __init__(self, data_dir: Path, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._file = JsonFileStore(data_dir / SCHEDULES_FILE, list, name="schedules")
        self._schedules: list[ScheduledPrompt] = []

        for raw in self._file.load():
            try:
                schedule = ScheduledPrompt.from_dict(raw)
                # A stored recurrence must still be computable
                compute_next_run_at(schedule, self._clock())
            except (AttributeError, KeyError, TypeError, ValueError, ScheduleError) as e:
                logger.warning("Skipping malformed schedule", error=str(e))
                continue
            self._schedules.append(schedule)

    def _save(self) -> bool:
        return self._file.save([s.to_dict() for s in self._schedules])

    def add(self, schedule: ScheduledPrompt) -> bool:
        """Add a schedule.

        Returns:
            False if the name is taken or persistence failed.
        """
        if self.get_by_name(schedule.name) is not None:
            logger.warning("Schedule name already exists", name=schedule.name)
            return False
        self._schedules.append(schedule)
        ok = self._save()
        if ok:
            logger.info("Schedule added", id=schedule.id, name=schedule.name)
        return ok

    def get(self, schedule_id: str) -> ScheduledPrompt | None:
        return next((s for s in self._schedules if s.id == schedule_id), None)

    def get_by_name(self, name: str) -> ScheduledPrompt | None:
        return next((s for s in self._schedules if s.name == name), None)

    def remove(self, name: str) -> bool:
        """Remove a schedule by name. Returns whether it was found and removed."""
        schedule = self.get_by_name(name)
        if schedule is None:
            return False
        self._schedules.remove(schedule)
        ok = self._save()
        if ok:
            logger.info("Schedule removed", name=name)
        return ok

    def toggle(self, name: str) -> bool | None:
        """Flip ``enabled``. Returns the new state, or None if not found."""
        schedule = self.get_by_name(name)
        if schedule is None:
            return None
        return self.set_enabled(name, not schedule.enabled)

    def set_enabled(self, name: str, enabled: bool) -> bool | None:
        """Set ``enabled``. Returns the new state, or None if not found.

        Re-enabling a recurring schedule recomputes ``next_run_at`` so runs
        missed while it was disabled do not fire at once.
        """
        schedule = self.get_by_name(name)
        if schedule is None:
            return None
        if enabled and not schedule.enabled and schedule.schedule_type != ScheduleType.ONCE:
            schedule.next_run_at = compute_next_run_at(schedule, self._clock())
        schedule.enabled = enabled
        self._save()
        logger.info("Schedule enabled state set", name=name, enabled=enabled)
        return enabled

    def update_run_times(
        self,
        schedule_id: str,
        last_run_at: datetime,
        next_run_at: datetime | None,
    ) -> None:
        schedule = self.get(schedule_id)
        if schedule is None:
            return
        schedule.last_run_at = last_run_at
        schedule.next_run_at = next_run_at
        self._save()

    def due_schedules(self, now: datetime | None = None) -> list[ScheduledPrompt]:
        """Enabled schedules whose ``next_run_at`` has arrived."""
        now = now or self._clock()
        return [
            s
            for s in self._schedules
            if s.enabled and s.next_run_at is not None and s.next_run_at <= now
        ]

    # Defined last: the name shadows the builtin for the rest of the class body
    def list(self) -> list[ScheduledPrompt]:
        return self._schedules.copy()

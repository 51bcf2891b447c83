"""Persistent per-day aggregation of completed session cost and usage.

Backed by ``daily-summary.json``: an array with exactly one DailyRecord
per UTC date. Only the most recent 30 dates are retained.
"""

import copy
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import structlog

from .json_store import JsonFileStore
from .models import CompletedSessionRecord, DailyRecord, RepoSummary, TokenUsage, utc_now
from .usage import merge_token_usage

logger = structlog.get_logger()

DAILY_SUMMARY_FILE = "daily-summary.json"
RETENTION_DAYS = 30


def utc_date_key(value: datetime) -> str:
    """UTC calendar date of an aware datetime as YYYY-MM-DD."""
    return value.astimezone(UTC).date().isoformat()


class DailySummaryStore:
    """Tracks completed sessions per calendar day and survives restarts."""

    def __init__(
        self,
        data_dir: Path,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory holding daily-summary.json
            clock: Source of the current time
        """
        self._clock = clock
        self._file = JsonFileStore(data_dir / DAILY_SUMMARY_FILE, list, name="daily_summary")
        self._records: dict[str, DailyRecord] = {}

        for raw in self._file.load():
            try:
                record = DailyRecord.from_dict(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed daily record", error=str(e))
                continue
            self._records[record.date] = record

    def _today_key(self) -> str:
        return utc_date_key(self._clock())

    def _empty(self, date: str) -> DailyRecord:
        return DailyRecord(date=date)

    def _persist(self) -> bool:
        dates = sorted(self._records)
        for stale in dates[:-RETENTION_DAYS]:
            del self._records[stale]
        return self._file.save([self._records[d].to_dict() for d in sorted(self._records)])

    def record_completed_session(self, session: CompletedSessionRecord) -> None:
        """Add a completed session to today's record."""
        today = self._today_key()
        record = self._records.setdefault(today, self._empty(today))

        record.sessions.append(session)
        record.total_cost_usd += session.cost_usd
        record.total_usage = merge_token_usage(record.total_usage, session.usage)
        record.total_duration_ms += session.duration_ms

        self._persist()
        logger.info(
            "Recorded completed session for daily summary",
            thread_id=session.thread_id,
            project=session.project_name,
            cost_usd=session.cost_usd,
        )

    def today_record(self) -> DailyRecord:
        """Copy of today's record (empty if nothing was recorded today)."""
        today = self._today_key()
        return copy.deepcopy(self._records.get(today) or self._empty(today))

    def yesterday_record(self) -> DailyRecord:
        """Copy of yesterday's record, the last complete day."""
        yesterday = utc_date_key(self._clock() - timedelta(days=1))
        return copy.deepcopy(self._records.get(yesterday) or self._empty(yesterday))

    def record_by_date(self, date: str) -> DailyRecord | None:
        """Copy of the record for a YYYY-MM-DD date, or None."""
        record = self._records.get(date)
        return copy.deepcopy(record) if record else None

    def total_cost_for_date(self, date: str) -> float:
        record = self._records.get(date)
        return record.total_cost_usd if record else 0.0

    def clear_today(self) -> None:
        """Drop today's data."""
        self._records.pop(self._today_key(), None)
        self._persist()


def group_sessions_by_repo(sessions: list[CompletedSessionRecord]) -> list[RepoSummary]:
    """Group completed sessions by project path, busiest first."""
    repos: dict[str, RepoSummary] = {}

    for session in sessions:
        repo = repos.get(session.project_path)
        if repo is None:
            repo = RepoSummary(
                project_name=session.project_name,
                project_path=session.project_path,
                total_usage=TokenUsage(),
            )
            repos[session.project_path] = repo
        repo.sessions.append(session)
        repo.total_sessions += 1
        repo.total_cost_usd += session.cost_usd
        repo.total_usage = merge_token_usage(repo.total_usage, session.usage)

    return sorted(repos.values(), key=lambda r: r.total_sessions, reverse=True)

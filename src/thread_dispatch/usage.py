"""Token usage accounting.

Helpers to normalize and merge token usage, and an in-memory tracker of
usage since process start (global, per session and per user).
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

import structlog

from .models import TokenUsage, utc_now

logger = structlog.get_logger()


def calculate_token_usage(raw: dict[str, Any] | None) -> TokenUsage:
    """Build a TokenUsage from the agent's raw usage counters."""
    raw = raw or {}
    input_tokens = raw.get("input_tokens") or 0
    output_tokens = raw.get("output_tokens") or 0
    return TokenUsage(
        input=input_tokens,
        output=output_tokens,
        cache_read=raw.get("cache_read_input_tokens") or 0,
        cache_write=raw.get("cache_creation_input_tokens") or 0,
        total=input_tokens + output_tokens,
    )


def merge_token_usage(a: TokenUsage, b: TokenUsage) -> TokenUsage:
    """Sum two usage records."""
    return TokenUsage(
        input=a.input + b.input,
        output=a.output + b.output,
        cache_read=a.cache_read + b.cache_read,
        cache_write=a.cache_write + b.cache_write,
        total=a.total + b.total,
        cost_usd=a.cost_usd + b.cost_usd,
    )


@dataclass
class UsageRecord:
    """Cumulative usage for a session or user."""

    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    duration_ms: int = 0
    total_queries: int = 0


@dataclass
class GlobalUsageStats:
    """Usage snapshot since process start."""

    booted_at: datetime
    total_sessions: int
    completed_queries: int
    total_usage: TokenUsage
    total_cost_usd: float
    total_duration_ms: int


class UsageStore:
    """In-memory usage counters. Resets on restart."""

    def __init__(self) -> None:
        self._booted_at = utc_now()
        self._total_sessions = 0
        self._completed_queries = 0
        self._total_usage = TokenUsage()
        self._total_cost_usd = 0.0
        self._total_duration_ms = 0
        self._session_usage: dict[str, UsageRecord] = {}
        self._user_usage: dict[str, UsageRecord] = {}

    def record_session_start(self) -> None:
        self._total_sessions += 1

    def record_result(
        self,
        thread_id: str,
        usage: TokenUsage,
        cost_usd: float,
        duration_ms: int,
        user_id: str | None = None,
    ) -> None:
        """Record the usage of one completed query."""
        self._completed_queries += 1
        self._total_usage = merge_token_usage(self._total_usage, usage)
        self._total_cost_usd += cost_usd
        self._total_duration_ms += duration_ms

        self._accumulate(self._session_usage, thread_id, usage, cost_usd, duration_ms)
        if user_id:
            self._accumulate(self._user_usage, user_id, usage, cost_usd, duration_ms)

    @staticmethod
    def _accumulate(
        table: dict[str, UsageRecord],
        key: str,
        usage: TokenUsage,
        cost_usd: float,
        duration_ms: int,
    ) -> None:
        record = table.setdefault(key, UsageRecord())
        record.usage = merge_token_usage(record.usage, usage)
        record.cost_usd += cost_usd
        record.duration_ms += duration_ms
        record.total_queries += 1

    def global_stats(self) -> GlobalUsageStats:
        return GlobalUsageStats(
            booted_at=self._booted_at,
            total_sessions=self._total_sessions,
            completed_queries=self._completed_queries,
            total_usage=replace(self._total_usage),
            total_cost_usd=self._total_cost_usd,
            total_duration_ms=self._total_duration_ms,
        )

    def session_usage(self, thread_id: str) -> UsageRecord | None:
        record = self._session_usage.get(thread_id)
        return replace(record, usage=replace(record.usage)) if record else None

    def user_usage(self, user_id: str) -> UsageRecord | None:
        record = self._user_usage.get(user_id)
        return replace(record, usage=replace(record.usage)) if record else None

    def all_user_usage(self) -> dict[str, UsageRecord]:
        return {
            user_id: replace(record, usage=replace(record.usage))
            for user_id, record in self._user_usage.items()
        }

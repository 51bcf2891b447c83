"""Per-user sliding-window rate limiting.

``check_rate_limit`` and ``record_request`` are pure functions over a
user's recent request timestamps (milliseconds). ``RateLimitRegistry``
owns the per-user histories for one process.

A timestamp exactly ``window_ms`` old is expired: the window is the
half-open interval ``(now - window_ms, now]``.
"""

from dataclasses import dataclass, field

import structlog

from .config import RateLimitPolicy

logger = structlog.get_logger()


@dataclass
class RateLimitEntry:
    """Request timestamps (ms) recorded for one user."""

    timestamps: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""

    allowed: bool
    remaining: int
    retry_after_ms: float | None = None


def _in_window(timestamps: list[float], now: float, window_ms: int) -> list[float]:
    return [t for t in timestamps if now - t < window_ms]


def check_rate_limit(
    entry: RateLimitEntry | None,
    policy: RateLimitPolicy,
    now: float,
) -> RateLimitResult:
    """Check whether a user may make another request.

    Args:
        entry: The user's history, or None if the user has none
        policy: Window length and request allowance
        now: Current time in milliseconds

    Returns:
        Whether the request is allowed, the remaining allowance, and when
        denied, how long until the oldest request leaves the window.
    """
    valid = _in_window(entry.timestamps, now, policy.window_ms) if entry else []

    if not valid:
        if policy.max_requests <= 0:
            return RateLimitResult(allowed=False, remaining=0, retry_after_ms=policy.window_ms)
        return RateLimitResult(allowed=True, remaining=policy.max_requests)

    remaining = policy.max_requests - len(valid)
    if remaining <= 0:
        oldest = min(valid)
        return RateLimitResult(
            allowed=False,
            remaining=0,
            retry_after_ms=policy.window_ms - (now - oldest),
        )

    return RateLimitResult(allowed=True, remaining=remaining)


def record_request(entry: RateLimitEntry | None, now: float, window_ms: int) -> RateLimitEntry:
    """Prune expired timestamps and append ``now``.

    Only call this after the request has been allowed.
    """
    timestamps = _in_window(entry.timestamps, now, window_ms) if entry else []
    timestamps.append(now)
    return RateLimitEntry(timestamps=timestamps)


class RateLimitRegistry:
    """In-memory rate limit histories keyed by user identifier."""

    def __init__(self) -> None:
        self._entries: dict[str, RateLimitEntry] = {}

    def get_entry(self, user_id: str) -> RateLimitEntry | None:
        return self._entries.get(user_id)

    def set_entry(self, user_id: str, entry: RateLimitEntry) -> None:
        self._entries[user_id] = entry

    def check(self, user_id: str, policy: RateLimitPolicy, now: float) -> RateLimitResult:
        result = check_rate_limit(self._entries.get(user_id), policy, now)
        if not result.allowed:
            logger.info(
                "Rate limit exceeded",
                user_id=user_id,
                retry_after_ms=result.retry_after_ms,
            )
        return result

    def record(self, user_id: str, policy: RateLimitPolicy, now: float) -> RateLimitEntry:
        entry = record_request(self._entries.get(user_id), now, policy.window_ms)
        self._entries[user_id] = entry
        return entry

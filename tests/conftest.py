"""Pytest fixtures for thread dispatch tests."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from thread_dispatch.bridge import BridgeRun, BridgeUpdate, BridgeUpdateKind
from thread_dispatch.config import DispatchConfig, ProjectConfig
from thread_dispatch.dispatcher import DispatchListener, SessionDispatcher


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeBridge:
    """Execution bridge that records runs and lets tests drive callbacks."""

    def __init__(self) -> None:
        self.runs: list[BridgeRun] = []
        self.session_id: str | None = None
        self.error: Exception | None = None

    async def start(self, run: BridgeRun) -> str | None:
        self.runs.append(run)
        if self.error:
            raise self.error
        return self.session_id

    def last_run(self, thread_id: str) -> BridgeRun:
        return [r for r in self.runs if r.thread_id == thread_id][-1]

    def finish(
        self,
        thread_id: str,
        cost_usd: float = 0.0,
        session_id: str = "sdk-session",
    ) -> None:
        """Stream init and result messages then complete the latest run."""
        run = self.last_run(thread_id)
        run.on_message(BridgeUpdate(kind=BridgeUpdateKind.INIT, session_id=session_id))
        run.on_message(
            BridgeUpdate(
                kind=BridgeUpdateKind.RESULT,
                text="Done",
                usage={"input_tokens": 100, "output_tokens": 50},
                cost_usd=cost_usd,
                duration_ms=1200,
            )
        )
        run.on_complete()


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at 2025-06-10 12:00 UTC (a Tuesday)."""
    return FakeClock(datetime(2025, 6, 10, 12, 0, tzinfo=UTC))


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def config(data_dir: Path) -> DispatchConfig:
    """Configuration with two users and two projects."""
    return DispatchConfig(
        allowed_user_ids=["user-a", "user-b"],
        projects=[
            ProjectConfig(name="repo", path="/repo"),
            ProjectConfig(name="other", path="/other"),
        ],
        data_dir=str(data_dir),
        approval_timeout_ms=0,
    )


@pytest.fixture
def bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture
def listener() -> MagicMock:
    return MagicMock(spec=DispatchListener)


@pytest.fixture
def dispatcher(
    config: DispatchConfig,
    bridge: FakeBridge,
    listener: MagicMock,
    clock: FakeClock,
) -> SessionDispatcher:
    return SessionDispatcher(config, bridge, listener=listener, clock=clock)

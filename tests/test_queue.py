"""Tests for the per-project admission queue."""

import json
from pathlib import Path

import pytest

from thread_dispatch.models import QueueEntry, SessionStatus
from thread_dispatch.queue import QUEUE_FILE, ProjectQueue
from thread_dispatch.sessions import SessionRegistry


@pytest.fixture
def registry(clock) -> SessionRegistry:
    return SessionRegistry(clock=clock)


@pytest.fixture
def queue(registry: SessionRegistry, data_dir: Path) -> ProjectQueue:
    return ProjectQueue(registry, data_dir)


def _entry(thread_id: str, cwd: str = "/repo") -> QueueEntry:
    return QueueEntry(
        user_id="user-a",
        prompt_text=f"prompt for {thread_id}",
        cwd=cwd,
        model="claude-opus-4-6",
        thread_id=thread_id,
    )


class TestIsBusy:
    """Test the project busy check."""

    def test_idle_project(self, queue: ProjectQueue) -> None:
        """Test a project with no sessions is free."""
        assert queue.is_busy("/repo") is False

    @pytest.mark.parametrize(
        "status",
        [
            SessionStatus.RUNNING,
            SessionStatus.AWAITING_PERMISSION,
            SessionStatus.WAITING_INPUT,
        ],
    )
    def test_busy_statuses(self, queue: ProjectQueue, registry: SessionRegistry, status) -> None:
        """Test every non-terminal status holds the project."""
        registry.create("t-1", user_id="user-a", cwd="/repo", model="m", prompt_text="p")
        registry.set_status("t-1", status)

        assert queue.is_busy("/repo") is True
        assert queue.is_busy("/other") is False

    def test_terminal_frees_project(self, queue: ProjectQueue, registry: SessionRegistry) -> None:
        """Test a completed session no longer holds the project."""
        registry.create("t-1", user_id="user-a", cwd="/repo", model="m", prompt_text="p")
        registry.complete("t-1")
        assert queue.is_busy("/repo") is False


class TestQueueing:
    """Test enqueue, dequeue and cancel."""

    def test_fifo_with_positions(self, queue: ProjectQueue) -> None:
        """Test entries come out in arrival order."""
        assert queue.enqueue("/repo", _entry("t-1")) == 1
        assert queue.enqueue("/repo", _entry("t-2")) == 2
        assert queue.enqueue("/other", _entry("t-3", "/other")) == 1

        assert queue.dequeue("/repo").thread_id == "t-1"
        assert queue.dequeue("/repo").thread_id == "t-2"
        assert queue.dequeue("/repo") is None

    def test_empty_queue_removed(self, queue: ProjectQueue) -> None:
        """Test draining a queue drops its key."""
        queue.enqueue("/repo", _entry("t-1"))
        queue.dequeue("/repo")
        assert queue.all_queues() == {}

    def test_position_and_find(self, queue: ProjectQueue) -> None:
        """Test locating queued threads."""
        queue.enqueue("/repo", _entry("t-1"))
        queue.enqueue("/repo", _entry("t-2"))

        assert queue.position("/repo", "t-2") == 2
        assert queue.position("/repo", "t-9") is None
        assert queue.find_by_thread("t-2") == ("/repo", 2)
        assert queue.find_by_thread("t-9") is None

    def test_cancel(self, queue: ProjectQueue) -> None:
        """Test cancelling removes only that thread's entry."""
        queue.enqueue("/repo", _entry("t-1"))
        queue.enqueue("/repo", _entry("t-2"))

        assert queue.cancel("/repo", "t-1") is True
        assert queue.cancel("/repo", "t-1") is False
        assert queue.position("/repo", "t-2") == 1

    def test_cancel_last_entry_removes_key(self, queue: ProjectQueue) -> None:
        """Test cancelling the only entry leaves no empty queue."""
        queue.enqueue("/repo", _entry("t-1"))
        queue.cancel("/repo", "t-1")
        assert queue.all_queues() == {}
        assert queue.cancel("/repo", "t-1") is False

    def test_snapshots_are_copies(self, queue: ProjectQueue) -> None:
        """Test returned lists cannot mutate the queue."""
        queue.enqueue("/repo", _entry("t-1"))
        queue.queue("/repo").clear()
        queue.all_queues()["/repo"].clear()
        assert queue.total_queued() == 1


class TestPersistence:
    """Test queue.json persistence."""

    def test_restored_on_startup(self, registry: SessionRegistry, data_dir: Path) -> None:
        """Test queued requests survive a restart in order."""
        first = ProjectQueue(registry, data_dir)
        first.enqueue("/repo", _entry("t-1"))
        first.enqueue("/repo", _entry("t-2"))

        restored = ProjectQueue(registry, data_dir)
        assert [e.thread_id for e in restored.queue("/repo")] == ["t-1", "t-2"]
        assert restored.total_queued() == 2

    def test_file_format(self, queue: ProjectQueue, data_dir: Path) -> None:
        """Test the file maps project paths to camelCase entries."""
        queue.enqueue("/repo", _entry("t-1"))

        saved = json.loads((data_dir / QUEUE_FILE).read_text())
        assert list(saved) == ["/repo"]
        assert saved["/repo"][0]["threadId"] == "t-1"
        assert saved["/repo"][0]["queuedAt"].endswith("Z")

    def test_malformed_entries_skipped(self, registry: SessionRegistry, data_dir: Path) -> None:
        """Test bad entries are dropped and good ones kept."""
        good = _entry("t-1").to_dict()
        (data_dir / QUEUE_FILE).write_text(
            json.dumps({"/repo": [{"threadId": "x"}, good], "/bad": "nope"})
        )

        restored = ProjectQueue(registry, data_dir)
        assert [e.thread_id for e in restored.queue("/repo")] == ["t-1"]
        assert restored.all_queues().keys() == {"/repo"}

    def test_wrongly_typed_entries_skipped(
        self, registry: SessionRegistry, data_dir: Path
    ) -> None:
        """Test non-object entries and non-string timestamps are dropped."""
        bad_time = _entry("t-2").to_dict()
        bad_time["queuedAt"] = 123
        (data_dir / QUEUE_FILE).write_text(
            json.dumps({"/repo": ["garbage", bad_time, _entry("t-1").to_dict()]})
        )

        restored = ProjectQueue(registry, data_dir)
        assert [e.thread_id for e in restored.queue("/repo")] == ["t-1"]

    def test_in_memory_without_data_dir(self, registry: SessionRegistry, data_dir: Path) -> None:
        """Test no file is written without a data directory."""
        queue = ProjectQueue(registry)
        queue.enqueue("/repo", _entry("t-1"))
        assert not (data_dir / QUEUE_FILE).exists()

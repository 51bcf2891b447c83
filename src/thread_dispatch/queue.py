"""Per-project FIFO admission queue.

Queues are keyed by project path. ``is_busy`` is the only mutual
exclusion point: a caller checks it before starting a session and, when a
session leaves the busy set, dequeues and admits the next entry for that
project. Queues are persisted to ``queue.json`` on every change and
restored at startup.
"""

from pathlib import Path

import structlog

from .json_store import JsonFileStore
from .models import QueueEntry
from .sessions import SessionRegistry

logger = structlog.get_logger()

QUEUE_FILE = "queue.json"


class ProjectQueue:
    """One FIFO queue per project path."""

    def __init__(self, registry: SessionRegistry, data_dir: Path | None = None) -> None:
        """Initialize the queue.

        Args:
            registry: Session registry consulted by the busy check
            data_dir: Directory for queue.json; None keeps queues in memory only
        """
        self._registry = registry
        self._queues: dict[str, list[QueueEntry]] = {}
        self._file = (
            JsonFileStore(data_dir / QUEUE_FILE, dict, name="queue") if data_dir else None
        )
        if self._file:
            self._restore()

    def _restore(self) -> None:
        for cwd, raw_entries in self._file.load().items():
            if not isinstance(raw_entries, list):
                continue
            entries = []
            for raw in raw_entries:
                try:
                    entries.append(QueueEntry.from_dict(raw))
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed queue entry", cwd=cwd, error=str(e))
            if entries:
                self._queues[cwd] = entries

        total = self.total_queued()
        if total:
            logger.info("Restored queued requests", count=total, projects=len(self._queues))

    def _save(self) -> None:
        if self._file:
            self._file.save(
                {cwd: [e.to_dict() for e in entries] for cwd, entries in self._queues.items()}
            )

    def is_busy(self, cwd: str) -> bool:
        """Whether any active session holds this project directory."""
        return any(s.cwd == cwd and s.holds_project for s in self._registry.active_sessions())

    def enqueue(self, cwd: str, entry: QueueEntry) -> int:
        """Append an entry and return its 1-based position."""
        queue = self._queues.setdefault(cwd, [])
        queue.append(entry)
        self._save()
        logger.info(
            "Request queued",
            cwd=cwd,
            thread_id=entry.thread_id,
            position=len(queue),
        )
        return len(queue)

    def dequeue(self, cwd: str) -> QueueEntry | None:
        """Pop the oldest entry. Empty queues are dropped."""
        queue = self._queues.get(cwd)
        if not queue:
            return None
        entry = queue.pop(0)
        if not queue:
            del self._queues[cwd]
        self._save()
        logger.info("Request dequeued", cwd=cwd, thread_id=entry.thread_id)
        return entry

    def cancel(self, cwd: str, thread_id: str) -> bool:
        """Remove the entry for a thread. Returns whether anything was removed."""
        queue = self._queues.get(cwd)
        if not queue:
            return False
        remaining = [e for e in queue if e.thread_id != thread_id]
        if len(remaining) == len(queue):
            return False
        if remaining:
            self._queues[cwd] = remaining
        else:
            del self._queues[cwd]
        self._save()
        logger.info("Queued request cancelled", cwd=cwd, thread_id=thread_id)
        return True

    def queue(self, cwd: str) -> list[QueueEntry]:
        """Snapshot of a project's queue, oldest first."""
        return list(self._queues.get(cwd, []))

    def position(self, cwd: str, thread_id: str) -> int | None:
        for index, entry in enumerate(self._queues.get(cwd, [])):
            if entry.thread_id == thread_id:
                return index + 1
        return None

    def find_by_thread(self, thread_id: str) -> tuple[str, int] | None:
        """Locate a thread's entry in any project.

        Returns:
            ``(cwd, position)`` or None.
        """
        for cwd, entries in self._queues.items():
            for index, entry in enumerate(entries):
                if entry.thread_id == thread_id:
                    return cwd, index + 1
        return None

    def all_queues(self) -> dict[str, list[QueueEntry]]:
        return {cwd: list(entries) for cwd, entries in self._queues.items()}

    def total_queued(self) -> int:
        return sum(len(entries) for entries in self._queues.values())

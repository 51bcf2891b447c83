"""Crash-safety projection of active sessions.

``active-sessions.json`` holds one RecoverableSession per non-terminal
session. A clean shutdown clears every active session first, so entries
present at startup were orphaned by an unclean stop. What to do with them
is the dispatcher's decision; this ledger only stores and lists them.
"""

from pathlib import Path

import structlog

from .json_store import JsonFileStore
from .models import RecoverableSession, Session

logger = structlog.get_logger()

ACTIVE_SESSIONS_FILE = "active-sessions.json"


class RecoveryLedger:
    """Durable upsert/remove store of RecoverableSession projections."""

    def __init__(self, data_dir: Path) -> None:
        self._file = JsonFileStore(data_dir / ACTIVE_SESSIONS_FILE, list, name="active_sessions")
        self._entries: dict[str, RecoverableSession] = {}

        for raw in self._file.load():
            try:
                entry = RecoverableSession.from_dict(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed recovery entry", error=str(e))
                continue
            self._entries[entry.thread_id] = entry

        if self._entries:
            logger.info("Found sessions from previous run", count=len(self._entries))

    def _save(self) -> bool:
        return self._file.save([e.to_dict() for e in self._entries.values()])

    def persist(self, session: Session) -> None:
        """Upsert the projection for a session."""
        self._entries[session.thread_id] = RecoverableSession.from_session(session)
        self._save()

    def remove(self, thread_id: str) -> bool:
        """Drop the projection for a thread. Returns whether one existed."""
        if self._entries.pop(thread_id, None) is None:
            return False
        self._save()
        return True

    def get(self, thread_id: str) -> RecoverableSession | None:
        return self._entries.get(thread_id)

    def recoverable_sessions(self) -> list[RecoverableSession]:
        """All projections, oldest first."""
        return sorted(self._entries.values(), key=lambda e: e.started_at)

    def clear_all(self) -> None:
        self._entries.clear()
        self._save()
        logger.info("Recovery ledger cleared")

    def count(self) -> int:
        return len(self._entries)

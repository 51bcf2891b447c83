"""Flat-file JSON persistence shared by the durable stores.

Each store keeps one JSON document and rewrites it in full on every
mutation. Reads fail open: a missing, unreadable or malformed file yields
the empty default so a corrupt file never blocks startup. Writes go to a
temporary file first and are swapped in with ``os.replace``, so a write is
either applied completely or not at all.
"""

import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()


class JsonFileStore:
    """Reads and writes a single JSON document."""

    def __init__(
        self,
        path: Path,
        default_factory: Callable[[], Any],
        name: str | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            path: Location of the JSON file
            default_factory: Builds the empty document (e.g. ``list`` or ``dict``)
            name: Store name used in log events
        """
        self.path = path
        self._default_factory = default_factory
        self._name = name or path.stem

    def load(self) -> Any:
        """Load the document, or the empty default if it cannot be read."""
        default = self._default_factory()
        if not self.path.exists():
            return default

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(
                "Failed to load store, starting fresh",
                store=self._name,
                path=str(self.path),
                error=str(e),
            )
            return default

        if not isinstance(data, type(default)):
            logger.warning(
                "Unexpected store document type, starting fresh",
                store=self._name,
                path=str(self.path),
                found=type(data).__name__,
            )
            return default

        return data

    def save(self, data: Any) -> bool:
        """Rewrite the document.

        Returns:
            True if the file was written, False if persistence failed.
        """
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(
                "Failed to save store",
                store=self._name,
                path=str(self.path),
                error=str(e),
            )
            return False
        return True

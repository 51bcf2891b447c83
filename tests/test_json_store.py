"""Tests for the JSON file store."""

import json
from pathlib import Path
from unittest.mock import patch

from thread_dispatch.json_store import JsonFileStore


class TestJsonFileStore:
    """Test JsonFileStore."""

    def test_missing_file_returns_default(self, tmp_path: Path) -> None:
        """Test a missing file loads as the empty default."""
        assert JsonFileStore(tmp_path / "x.json", list).load() == []

    def test_save_then_load(self, tmp_path: Path) -> None:
        """Test saved documents are read back."""
        store = JsonFileStore(tmp_path / "nested" / "x.json", dict)
        assert store.save({"a": [1, 2]}) is True
        assert store.load() == {"a": [1, 2]}
        assert not (tmp_path / "nested" / "x.json.tmp").exists()

    def test_corrupt_file_returns_default(self, tmp_path: Path) -> None:
        """Test malformed JSON fails open."""
        path = tmp_path / "x.json"
        path.write_text("[1, 2")
        assert JsonFileStore(path, list).load() == []

    def test_wrong_document_type_returns_default(self, tmp_path: Path) -> None:
        """Test a document of the wrong shape fails open."""
        path = tmp_path / "x.json"
        path.write_text(json.dumps({"not": "a list"}))
        assert JsonFileStore(path, list).load() == []

    def test_unserializable_save_fails_without_clobbering(self, tmp_path: Path) -> None:
        """Test a failed write leaves the previous document intact."""
        store = JsonFileStore(tmp_path / "x.json", list)
        store.save([1])

        assert store.save([object()]) is False
        assert store.load() == [1]

    def test_replace_failure_reported(self, tmp_path: Path) -> None:
        """Test an OS error during the swap is reported, not raised."""
        store = JsonFileStore(tmp_path / "x.json", list)
        with patch("thread_dispatch.json_store.os.replace", side_effect=OSError("disk full")):
            assert store.save([1]) is False
        assert store.load() == []

    def test_undecodable_file_returns_default(self, tmp_path: Path) -> None:
        """Test bytes that are not UTF-8 fail open."""
        path = tmp_path / "x.json"
        path.write_bytes(b"\xff\xfe[\x00")
        assert JsonFileStore(path, list).load() == []

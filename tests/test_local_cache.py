"""Tests for the local crash-recovery snapshot."""

from pathlib import Path

import pytest

from cardgrader.models.card import CardStatus
from cardgrader.services.local_cache import LocalSnapshotCache
from cardgrader.services.transitions import RECOVERED_MESSAGE
from tests.conftest import make_card, make_graded_card


class TestLocalSnapshotCache:
    def test_missing_snapshot_is_empty(self, tmp_path: Path) -> None:
        cache = LocalSnapshotCache(tmp_path / "missing.json")

        assert cache.read() == []

    def test_write_then_read(self, tmp_path: Path) -> None:
        """Records survive a write and read unchanged."""
        cache = LocalSnapshotCache(tmp_path / "nested" / "backup.json")
        records = [make_graded_card(id="a"), make_card(id="b")]

        cache.write(records)

        assert cache.read() == records

    def test_write_replaces_previous_snapshot(self, tmp_path: Path) -> None:
        cache = LocalSnapshotCache(tmp_path / "backup.json")
        cache.write([make_card(id="a")])

        cache.write([make_card(id="b")])

        assert [r.id for r in cache.read()] == ["b"]
        assert [p.name for p in tmp_path.iterdir()] == ["backup.json"]

    def test_corrupt_snapshot_is_empty(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        """An unreadable snapshot never blocks startup."""
        path = tmp_path / "backup.json"
        path.write_text("{not json", encoding="utf-8")

        assert LocalSnapshotCache(path).read() == []
        assert [r.message for r in caplog.records] == ["LOCAL_SNAPSHOT_UNREADABLE"]
        assert caplog.records[0].path == str(path)

    def test_non_list_snapshot_is_empty(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        path = tmp_path / "backup.json"
        path.write_text('{"cards": []}', encoding="utf-8")

        assert LocalSnapshotCache(path).read() == []
        assert [r.message for r in caplog.records] == ["LOCAL_SNAPSHOT_INVALID"]

    def test_recover_fails_interrupted_cards(self, tmp_path: Path) -> None:
        """Cards saved mid-operation come back as failed."""
        cache = LocalSnapshotCache(tmp_path / "backup.json")
        cache.write([make_card(id="a", status=CardStatus.CHALLENGING), make_graded_card(id="b")])

        recovered = cache.recover()

        assert recovered[0].status == CardStatus.GRADING_FAILED
        assert recovered[0].error_message == RECOVERED_MESSAGE
        assert recovered[0].failed_from == CardStatus.CHALLENGING
        assert recovered[1].status == CardStatus.NEEDS_REVIEW

    def test_unwritable_location_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("", encoding="utf-8")

        with pytest.raises(OSError):
            LocalSnapshotCache(blocker / "backup.json").write([make_card()])

"""Tests for the periodic stale-clean timer."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from tiles.errors import StorageError
from tiles.maintenance import PeriodicCleaner
from tiles.service import CleanResult


class TestPeriodicCleaner:
    """Tests for PeriodicCleaner."""

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            PeriodicCleaner(MagicMock(), 0)

    def test_run_once_returns_result(self):
        clean = MagicMock(return_value=CleanResult(removed_count=3, freed_bytes=900))
        cleaner = PeriodicCleaner(clean, 60)

        result = cleaner.run_once()

        assert result.removed_count == 3
        assert cleaner.runs == 1
        assert cleaner.failures == 0

    def test_failed_run_is_logged_and_counted(self, caplog):
        cleaner = PeriodicCleaner(MagicMock(side_effect=StorageError('disk gone')), 60)

        assert cleaner.run_once() is None
        assert cleaner.failures == 1
        assert 'disk gone' in caplog.text

    def test_thread_runs_clean_on_timer(self):
        ran = threading.Event()

        def clean():
            ran.set()
            return CleanResult()

        cleaner = PeriodicCleaner(clean, 0.01)
        cleaner.start()
        try:
            assert ran.wait(timeout=2.0)
        finally:
            cleaner.stop()
        assert not cleaner.is_running
        assert cleaner.runs >= 1

    def test_start_and_stop_are_idempotent(self):
        clean = MagicMock(return_value=CleanResult())
        cleaner = PeriodicCleaner(clean, 3600)
        cleaner.start()
        cleaner.start()
        assert cleaner.is_running
        cleaner.stop()
        cleaner.stop()
        assert not cleaner.is_running
        clean.assert_not_called()

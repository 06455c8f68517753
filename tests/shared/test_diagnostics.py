"""Tests for shared.diagnostics helpers."""

import logging
from unittest.mock import patch

import pytest

import shared.diagnostics as diagnostics


class TestMemoryInfo:
    """Tests for memory sampling helpers."""

    def test_process_rss_positive(self):
        assert diagnostics.get_process_rss() > 0

    def test_total_memory_exceeds_rss(self):
        assert diagnostics.get_total_memory() > diagnostics.get_process_rss()

    def test_get_memory_info_keys(self):
        info = diagnostics.get_memory_info()
        assert 'process_rss_mb' in info
        assert 'system_available_mb' in info

    def test_get_memory_info_reports_errors(self):
        with patch('shared.diagnostics.psutil.Process', side_effect=RuntimeError('denied')):
            info = diagnostics.get_memory_info()
        assert 'error' in info

    def test_rss_without_psutil(self):
        with patch.object(diagnostics, '_PSUTIL_AVAILABLE', False):
            with pytest.raises(RuntimeError):
                diagnostics.get_process_rss()
            assert diagnostics.get_memory_info() == {'error': 'psutil not available'}


class TestLoggingHelpers:
    """Tests for log helpers and setup_logging."""

    def test_log_memory_usage(self, caplog):
        with caplog.at_level(logging.INFO):
            diagnostics.log_memory_usage('after 500 tiles')
        assert 'Memory usage (after 500 tiles)' in caplog.text

    def test_log_memory_usage_unavailable(self, caplog):
        with patch.object(diagnostics, '_PSUTIL_AVAILABLE', False):
            with caplog.at_level(logging.INFO, logger='shared.diagnostics'):
                diagnostics.log_memory_usage('x')
        assert 'Memory usage (x)' not in caplog.text

    def test_setup_logging_stdout_only(self):
        with patch('shared.diagnostics.logging.basicConfig') as basic:
            assert diagnostics.setup_logging() is None
        handlers = basic.call_args.kwargs['handlers']
        assert len(handlers) == 1
        assert basic.call_args.kwargs['format'] == diagnostics.LOG_FORMAT

    def test_setup_logging_with_file(self, tmp_path):
        log_dir = tmp_path / 'logs'
        with patch('shared.diagnostics.logging.basicConfig') as basic:
            log_file = diagnostics.setup_logging(log_dir, level=logging.DEBUG)
        handlers = basic.call_args.kwargs['handlers']
        try:
            assert log_file == log_dir / 'tilecache.log'
            assert log_file.exists()
            assert len(handlers) == 2
            assert basic.call_args.kwargs['level'] == logging.DEBUG
        finally:
            for handler in handlers:
                handler.close()

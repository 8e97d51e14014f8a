# =============================================================================
# tests/unit/test_logging.py
# Unit Tests for logging setup
# =============================================================================

import logging
import pytest


class TestLoggingSetup:

    def test_noisy_client_loggers_quieted(self):
        from bp_core.logging import setup_logging

        setup_logging(level=logging.DEBUG, log_to_file=False)

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("postgrest").level == logging.WARNING

    def test_log_file_written_to_log_dir(self, tmp_path, monkeypatch):
        from bp_core.logging import config as log_config

        monkeypatch.setattr(log_config, "LOG_DIR", tmp_path / "logs")

        log_config.setup_logging(log_filename="sync.log")
        log_config.get_logger("bp_core.test").info("queued reading")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "queued reading" in (tmp_path / "logs" / "sync.log").read_text()


class TestLogContext:

    def test_completed_operation_logged(self, caplog):
        from bp_core.logging import LogContext, get_logger

        with caplog.at_level(logging.INFO):
            with LogContext(get_logger("bp_core.test"), "Offline sync"):
                pass

        assert "Offline sync... started" in caplog.text
        assert "Offline sync... completed" in caplog.text

    def test_failure_logged_and_propagated(self, caplog):
        from bp_core.logging import LogContext, get_logger

        with caplog.at_level(logging.INFO):
            with pytest.raises(ValueError):
                with LogContext(get_logger("bp_core.test"), "Offline sync"):
                    raise ValueError("bad queue")

        assert "Offline sync... failed" in caplog.text

"""Tests for Structured Logging.

Tests cover:
- configure_logging with JSON and console formats
- get_logger function
- SessionLogger and AvatarLogger events
- init_logging function
"""

from unittest.mock import MagicMock, patch

import structlog

from talkai.observability.logging import (
    AvatarLogger,
    SessionLogger,
    configure_logging,
    get_logger,
    init_logging,
)


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_json_format(self):
        configure_logging(level="INFO", json_format=True)

    def test_configure_console_format(self):
        configure_logging(level="DEBUG", json_format=False)

    def test_warn_alias(self):
        """WARN (as accepted by settings) maps to WARNING."""
        configure_logging(level="WARN")

    def test_init_logging(self):
        with patch("talkai.observability.logging.configure_logging") as configure:
            init_logging(json_format=False, level="ERROR")

        configure.assert_called_once_with(level="ERROR", json_format=False)


class TestGetLogger:
    def test_returns_logger(self):
        logger = get_logger("talkai.test")

        assert hasattr(logger, "info")
        assert hasattr(logger, "bind")


class TestSessionLogger:
    """SessionLogger binds session_id and emits typed events."""

    def setup_method(self):
        self.log = MagicMock()
        bound = MagicMock()
        bound.bind.return_value = self.log
        self.patcher = patch("talkai.observability.logging.get_logger", return_value=bound)
        self.patcher.start()
        self.bound = bound

    def teardown_method(self):
        self.patcher.stop()

    def test_binds_session(self):
        SessionLogger("s-1")

        self.bound.bind.assert_called_once_with(session_id="s-1")

    def test_session_ended(self):
        SessionLogger("s-1").session_ended(reason="user", duration_s=15)

        self.log.info.assert_called_once_with(
            "session_ended",
            event_type="session.ended",
            reason="user",
            duration_s=15,
        )

    def test_status_change(self):
        SessionLogger("s-1").status_change("live", "degraded", "avatar_dropped")

        _, kwargs = self.log.info.call_args
        assert kwargs["old_status"] == "live"
        assert kwargs["new_status"] == "degraded"

    def test_degraded_is_warning(self):
        SessionLogger("s-1").degraded("timeout")

        self.log.warning.assert_called_once()

    def test_fatal_error(self):
        SessionLogger("s-1").fatal_error("credential", "missing")

        self.log.error.assert_called_once_with(
            "session_failed",
            event_type="session.failed",
            stage="credential",
            error="missing",
        )


class TestAvatarLogger:
    def test_without_session(self):
        with patch("talkai.observability.logging.get_logger") as get:
            AvatarLogger()

        get.return_value.bind.assert_not_called()

    def test_bind_avatar_session(self):
        with patch("talkai.observability.logging.get_logger") as get:
            logger = AvatarLogger("s-1")
            logger.bind("av-1")

        get.return_value.bind.return_value.bind.assert_called_once_with(avatar_session_id="av-1")

    def test_events_do_not_raise(self):
        structlog.reset_defaults()
        logger = AvatarLogger("s-1")

        logger.state_change("idle", "creating_session")
        logger.transport_state("connected")
        logger.connect_failed("negotiate", "bad sdp")
        logger.send_failed("audio", "http", "503")
        logger.audio_dropped("drop_oldest", 256)

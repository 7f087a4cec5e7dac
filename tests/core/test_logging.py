"""Tests for logging helpers."""

import pytest


class TestLogging:
    """configure_logging and get_logger."""

    def test_unknown_level_rejected(self) -> None:
        from cadence.core.logging import configure_logging

        with pytest.raises(ValueError, match="Unknown log level: LOUD"):
            configure_logging(level="LOUD")

    def test_initial_values_are_bound(self) -> None:
        from structlog.testing import capture_logs

        from cadence.core.logging import get_logger

        with capture_logs() as logs:
            get_logger("cadence.test", execution_id="e1").info("stage_dispatched", recipients=3)

        assert logs == [
            {
                "event": "stage_dispatched",
                "execution_id": "e1",
                "recipients": 3,
                "log_level": "info",
            }
        ]

"""Tests for logging setup and signal handling."""

from __future__ import annotations

import json
import logging
import os
import signal
from collections.abc import Iterator

import pytest

from widgetctl import main
from widgetctl.main import JsonFormatter, cancel_on_signal, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    level = root.level
    yield
    if main._handler is not None:
        root.removeHandler(main._handler)
        main._handler = None
    root.setLevel(level)


class FakeEngine:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_extra_fields_included(self) -> None:
        """Test that extra fields appear next to the standard keys."""
        record = logging.LogRecord(
            "widgetctl.executor", logging.WARNING, __file__, 1, "Retrying", None, None
        )
        record.resource_id = "iam_role.x"
        record.attempt = 2

        data = json.loads(JsonFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["message"] == "Retrying"
        assert data["logger"] == "widgetctl.executor"
        assert data["resource_id"] == "iam_role.x"
        assert data["attempt"] == 2
        assert data["timestamp"].endswith("Z")


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_repeated_setup_keeps_one_handler(self) -> None:
        """Test that calling setup twice replaces the handler."""
        root = logging.getLogger()
        before = len(root.handlers)

        setup_logging("DEBUG", json_output=True)
        setup_logging("INFO", json_output=False)

        assert len(root.handlers) == before + 1
        assert root.level == logging.INFO
        assert not isinstance(main._handler.formatter, JsonFormatter)  # type: ignore[union-attr]


class TestCancelOnSignal:
    """Tests for signal-driven cancellation."""

    def test_sigterm_cancels_target(self) -> None:
        """Test that SIGTERM cancels and the previous handler comes back."""
        previous = signal.getsignal(signal.SIGTERM)
        engine = FakeEngine()

        with cancel_on_signal(engine):
            os.kill(os.getpid(), signal.SIGTERM)

        assert engine.cancelled
        assert signal.getsignal(signal.SIGTERM) == previous

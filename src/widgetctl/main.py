"""Main entry point for widgetctl.

Sets up structured logging and process signal handling, then hands over
to the click command group in cli.py.
"""

from __future__ import annotations

import contextlib
import json
import logging
import signal
import sys
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any, Protocol

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

_handler: logging.Handler | None = None


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure root logging on stderr.

    stdout is reserved for command output (plans, reports) so it stays
    machine-readable. Calling this again replaces the previous handler.

    Args:
        level: Root log level name.
        json_output: Emit JSON lines instead of plain text.
    """
    global _handler

    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    if _handler is not None:
        root_logger.removeHandler(_handler)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())
    _handler = handler


@contextlib.contextmanager
def cancel_on_signal(target: Cancellable) -> Iterator[None]:
    """Cancel the target on SIGINT or SIGTERM while the block runs.

    The running operation finishes and its state update is flushed; the
    next operation is not started. Previous handlers are restored on exit.
    """
    logger = logging.getLogger(__name__)

    def handler(signum: int, _frame: Any) -> None:
        logger.warning(
            "Received signal, cancelling after the current operation",
            extra={"signal": signal.Signals(signum).name},
        )
        target.cancel()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, prior in previous.items():
            signal.signal(sig, prior)


def run() -> None:
    """Entry point for the widgetctl CLI."""
    from .cli import cli

    cli()


if __name__ == "__main__":
    run()

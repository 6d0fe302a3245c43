"""Configuration management with validation.

Limits are enforced at configuration load time so a misconfigured run
fails before any plan is computed.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_STATE_PATH = "widgetctl.state.json"
DEFAULT_PROJECT = "slugger"
DEFAULT_MANAGED_BY = "terraform"

DEFAULT_PRIORITY_BASE = 100
DEFAULT_PRIORITY_STEP = 100
DEFAULT_PRIORITY_CEILING = 1000
MAX_LISTENER_PRIORITY = 50000  # ALB listener rule limit

DEFAULT_RETRY_BASE_SECONDS = 1.0
DEFAULT_RETRY_CAP_SECONDS = 30.0
DEFAULT_RETRY_MAX_ATTEMPTS = 5
MAX_RETRY_ATTEMPTS = 20

DEFAULT_MAX_WORKERS = 1  # Sequential unless opted in
MAX_WORKERS_LIMIT = 16

# Registry file limits
MAX_REGISTRY_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max registry file
MAX_WIDGETS_PER_REGISTRY = 100

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient provider failures."""

    base_seconds: float = DEFAULT_RETRY_BASE_SECONDS
    cap_seconds: float = DEFAULT_RETRY_CAP_SECONDS
    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after the given (1-based) failed attempt."""
        return min(self.cap_seconds, self.base_seconds * (2 ** (attempt - 1)))


@dataclass(frozen=True)
class PriorityBand:
    """Reserved band of listener rule priorities: base, base+step, ... <= ceiling."""

    base: int = DEFAULT_PRIORITY_BASE
    step: int = DEFAULT_PRIORITY_STEP
    ceiling: int = DEFAULT_PRIORITY_CEILING

    def slots(self) -> range:
        return range(self.base, self.ceiling + 1, self.step)


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))

    # Tag policy
    project: str = DEFAULT_PROJECT
    managed_by: str = DEFAULT_MANAGED_BY

    priority_band: PriorityBand = field(default_factory=PriorityBand)
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Opt-in concurrency across independent widgets
    max_workers: int = DEFAULT_MAX_WORKERS

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.project:
            errors.append("WIDGETCTL_PROJECT must not be empty")
        if not self.managed_by:
            errors.append("WIDGETCTL_MANAGED_BY must not be empty")

        band = self.priority_band
        if band.base < 1:
            errors.append("WIDGETCTL_PRIORITY_BASE must be at least 1")
        if band.step < 1:
            errors.append("WIDGETCTL_PRIORITY_STEP must be at least 1")
        if band.ceiling < band.base:
            errors.append("WIDGETCTL_PRIORITY_CEILING must not be below WIDGETCTL_PRIORITY_BASE")
        elif band.ceiling > MAX_LISTENER_PRIORITY:
            errors.append(
                f"WIDGETCTL_PRIORITY_CEILING cannot exceed {MAX_LISTENER_PRIORITY} (ALB limit)"
            )

        retry = self.retry
        if retry.base_seconds < 0:
            errors.append("WIDGETCTL_RETRY_BASE_SECONDS must not be negative")
        if retry.cap_seconds < retry.base_seconds:
            errors.append("WIDGETCTL_RETRY_CAP_SECONDS must not be below the base delay")
        if not 1 <= retry.max_attempts <= MAX_RETRY_ATTEMPTS:
            errors.append(
                f"WIDGETCTL_RETRY_MAX_ATTEMPTS must be between 1 and {MAX_RETRY_ATTEMPTS}"
            )

        if not 1 <= self.max_workers <= MAX_WORKERS_LIMIT:
            errors.append(f"WIDGETCTL_MAX_WORKERS must be between 1 and {MAX_WORKERS_LIMIT}")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"WIDGETCTL_LOG_LEVEL must be one of {VALID_LOG_LEVELS}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WIDGETCTL_STATE_PATH: State snapshot file (default: widgetctl.state.json)
            WIDGETCTL_PROJECT: Required Project tag value (default: slugger)
            WIDGETCTL_MANAGED_BY: Required ManagedBy tag value (default: terraform)
            WIDGETCTL_PRIORITY_BASE: First listener priority (default: 100)
            WIDGETCTL_PRIORITY_STEP: Gap between priorities (default: 100)
            WIDGETCTL_PRIORITY_CEILING: Highest assignable priority (default: 1000)
            WIDGETCTL_RETRY_BASE_SECONDS: Initial backoff (default: 1)
            WIDGETCTL_RETRY_CAP_SECONDS: Backoff ceiling (default: 30)
            WIDGETCTL_RETRY_MAX_ATTEMPTS: Attempts per operation (default: 5)
            WIDGETCTL_MAX_WORKERS: Worker pool size, 1 = sequential (default: 1)
            WIDGETCTL_LOG_LEVEL: Log level (default: INFO)
            WIDGETCTL_LOG_JSON: Emit JSON logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            state_path=Path(os.environ.get("WIDGETCTL_STATE_PATH", DEFAULT_STATE_PATH)),
            project=os.environ.get("WIDGETCTL_PROJECT", DEFAULT_PROJECT),
            managed_by=os.environ.get("WIDGETCTL_MANAGED_BY", DEFAULT_MANAGED_BY),
            priority_band=PriorityBand(
                base=get_int("WIDGETCTL_PRIORITY_BASE", DEFAULT_PRIORITY_BASE),
                step=get_int("WIDGETCTL_PRIORITY_STEP", DEFAULT_PRIORITY_STEP),
                ceiling=get_int("WIDGETCTL_PRIORITY_CEILING", DEFAULT_PRIORITY_CEILING),
            ),
            retry=RetryPolicy(
                base_seconds=get_float("WIDGETCTL_RETRY_BASE_SECONDS", DEFAULT_RETRY_BASE_SECONDS),
                cap_seconds=get_float("WIDGETCTL_RETRY_CAP_SECONDS", DEFAULT_RETRY_CAP_SECONDS),
                max_attempts=get_int("WIDGETCTL_RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS),
            ),
            max_workers=get_int("WIDGETCTL_MAX_WORKERS", DEFAULT_MAX_WORKERS),
            log_level=os.environ.get("WIDGETCTL_LOG_LEVEL", "INFO").upper(),
            log_json=get_bool("WIDGETCTL_LOG_JSON", True),
        )

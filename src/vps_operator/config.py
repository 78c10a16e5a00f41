"""Configuration management with validation.

Invalid settings are rejected at load time so that a reconciliation
cycle never starts with a half-usable configuration.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Waiter defaults, matching the platform's 10 minute server timeouts
DEFAULT_TIMEOUT = "10m"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
MIN_POLL_INTERVAL_SECONDS = 1.0
MAX_POLL_INTERVAL_SECONDS = 60.0
DEFAULT_POLL_ERROR_BACKOFF_SECONDS = 10.0

MIN_TIMEOUT_SECONDS = 1.0
MAX_TIMEOUT_SECONDS = 24 * 3600.0

# File size limits for specs and stored state
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024
MAX_STATE_FILE_SIZE_BYTES = 4 * 1024 * 1024

# Accepts durations such as "45s", "10m", "1h30m", "1.5h"
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0}


def parse_duration(value: str) -> float:
    """Convert a duration string into seconds.

    Args:
        value: Duration such as "10m", "1h30m" or "45s".

    Returns:
        Duration in seconds.

    Raises:
        ConfigurationError: If the string is not a valid duration.
    """
    text = value.strip().lower()
    if not text:
        raise ConfigurationError("Duration cannot be empty")

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text):
        raise ConfigurationError(f"Invalid duration '{value}': expected e.g. 45s, 10m, 1h30m")
    return total


@dataclass(frozen=True)
class TimeoutConfig:
    """Default waiter deadlines in seconds, per lifecycle step."""

    create_seconds: float = 600.0
    update_seconds: float = 600.0
    delete_seconds: float = 600.0


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-cycle.
    """

    # Required fields
    api_endpoint: str
    project_id: str

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("specs"))
    state_dir: Path = field(default_factory=lambda: Path("state"))

    # Waiter
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    poll_error_backoff_seconds: float = DEFAULT_POLL_ERROR_BACKOFF_SECONDS

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.api_endpoint:
            errors.append("VPS_API_ENDPOINT is required")
        elif not self.api_endpoint.startswith(("http://", "https://")):
            errors.append(f"VPS_API_ENDPOINT must be an http(s) URL: {self.api_endpoint}")

        if not self.project_id:
            errors.append("VPS_PROJECT_ID is required")

        if not (
            MIN_POLL_INTERVAL_SECONDS
            <= self.poll_interval_seconds
            <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS:g} "
                f"and {MAX_POLL_INTERVAL_SECONDS:g} seconds"
            )

        if self.poll_error_backoff_seconds < 0:
            errors.append("POLL_ERROR_BACKOFF cannot be negative")

        for step, seconds in (
            ("CREATE_TIMEOUT", self.timeouts.create_seconds),
            ("UPDATE_TIMEOUT", self.timeouts.update_seconds),
            ("DELETE_TIMEOUT", self.timeouts.delete_seconds),
        ):
            if not MIN_TIMEOUT_SECONDS <= seconds <= MAX_TIMEOUT_SECONDS:
                errors.append(
                    f"{step} must be between {MIN_TIMEOUT_SECONDS:g}s "
                    f"and {MAX_TIMEOUT_SECONDS:g}s"
                )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            VPS_API_ENDPOINT: Base URL of the compute API
            VPS_PROJECT_ID: Project that owns the managed servers
            SPECS_DIR: Path to desired-configuration YAML files (default: ./specs)
            STATE_DIR: Path to the observed-state store (default: ./state)
            CREATE_TIMEOUT: Default create wait deadline (default: 10m)
            UPDATE_TIMEOUT: Default update wait deadline (default: 10m)
            DELETE_TIMEOUT: Default delete wait deadline (default: 10m)
            POLL_INTERVAL: Seconds between status reads (default: 5)
            POLL_ERROR_BACKOFF: Seconds to back off after a failed read (default: 10)
            DRY_RUN: If "true", only compute plans (default: false)
        """

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

        def get_duration(key: str) -> float:
            return parse_duration(os.environ.get(key) or DEFAULT_TIMEOUT)

        return cls(
            api_endpoint=os.environ.get("VPS_API_ENDPOINT", ""),
            project_id=os.environ.get("VPS_PROJECT_ID", ""),
            specs_dir=Path(os.environ.get("SPECS_DIR", "specs")),
            state_dir=Path(os.environ.get("STATE_DIR", "state")),
            timeouts=TimeoutConfig(
                create_seconds=get_duration("CREATE_TIMEOUT"),
                update_seconds=get_duration("UPDATE_TIMEOUT"),
                delete_seconds=get_duration("DELETE_TIMEOUT"),
            ),
            poll_interval_seconds=get_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            poll_error_backoff_seconds=get_float(
                "POLL_ERROR_BACKOFF", DEFAULT_POLL_ERROR_BACKOFF_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
        )

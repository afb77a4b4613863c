"""Configuration management with validation.

All settings are read from the environment once at startup and validated
at construction time so the operator fails fast on a bad deployment.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_WORKER_COUNT = 4
MIN_WORKER_COUNT = 1
MAX_WORKER_COUNT = 64

DEFAULT_POST_CREATE_REQUEUE_SECONDS = 1.0
MAX_POST_CREATE_REQUEUE_SECONDS = 300.0

DEFAULT_STEADY_STATE_INTERVAL_SECONDS = 30.0
MIN_STEADY_STATE_INTERVAL_SECONDS = 1.0
MAX_STEADY_STATE_INTERVAL_SECONDS = 3600.0

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 60.0
MAX_PROVIDER_TIMEOUT_SECONDS = 3600.0

DEFAULT_STORE_TIMEOUT_SECONDS = 30.0
MAX_STORE_TIMEOUT_SECONDS = 600.0

DEFAULT_INSTANCE_WAIT_SECONDS = 0
MAX_INSTANCE_WAIT_SECONDS = 1800

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 300.0

DEFAULT_WATCH_TIMEOUT_SECONDS = 300
MIN_WATCH_TIMEOUT_SECONDS = 10
MAX_WATCH_TIMEOUT_SECONDS = 3600

# Input validation patterns
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"
VALID_REGION_PATTERN = r"^[a-z]{2}(-gov|-iso[a-z]?)?-[a-z]+-\d$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Scope of the watch; empty means all namespaces
    watch_namespace: str = ""

    # Region used when an Ec2Instance spec does not name one
    default_region: str = ""

    # Concurrency
    worker_count: int = DEFAULT_WORKER_COUNT

    # Timing
    post_create_requeue_seconds: float = DEFAULT_POST_CREATE_REQUEUE_SECONDS
    steady_state_interval_seconds: float = DEFAULT_STEADY_STATE_INTERVAL_SECONDS
    provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    store_timeout_seconds: float = DEFAULT_STORE_TIMEOUT_SECONDS
    instance_wait_seconds: int = DEFAULT_INSTANCE_WAIT_SECONDS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    watch_timeout_seconds: int = DEFAULT_WATCH_TIMEOUT_SECONDS

    # Logging
    enable_json_logging: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.watch_namespace and not re.match(VALID_NAMESPACE_PATTERN, self.watch_namespace):
            errors.append(
                f"WATCH_NAMESPACE must be a valid namespace name: {self.watch_namespace}"
            )

        if self.default_region and not re.match(VALID_REGION_PATTERN, self.default_region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.default_region}")

        if not (MIN_WORKER_COUNT <= self.worker_count <= MAX_WORKER_COUNT):
            errors.append(
                f"WORKER_COUNT must be between {MIN_WORKER_COUNT} and {MAX_WORKER_COUNT}"
            )

        if not (0 <= self.post_create_requeue_seconds <= MAX_POST_CREATE_REQUEUE_SECONDS):
            errors.append(
                "POST_CREATE_REQUEUE_SECONDS must be between 0 and "
                f"{MAX_POST_CREATE_REQUEUE_SECONDS:g} seconds"
            )

        if not (
            MIN_STEADY_STATE_INTERVAL_SECONDS
            <= self.steady_state_interval_seconds
            <= MAX_STEADY_STATE_INTERVAL_SECONDS
        ):
            errors.append(
                f"STEADY_STATE_INTERVAL_SECONDS must be between "
                f"{MIN_STEADY_STATE_INTERVAL_SECONDS:g} and "
                f"{MAX_STEADY_STATE_INTERVAL_SECONDS:g} seconds"
            )

        if not (0 < self.provider_timeout_seconds <= MAX_PROVIDER_TIMEOUT_SECONDS):
            errors.append(
                f"PROVIDER_TIMEOUT_SECONDS must be between 1 and "
                f"{MAX_PROVIDER_TIMEOUT_SECONDS:g} seconds"
            )

        if not (0 < self.store_timeout_seconds <= MAX_STORE_TIMEOUT_SECONDS):
            errors.append(
                f"STORE_TIMEOUT_SECONDS must be between 1 and {MAX_STORE_TIMEOUT_SECONDS:g} seconds"
            )

        if not (0 <= self.instance_wait_seconds <= MAX_INSTANCE_WAIT_SECONDS):
            errors.append(
                f"INSTANCE_WAIT_SECONDS must be between 0 and {MAX_INSTANCE_WAIT_SECONDS} seconds"
            )
        elif self.instance_wait_seconds >= self.provider_timeout_seconds:
            # The create call would always be cut off by the provider timeout
            errors.append("INSTANCE_WAIT_SECONDS must be lower than PROVIDER_TIMEOUT_SECONDS")

        if self.retry_backoff_base_seconds <= 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS must be positive")
        elif self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX_SECONDS must not be lower than the base backoff")

        if not (MIN_WATCH_TIMEOUT_SECONDS <= self.watch_timeout_seconds <= MAX_WATCH_TIMEOUT_SECONDS):
            errors.append(
                f"WATCH_TIMEOUT_SECONDS must be between {MIN_WATCH_TIMEOUT_SECONDS} "
                f"and {MAX_WATCH_TIMEOUT_SECONDS} seconds"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def log_level_number(self) -> int:
        """Numeric logging level for the configured level name."""
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WATCH_NAMESPACE: Namespace to watch (default: all namespaces)
            AWS_REGION / AWS_DEFAULT_REGION: Region for specs without one
            WORKER_COUNT: Concurrent reconcile workers (default: 4)
            POST_CREATE_REQUEUE_SECONDS: Delay after instance creation (default: 1)
            STEADY_STATE_INTERVAL_SECONDS: Health verification interval (default: 30)
            PROVIDER_TIMEOUT_SECONDS: Bound on each EC2 API call (default: 60)
            STORE_TIMEOUT_SECONDS: Bound on each Kubernetes API call (default: 30)
            INSTANCE_WAIT_SECONDS: Wait for "running" after create, 0 disables (default: 0)
            RETRY_BACKOFF_BASE_SECONDS: First retry delay (default: 1)
            RETRY_BACKOFF_MAX_SECONDS: Retry delay cap (default: 300)
            WATCH_TIMEOUT_SECONDS: Server-side watch timeout (default: 300)
            ENABLE_JSON_LOGGING: Emit JSON log lines (default: true)
            LOG_LEVEL: Root log level (default: INFO)
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
            watch_namespace=os.environ.get("WATCH_NAMESPACE", ""),
            default_region=os.environ.get("AWS_REGION")
            or os.environ.get("AWS_DEFAULT_REGION", ""),
            worker_count=get_int("WORKER_COUNT", DEFAULT_WORKER_COUNT),
            post_create_requeue_seconds=get_float(
                "POST_CREATE_REQUEUE_SECONDS", DEFAULT_POST_CREATE_REQUEUE_SECONDS
            ),
            steady_state_interval_seconds=get_float(
                "STEADY_STATE_INTERVAL_SECONDS", DEFAULT_STEADY_STATE_INTERVAL_SECONDS
            ),
            provider_timeout_seconds=get_float(
                "PROVIDER_TIMEOUT_SECONDS", DEFAULT_PROVIDER_TIMEOUT_SECONDS
            ),
            store_timeout_seconds=get_float("STORE_TIMEOUT_SECONDS", DEFAULT_STORE_TIMEOUT_SECONDS),
            instance_wait_seconds=get_int("INSTANCE_WAIT_SECONDS", DEFAULT_INSTANCE_WAIT_SECONDS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX_SECONDS", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            watch_timeout_seconds=get_int("WATCH_TIMEOUT_SECONDS", DEFAULT_WATCH_TIMEOUT_SECONDS),
            enable_json_logging=get_bool("ENABLE_JSON_LOGGING", True),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

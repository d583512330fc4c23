"""Configuration management with validation.

Polling cadence and per-operation timeouts are validated at load time so
that a misconfigured engine fails before it touches the control plane.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
MIN_POLL_INTERVAL_SECONDS = 0.01
MAX_POLL_INTERVAL_SECONDS = 300.0
DEFAULT_MAX_POLL_INTERVAL_SECONDS = 60.0

# Consecutive "not found" reads tolerated while waiting on a resource that
# should exist (eventual consistency after a create)
DEFAULT_NOT_FOUND_CHECKS = 20

DEFAULT_CREATE_TIMEOUT_SECONDS = 30 * 60
DEFAULT_READ_TIMEOUT_SECONDS = 5 * 60
DEFAULT_UPDATE_TIMEOUT_SECONDS = 30 * 60
DEFAULT_DELETE_TIMEOUT_SECONDS = 30 * 60
MAX_OPERATION_TIMEOUT_SECONDS = 24 * 60 * 60

DEFAULT_ARM_ENDPOINT = "https://management.azure.com"

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class OperationTimeouts:
    """Whole-call budgets for each reconciler operation, in seconds."""

    create: float = DEFAULT_CREATE_TIMEOUT_SECONDS
    read: float = DEFAULT_READ_TIMEOUT_SECONDS
    update: float = DEFAULT_UPDATE_TIMEOUT_SECONDS
    delete: float = DEFAULT_DELETE_TIMEOUT_SECONDS

    def validate(self) -> list[str]:
        errors: list[str] = []
        for name in ("create", "read", "update", "delete"):
            value = getattr(self, name)
            if not (0 < value <= MAX_OPERATION_TIMEOUT_SECONDS):
                errors.append(
                    f"{name.upper()}_TIMEOUT must be between 0 and "
                    f"{MAX_OPERATION_TIMEOUT_SECONDS} seconds: {value}"
                )
        return errors


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-operation.
    """

    # Only needed by the Azure adapter; the engine itself is client-agnostic
    subscription_id: str | None = None
    arm_endpoint: str = DEFAULT_ARM_ENDPOINT

    # Polling cadence
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_poll_interval_seconds: float = DEFAULT_MAX_POLL_INTERVAL_SECONDS
    not_found_checks: int = DEFAULT_NOT_FOUND_CHECKS

    timeouts: OperationTimeouts = field(default_factory=OperationTimeouts)

    # Logging
    log_level: str = "INFO"
    enable_json_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.subscription_id is not None and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.arm_endpoint.startswith("https://"):
            errors.append(f"ARM_ENDPOINT must be an https URL: {self.arm_endpoint}")

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )
        if self.max_poll_interval_seconds < self.poll_interval_seconds:
            errors.append("MAX_POLL_INTERVAL must not be lower than POLL_INTERVAL")

        if self.not_found_checks < 0:
            errors.append("NOT_FOUND_CHECKS must not be negative")

        errors.extend(self.timeouts.validate())

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target subscription (GUID), optional
            ARM_ENDPOINT: Resource Manager endpoint (default: public cloud)
            POLL_INTERVAL: Minimum seconds between status queries (default: 10)
            MAX_POLL_INTERVAL: Ceiling for the growing poll interval (default: 60)
            NOT_FOUND_CHECKS: Absent reads tolerated while waiting (default: 20)
            CREATE_TIMEOUT / READ_TIMEOUT / UPDATE_TIMEOUT / DELETE_TIMEOUT:
                Whole-operation budgets in seconds (30m / 5m / 30m / 30m)
            LOG_LEVEL: Root log level (default: INFO)
            ENABLE_JSON_LOGGING: Emit JSON log lines (default: true)
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            arm_endpoint=os.environ.get("ARM_ENDPOINT", DEFAULT_ARM_ENDPOINT),
            poll_interval_seconds=get_float("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            max_poll_interval_seconds=get_float(
                "MAX_POLL_INTERVAL", DEFAULT_MAX_POLL_INTERVAL_SECONDS
            ),
            not_found_checks=get_int("NOT_FOUND_CHECKS", DEFAULT_NOT_FOUND_CHECKS),
            timeouts=OperationTimeouts(
                create=get_float("CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
                read=get_float("READ_TIMEOUT", DEFAULT_READ_TIMEOUT_SECONDS),
                update=get_float("UPDATE_TIMEOUT", DEFAULT_UPDATE_TIMEOUT_SECONDS),
                delete=get_float("DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            enable_json_logging=get_bool("ENABLE_JSON_LOGGING", True),
        )

"""Configuration management with validation.

Constraints are enforced at configuration load time so the operator fails
fast on a bad environment instead of part-way through a reconciliation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .atlas_client import DEFAULT_BASE_URL as DEFAULT_ATLAS_BASE_URL
from .secret_naming import DEFAULT_SECRET_NAMESPACE


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
MIN_REQUEST_TIMEOUT_SECONDS = 1
MAX_REQUEST_TIMEOUT_SECONDS = 300

DEFAULT_MAX_CONCURRENT_RECONCILES = 4
MAX_CONCURRENT_RECONCILES_LIMIT = 64

DEFAULT_SECRET_RECOVERY_WINDOW_DAYS = 7
MIN_SECRET_RECOVERY_WINDOW_DAYS = 7
MAX_SECRET_RECOVERY_WINDOW_DAYS = 30

# Driver backoff for retryable errors
RETRY_BACKOFF_BASE_SECONDS = 5
MAX_RETRY_BACKOFF_SECONDS = 600

# Limits on inputs read from disk
MAX_MANIFEST_FILE_SIZE_BYTES = 256 * 1024  # 256KB max manifest
MAX_STATUS_FILE_SIZE_BYTES = 256 * 1024
MAX_MANIFESTS = 1000

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_SECRET_NAMESPACE_PATTERN = r"^[A-Za-z0-9/_+=.@-]{1,128}$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))
    state_dir: Path = field(default_factory=lambda: Path("/state"))
    provider_config_path: Path = field(
        default_factory=lambda: Path("/config/provider-config.yaml")
    )

    # Organization API
    atlas_base_url: str = DEFAULT_ATLAS_BASE_URL

    # Credential store
    secret_namespace: str = DEFAULT_SECRET_NAMESPACE
    force_delete_secrets: bool = True
    secret_recovery_window_days: int = DEFAULT_SECRET_RECOVERY_WINDOW_DAYS

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    # Logging
    log_level: str = "INFO"
    enable_json_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All errors are collected and reported together.
        """
        import re

        errors: list[str] = []

        if not self.atlas_base_url.startswith("https://"):
            errors.append(f"ATLAS_BASE_URL must use https: {self.atlas_base_url}")

        if not re.match(VALID_SECRET_NAMESPACE_PATTERN, self.secret_namespace):
            errors.append(
                f"SECRET_NAMESPACE must match pattern {VALID_SECRET_NAMESPACE_PATTERN}: "
                f"{self.secret_namespace}"
            )

        # Timing validation
        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"REQUEST_TIMEOUT must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES_LIMIT:
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 "
                f"and {MAX_CONCURRENT_RECONCILES_LIMIT}"
            )

        if not (
            MIN_SECRET_RECOVERY_WINDOW_DAYS
            <= self.secret_recovery_window_days
            <= MAX_SECRET_RECOVERY_WINDOW_DAYS
        ):
            errors.append(
                f"SECRET_RECOVERY_WINDOW_DAYS must be between {MIN_SECRET_RECOVERY_WINDOW_DAYS} "
                f"and {MAX_SECRET_RECOVERY_WINDOW_DAYS}"
            )

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        # Path validation
        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if not self.provider_config_path.exists():
            errors.append(f"Provider config file does not exist: {self.provider_config_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            SPECS_DIR: Directory of Organization manifests (default: /specs)
            STATE_DIR: Directory for persisted status (default: /state)
            PROVIDER_CONFIG_PATH: Provider config YAML
                (default: /config/provider-config.yaml)
            ATLAS_BASE_URL: Organization API base URL
            SECRET_NAMESPACE: Prefix for credential names (default: product/mongodb)
            FORCE_DELETE_SECRETS: Delete credentials without recovery (default: true)
            SECRET_RECOVERY_WINDOW_DAYS: Recovery window otherwise (default: 7)
            RECONCILE_INTERVAL: Seconds between reconciliation loops (default: 300)
            REQUEST_TIMEOUT: Timeout for each remote call in seconds (default: 30)
            MAX_CONCURRENT_RECONCILES: Resources reconciled in parallel (default: 4)
            LOG_LEVEL: Root log level (default: INFO)
            ENABLE_JSON_LOGGING: JSON logs to stdout (default: true)
        """

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
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            state_dir=Path(os.environ.get("STATE_DIR", "/state")),
            provider_config_path=Path(
                os.environ.get("PROVIDER_CONFIG_PATH", "/config/provider-config.yaml")
            ),
            atlas_base_url=os.environ.get("ATLAS_BASE_URL", DEFAULT_ATLAS_BASE_URL),
            secret_namespace=os.environ.get("SECRET_NAMESPACE", DEFAULT_SECRET_NAMESPACE),
            force_delete_secrets=get_bool("FORCE_DELETE_SECRETS", True),
            secret_recovery_window_days=get_int(
                "SECRET_RECOVERY_WINDOW_DAYS", DEFAULT_SECRET_RECOVERY_WINDOW_DAYS
            ),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            enable_json_logging=get_bool("ENABLE_JSON_LOGGING", True),
        )

"""Configuration management with validation.

All limits are enforced at configuration load time so that a bad value
fails the command before the State Store or the provider is touched.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ProviderType(str, Enum):
    """Supported control-plane providers."""

    LOCAL = "local"
    AZURE = "azure"


class AzureCredentialType(str, Enum):
    """Secretless credential sources for the azure provider."""

    MANAGED_IDENTITY = "managed-identity"
    AZURE_CLI = "cli"


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_STATE_DIR = ".provisioner/state"
DEFAULT_LOCAL_PROVIDER_DIR = ".provisioner/cloud"

DEFAULT_MAX_CONCURRENCY = 4
MIN_MAX_CONCURRENCY = 1
MAX_MAX_CONCURRENCY = 64

DEFAULT_MAX_ATTEMPTS = 3
MAX_MAX_ATTEMPTS = 10

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 30.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 600
DEFAULT_APPLY_TIMEOUT_SECONDS = 3600
MAX_APPLY_TIMEOUT_SECONDS = 24 * 3600

# Size limits for input files
MAX_DECLARATION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB
MAX_POLICY_FILE_SIZE_BYTES = 256 * 1024

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables and CLI flags.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    declaration_file: Path | None = None
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    policy_file: Path | None = None

    # Provider selection
    provider: ProviderType = ProviderType.LOCAL
    local_provider_dir: Path = field(default_factory=lambda: Path(DEFAULT_LOCAL_PROVIDER_DIR))
    azure_subscription_id: str | None = None
    azure_credential: AzureCredentialType = AzureCredentialType.MANAGED_IDENTITY
    azure_client_id: str | None = None

    # Execution
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    apply_timeout_seconds: int = DEFAULT_APPLY_TIMEOUT_SECONDS

    # Logging
    log_format: LogFormat = LogFormat.TEXT
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.declaration_file is not None and not self.declaration_file.is_file():
            errors.append(f"DECLARATION_FILE does not exist: {self.declaration_file}")

        if self.policy_file is not None and not self.policy_file.is_file():
            errors.append(f"POLICY_FILE does not exist: {self.policy_file}")

        if self.provider == ProviderType.AZURE:
            if not self.azure_subscription_id:
                errors.append("AZURE_SUBSCRIPTION_ID is required when PROVIDER is azure")
            elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.azure_subscription_id.lower()):
                errors.append(
                    f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.azure_subscription_id}"
                )

        if not (MIN_MAX_CONCURRENCY <= self.max_concurrency <= MAX_MAX_CONCURRENCY):
            errors.append(
                f"MAX_CONCURRENCY must be between {MIN_MAX_CONCURRENCY} "
                f"and {MAX_MAX_CONCURRENCY}"
            )

        if not (1 <= self.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(f"MAX_ATTEMPTS must be between 1 and {MAX_MAX_ATTEMPTS}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE must not be negative")
        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must be at least RETRY_BACKOFF_BASE")

        if self.operation_timeout_seconds < 1:
            errors.append("OPERATION_TIMEOUT must be at least 1 second")

        if not (1 <= self.apply_timeout_seconds <= MAX_APPLY_TIMEOUT_SECONDS):
            errors.append(
                f"APPLY_TIMEOUT must be between 1 and {MAX_APPLY_TIMEOUT_SECONDS} seconds"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DECLARATION_FILE: Path to the YAML/JSON declaration
            STATE_DIR: Directory of the file State Store (default: .provisioner/state)
            POLICY_FILE: Replacement policy YAML (optional)
            PROVIDER: One of local, azure (default: local)
            LOCAL_PROVIDER_DIR: Directory backing the local provider
            AZURE_SUBSCRIPTION_ID: Target subscription for the azure provider
            AZURE_CREDENTIAL: managed-identity or cli (default: managed-identity)
            AZURE_CLIENT_ID: Client id of a user-assigned managed identity
            MAX_CONCURRENCY: Parallel provider calls (default: 4)
            MAX_ATTEMPTS: Attempts per step on transient errors (default: 3)
            RETRY_BACKOFF_BASE: First backoff delay in seconds (default: 1)
            RETRY_BACKOFF_MAX: Backoff delay ceiling in seconds (default: 30)
            OPERATION_TIMEOUT: Per provider call timeout in seconds (default: 600)
            APPLY_TIMEOUT: Overall apply ceiling in seconds (default: 3600)
            LOG_FORMAT: json or text (default: text)
            LOG_LEVEL: Python log level name (default: INFO)
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

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_cls(value.lower())
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        return cls(
            declaration_file=get_path("DECLARATION_FILE"),
            state_dir=Path(os.environ.get("STATE_DIR", DEFAULT_STATE_DIR)),
            policy_file=get_path("POLICY_FILE"),
            provider=get_enum("PROVIDER", ProviderType, ProviderType.LOCAL),  # type: ignore[arg-type]
            local_provider_dir=Path(
                os.environ.get("LOCAL_PROVIDER_DIR", DEFAULT_LOCAL_PROVIDER_DIR)
            ),
            azure_subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID"),
            azure_credential=get_enum(  # type: ignore[arg-type]
                "AZURE_CREDENTIAL", AzureCredentialType, AzureCredentialType.MANAGED_IDENTITY
            ),
            azure_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            max_concurrency=get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            max_attempts=get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            apply_timeout_seconds=get_int("APPLY_TIMEOUT", DEFAULT_APPLY_TIMEOUT_SECONDS),
            log_format=get_enum("LOG_FORMAT", LogFormat, LogFormat.TEXT),  # type: ignore[arg-type]
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

"""Configuration management with validation.

Settings are read from environment variables and validated at load time
so that a misconfigured run fails before any file or network access.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class ReconcileMode(str, Enum):
    """Operating mode of a reconciliation run."""

    IMPORT = "import"
    PROMOTION_CHECK = "promotion-check"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_ARM_ENDPOINT = "https://management.azure.com"
DEFAULT_API_VERSION = "2023-02-01"

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
MIN_REQUEST_TIMEOUT_SECONDS = 1
MAX_REQUEST_TIMEOUT_SECONDS = 600

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_CEILING = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0

DEFAULT_DETAIL_WORKERS = 4
MAX_DETAIL_WORKERS = 32

DEFAULT_MAX_RULES_PER_IMPORT = 100

# Safety bounds on inputs
MAX_COLLECTION_FILE_SIZE_BYTES = 5 * 1024 * 1024  # rules.yaml
MAX_QUERY_FILE_SIZE_BYTES = 1024 * 1024  # single query body
MAX_WORKSPACES_FILE_SIZE_BYTES = 1024 * 1024
MAX_REMOTE_PAGES = 500  # nextLink chain guard

RULES_FILENAME = "rules.yaml"
QUERIES_DIRNAME = "queries"
WORKSPACES_FILENAME = "workspaces.yaml"

# Input validation patterns
VALID_SCOPE_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$"


def validate_scope_name(kind: str, value: str) -> None:
    """Validate an organization or environment name.

    These names become directory names, so path separators and relative
    components are rejected.

    Raises:
        ConfigurationError: If the name is empty or malformed.
    """
    if not value or not re.match(VALID_SCOPE_NAME_PATTERN, value) or ".." in value:
        raise ConfigurationError(
            f"{kind} name must match {VALID_SCOPE_NAME_PATTERN}: {value!r}"
        )


@dataclass(frozen=True)
class Config:
    """Engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Desired-state store
    rules_root: Path = field(default_factory=lambda: Path("rules"))
    workspaces_file: Path | None = None

    # Remote service
    arm_endpoint: str = DEFAULT_ARM_ENDPOINT
    api_version: str = DEFAULT_API_VERSION
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    detail_workers: int = DEFAULT_DETAIL_WORKERS

    # Guardrails
    max_rules_per_import: int = DEFAULT_MAX_RULES_PER_IMPORT
    run_deadline_seconds: int | None = None

    # Identity
    managed_identity_client_id: str | None = None
    use_azure_cli_credential: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.rules_root.is_dir():
            errors.append(f"Rules root does not exist: {self.rules_root}")

        if not self.arm_endpoint.startswith("https://"):
            errors.append(f"RULEDRIFT_ARM_ENDPOINT must be an https URL: {self.arm_endpoint}")

        if not self.api_version:
            errors.append("RULEDRIFT_API_VERSION is required")

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"RULEDRIFT_REQUEST_TIMEOUT must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.max_retries <= MAX_RETRIES_CEILING):
            errors.append(f"RULEDRIFT_MAX_RETRIES must be between 1 and {MAX_RETRIES_CEILING}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RULEDRIFT_RETRY_BACKOFF_BASE cannot be negative")

        if not (1 <= self.detail_workers <= MAX_DETAIL_WORKERS):
            errors.append(f"RULEDRIFT_DETAIL_WORKERS must be between 1 and {MAX_DETAIL_WORKERS}")

        if self.max_rules_per_import < 1:
            errors.append("RULEDRIFT_MAX_RULES_PER_IMPORT must be at least 1")

        if self.run_deadline_seconds is not None and self.run_deadline_seconds < 1:
            errors.append("RULEDRIFT_RUN_DEADLINE must be a positive number of seconds")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def resolved_workspaces_file(self) -> Path:
        """Workspace map location, defaulting to a file under the rules root."""
        return self.workspaces_file or self.rules_root / WORKSPACES_FILENAME

    @property
    def token_scope(self) -> str:
        """OAuth scope for the Resource Manager audience."""
        return f"{self.arm_endpoint.rstrip('/')}/.default"

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            RULEDRIFT_RULES_ROOT: Desired-state root directory (default: ./rules)
            RULEDRIFT_WORKSPACES_FILE: Workspace map (default: <root>/workspaces.yaml)
            RULEDRIFT_ARM_ENDPOINT: Resource Manager endpoint
            RULEDRIFT_API_VERSION: SecurityInsights API version
            RULEDRIFT_REQUEST_TIMEOUT: Per-call timeout in seconds (default: 60)
            RULEDRIFT_MAX_RETRIES: Attempts per remote call (default: 3)
            RULEDRIFT_RETRY_BACKOFF_BASE: Backoff base in seconds (default: 2)
            RULEDRIFT_DETAIL_WORKERS: Concurrent detail fetches (default: 4)
            RULEDRIFT_MAX_RULES_PER_IMPORT: Import guardrail (default: 100)
            RULEDRIFT_RUN_DEADLINE: Cancel the run after N seconds (default: unset)
            AZURE_CLIENT_ID: User-assigned managed identity client ID
            RULEDRIFT_USE_AZURE_CLI: If "true", authenticate with `az login`

        Keyword overrides replace the matching field; None values are ignored.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None or value == "":
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

        workspaces = os.environ.get("RULEDRIFT_WORKSPACES_FILE")
        deadline = os.environ.get("RULEDRIFT_RUN_DEADLINE")

        values: dict[str, Any] = {
            "rules_root": Path(os.environ.get("RULEDRIFT_RULES_ROOT", "rules")),
            "workspaces_file": Path(workspaces) if workspaces else None,
            "arm_endpoint": os.environ.get("RULEDRIFT_ARM_ENDPOINT", DEFAULT_ARM_ENDPOINT),
            "api_version": os.environ.get("RULEDRIFT_API_VERSION", DEFAULT_API_VERSION),
            "request_timeout_seconds": get_int(
                "RULEDRIFT_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            "max_retries": get_int("RULEDRIFT_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            "retry_backoff_base_seconds": get_float(
                "RULEDRIFT_RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            "detail_workers": get_int("RULEDRIFT_DETAIL_WORKERS", DEFAULT_DETAIL_WORKERS),
            "max_rules_per_import": get_int(
                "RULEDRIFT_MAX_RULES_PER_IMPORT", DEFAULT_MAX_RULES_PER_IMPORT
            ),
            "run_deadline_seconds": get_int("RULEDRIFT_RUN_DEADLINE", 0) if deadline else None,
            "managed_identity_client_id": os.environ.get("AZURE_CLIENT_ID") or None,
            "use_azure_cli_credential": get_bool("RULEDRIFT_USE_AZURE_CLI", False),
        }
        # CLI flags win over the environment
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

"""Configuration management with validation.

All settings are read from environment variables and validated at load time
so a misconfigured profile directory fails before any Azure call is made.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Profile file layout
PROFILE_FILE_NAME = "azure_profile.json"
LEGACY_PROFILE_FILE_NAME = "azure_profile.yaml"
CERTIFICATES_DIR_NAME = "certificates"

# Persisted layout versions
PROFILE_VERSION = 2
LEGACY_PROFILE_VERSION = 1

# SECURITY: Bound the size of profile and publish settings files read from disk
MAX_PROFILE_FILE_SIZE_BYTES = 4 * 1024 * 1024
MAX_PUBLISH_SETTINGS_FILE_SIZE_BYTES = 1024 * 1024

# Tenant used for the initial tenant lookup of an account
COMMON_TENANT = "common"

DEFAULT_ENVIRONMENT_NAME = "AzureCloud"

DEFAULT_TENANT_WORKERS = 1
MIN_TENANT_WORKERS = 1
MAX_TENANT_WORKERS = 16

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def default_profile_directory() -> Path:
    """Get the default profile directory (~/.azprofile)."""
    return Path.home() / ".azprofile"


@dataclass(frozen=True)
class ProfileConfig:
    """Profile client configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-operation.
    """

    profile_directory: Path = field(default_factory=default_profile_directory)
    environment_name: str = DEFAULT_ENVIRONMENT_NAME
    tenant_query_workers: int = DEFAULT_TENANT_WORKERS
    log_level: str = "WARNING"
    json_logs: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.profile_directory.exists() and not self.profile_directory.is_dir():
            errors.append(f"AZPROFILE_DIRECTORY is not a directory: {self.profile_directory}")

        if not self.environment_name:
            errors.append("AZPROFILE_ENVIRONMENT must not be empty")

        if not (MIN_TENANT_WORKERS <= self.tenant_query_workers <= MAX_TENANT_WORKERS):
            errors.append(
                f"AZPROFILE_TENANT_WORKERS must be between {MIN_TENANT_WORKERS} "
                f"and {MAX_TENANT_WORKERS}"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"AZPROFILE_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def profile_path(self) -> Path:
        """Path of the canonical profile file."""
        return self.profile_directory / PROFILE_FILE_NAME

    @property
    def legacy_profile_path(self) -> Path:
        """Path of the legacy profile file migrated on first open."""
        return self.profile_directory / LEGACY_PROFILE_FILE_NAME

    @property
    def certificates_directory(self) -> Path:
        """Directory where imported management certificates are written."""
        return self.profile_directory / CERTIFICATES_DIR_NAME

    @classmethod
    def from_env(cls) -> ProfileConfig:
        """Load configuration from environment variables.

        Environment Variables:
            AZPROFILE_DIRECTORY: Profile directory (default: ~/.azprofile)
            AZPROFILE_ENVIRONMENT: Default environment name (default: AzureCloud)
            AZPROFILE_TENANT_WORKERS: Parallel tenant queries (default: 1)
            AZPROFILE_LOG_LEVEL: Logging level (default: WARNING)
            AZPROFILE_JSON_LOGS: If "true", emit JSON log lines (default: false)
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

        directory = os.environ.get("AZPROFILE_DIRECTORY")

        return cls(
            profile_directory=(
                Path(directory).expanduser() if directory else default_profile_directory()
            ),
            environment_name=os.environ.get("AZPROFILE_ENVIRONMENT", DEFAULT_ENVIRONMENT_NAME),
            tenant_query_workers=get_int("AZPROFILE_TENANT_WORKERS", DEFAULT_TENANT_WORKERS),
            log_level=os.environ.get("AZPROFILE_LOG_LEVEL", "WARNING").upper(),
            json_logs=get_bool("AZPROFILE_JSON_LOGS", False),
        )

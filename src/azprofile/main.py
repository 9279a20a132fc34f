"""Composition root: logging setup and reconciler wiring.

The reconciler depends only on protocols; this module binds them to the
disk store, azure-identity and the Azure SDK directories.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

from .authentication import Authenticator, AzureIdentityAuthenticator
from .config import ProfileConfig
from .directory import AzureDirectoryFactory, DirectoryClient, DirectoryFactory
from .profile import AzureProfile
from .profile_store import DiskProfileStore, ProfileStore
from .reconciler import ProfileReconciler
from .session import SessionContext

# LogRecord attributes that are not structured fields
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


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(config: ProfileConfig) -> None:
    """Configure logging to stderr, keeping stdout for command output."""
    handler = logging.StreamHandler(sys.stderr)
    if config.json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(config.log_level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("msal").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_reconciler(
    config: ProfileConfig,
    *,
    store: ProfileStore | None = None,
    authenticator: Authenticator | None = None,
    directories: DirectoryFactory | None = None,
    session: SessionContext | None = None,
) -> ProfileReconciler:
    """Open (migrating if needed) the profile and wire up a reconciler.

    Collaborators default to the disk store and the Azure-backed
    implementations; tests pass in-memory replacements.
    """
    store = store or DiskProfileStore(config.certificates_directory)
    session = session or SessionContext()

    profile = AzureProfile.open_or_migrate(
        store, config.profile_path, config.legacy_profile_path
    )
    directory = DirectoryClient(
        authenticator or AzureIdentityAuthenticator(),
        directories or AzureDirectoryFactory(),
        session,
        max_workers=config.tenant_query_workers,
    )

    reconciler = ProfileReconciler(
        profile,
        session,
        directory,
        store,
        default_environment_name=config.environment_name,
    )

    # Start from the persisted default, as a new shell session would
    default = profile.default_subscription
    if (
        default is not None
        and default.account in profile.accounts
        and default.environment in profile.environments
    ):
        reconciler.set_subscription_as_current(default.id)

    logging.getLogger(__name__).debug(
        "Reconciler ready",
        extra={
            "profile_path": str(config.profile_path),
            "accounts": len(profile.accounts),
            "subscriptions": len(profile.subscriptions),
        },
    )
    return reconciler

"""Entity store: accounts, subscriptions and environments bound to a profile file.

SECURITY: Profile contents are size-checked before parsing and validated
into pydantic models at the boundary; anything malformed fails loudly with
ProfileLoadError instead of being partially loaded.

Both persisted layouts are decoded through the YAML parser (the JSON
canonical layout is a YAML subset) and told apart by their ``version`` key.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml
from pydantic import ValidationError

from .config import LEGACY_PROFILE_VERSION, MAX_PROFILE_FILE_SIZE_BYTES, PROFILE_VERSION
from .errors import IdentityMismatchError, ProfileError, ProtectedResourceError
from .merge import merge_accounts
from .models import (
    PUBLIC_ENVIRONMENTS,
    Account,
    AccountType,
    Environment,
    LegacyProfileDocument,
    ProfileDocument,
    Subscription,
    is_public_environment,
)
from .profile_store import ProfileStore

logger = logging.getLogger(__name__)


class ProfileLoadError(ProfileError):
    """Raised when a profile file cannot be decoded or fails validation."""

    pass


class EnvironmentTable(dict[str, Environment]):
    """Environment mapping that always contains the public environments.

    Public environments can be read like any other entry but never replaced
    or removed.
    """

    def __init__(self) -> None:
        super().__init__(PUBLIC_ENVIRONMENTS)

    def __setitem__(self, name: str, environment: Environment) -> None:
        if is_public_environment(name):
            raise ProtectedResourceError(f"Changing public environment '{name}' is not supported")
        if environment.name != name:
            raise IdentityMismatchError(
                f"Environment '{environment.name}' cannot be stored under key '{name}'"
            )
        super().__setitem__(name, environment)

    def __delitem__(self, name: str) -> None:
        if is_public_environment(name):
            raise ProtectedResourceError(f"Removing public environment '{name}' is not supported")
        super().__delitem__(name)

    def pop(self, name: str, *default: Any) -> Any:
        if is_public_environment(name):
            raise ProtectedResourceError(f"Removing public environment '{name}' is not supported")
        return super().pop(name, *default)

    def custom(self) -> list[Environment]:
        """Environments other than the public ones."""
        return [env for name, env in self.items() if not is_public_environment(name)]


def upgrade_legacy_document(legacy: LegacyProfileDocument) -> ProfileDocument:
    """Convert the legacy single-collection layout to the current layout.

    Accounts are synthesized from the owner embedded in each subscription.
    """
    accounts: dict[str, Account] = {}
    subscriptions: list[Subscription] = []
    default_subscription: UUID | None = None

    for entry in legacy.subscriptions:
        subscriptions.append(
            Subscription(
                id=entry.id,
                name=entry.name,
                environment=entry.environment,
                account=entry.account,
                supported_modes=entry.supported_modes,
                registered_resource_providers=entry.registered_resource_providers,
                tenants=entry.tenants,
            )
        )
        if entry.is_default and default_subscription is None:
            default_subscription = entry.id

        if not entry.account:
            continue

        account = Account(
            id=entry.account,
            type=entry.account_type,
            tenants=() if entry.account_type == AccountType.CERTIFICATE else entry.tenants,
            subscriptions=[str(entry.id)],
        )
        existing = accounts.get(entry.account)
        accounts[entry.account] = account if existing is None else merge_accounts(existing, account)

    return ProfileDocument(
        version=PROFILE_VERSION,
        environments=[env for env in legacy.environments if not is_public_environment(env.name)],
        accounts=list(accounts.values()),
        subscriptions=subscriptions,
        default_subscription=default_subscription,
    )


def decode_profile(data: bytes, source: str = "<profile>") -> ProfileDocument:
    """Decode profile bytes in either layout into the current layout.

    Args:
        data: Raw file contents.
        source: Description of the origin, used in error messages.

    Returns:
        Validated profile document.

    Raises:
        ProfileLoadError: If the data is too large, malformed or invalid.
    """
    if len(data) > MAX_PROFILE_FILE_SIZE_BYTES:
        raise ProfileLoadError(
            f"Profile file too large: {len(data)} bytes (max: {MAX_PROFILE_FILE_SIZE_BYTES})"
        )

    try:
        raw = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise ProfileLoadError(f"Invalid profile file {source}: {e}") from e

    if raw is None:
        return ProfileDocument()
    if not isinstance(raw, dict):
        raise ProfileLoadError(f"Profile must be a mapping, got {type(raw).__name__}: {source}")

    version = raw.get("version", LEGACY_PROFILE_VERSION)
    if not isinstance(version, int):
        raise ProfileLoadError(f"Profile version must be an integer: {source}")
    if version > PROFILE_VERSION:
        raise ProfileLoadError(
            f"Profile version {version} is newer than supported version {PROFILE_VERSION}: {source}"
        )

    try:
        if version == PROFILE_VERSION:
            return ProfileDocument.model_validate(raw)
        return upgrade_legacy_document(LegacyProfileDocument.model_validate(raw))
    except (ValidationError, IdentityMismatchError) as e:
        raise ProfileLoadError(f"Profile validation failed for {source}: {e}") from e


class AzureProfile:
    """In-memory entity store bound to a profile file.

    Mapping access goes through ``accounts`` (by id), ``subscriptions``
    (by UUID) and ``environments`` (by name). Nothing is removed as a side
    effect of reading; changes reach disk only on ``save()``.
    """

    def __init__(self, store: ProfileStore, path: Path) -> None:
        self._store = store
        self._path = path
        self.accounts: dict[str, Account] = {}
        self.subscriptions: dict[UUID, Subscription] = {}
        self.environments = EnvironmentTable()
        self.default_subscription_id: UUID | None = None

        if store.exists(path):
            self._apply(decode_profile(store.read_all(path), str(path)))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def default_subscription(self) -> Subscription | None:
        """The default subscription, or None if unset or no longer present."""
        if self.default_subscription_id is None:
            return None
        return self.subscriptions.get(self.default_subscription_id)

    def find_subscription_by_name(self, name: str) -> Subscription | None:
        """Find a subscription by display name, ignoring case."""
        wanted = name.casefold()
        for subscription in self.subscriptions.values():
            if subscription.name and subscription.name.casefold() == wanted:
                return subscription
        return None

    def to_document(self) -> ProfileDocument:
        return ProfileDocument(
            version=PROFILE_VERSION,
            environments=self.environments.custom(),
            accounts=list(self.accounts.values()),
            subscriptions=list(self.subscriptions.values()),
            default_subscription=self.default_subscription_id,
        )

    def save(self) -> None:
        """Write the profile in the current layout."""
        payload = self.to_document().model_dump_json(by_alias=True, indent=2)
        self._store.write_all(self._path, payload.encode("utf-8"))
        logger.debug(
            "Profile saved",
            extra={
                "path": str(self._path),
                "accounts": len(self.accounts),
                "subscriptions": len(self.subscriptions),
            },
        )

    def absorb(self, other: AzureProfile) -> None:
        """Overlay another profile's entities; the other profile wins on collisions."""
        self._apply(other.to_document())

    def _apply(self, document: ProfileDocument) -> None:
        for environment in document.environments:
            if is_public_environment(environment.name):
                logger.debug(
                    "Ignoring persisted copy of public environment",
                    extra={"environment": environment.name},
                )
                continue
            self.environments[environment.name] = environment
        for account in document.accounts:
            if account.id:
                self.accounts[account.id] = account
        for subscription in document.subscriptions:
            self.subscriptions[subscription.id] = subscription
        if document.default_subscription is not None:
            self.default_subscription_id = document.default_subscription

    @classmethod
    def open_or_migrate(
        cls,
        store: ProfileStore,
        path: Path,
        legacy_path: Path,
    ) -> AzureProfile:
        """Open the profile, migrating a legacy profile file first if present.

        When both files exist their contents are merged, with entities from
        the canonical file taking precedence. The canonical file is then
        removed and the legacy file, rewritten in the current layout, takes
        its place. Once migrated the legacy file no longer exists, so the
        migration runs exactly once.
        """
        if store.exists(legacy_path):
            migrated = cls(store, legacy_path)

            if store.exists(path):
                migrated.absorb(cls(store, path))
                store.delete(path)

            migrated.save()
            store.rename(legacy_path, path)

            logger.info(
                "Migrated legacy profile",
                extra={
                    "legacy_path": str(legacy_path),
                    "path": str(path),
                    "accounts": len(migrated.accounts),
                    "subscriptions": len(migrated.subscriptions),
                },
            )

        return cls(store, path)

"""Reconciliation of the local profile against the subscription directories.

The reconciler is the only writer of the profile. It implements:
1. Login: authenticate, enumerate subscriptions, upsert, pick a default
2. Refresh: re-enumerate every token-based account without reassigning owners
3. CRUD for accounts, subscriptions and environments with removal cascades
4. Current/default selection through the SessionContext
5. Import of management-certificate subscriptions from publish settings

Every upsert goes through the merge engine, so repeating an operation never
duplicates an entity or drops a value either side knew about. Each mutating
operation saves the profile before returning.

Destructive operations that hit the default or the active subscription log a
warning and still complete.
"""

from __future__ import annotations

import logging
from pathlib import Path
from uuid import UUID

from .authentication import PromptPolicy
from .directory import DirectoryClient
from .errors import (
    AlreadyExistsError,
    AuthCanceledError,
    AuthFailedError,
    NotFoundError,
    ProtectedResourceError,
)
from .merge import merge_accounts, merge_environments, merge_subscriptions
from .models import (
    Account,
    AccountType,
    Environment,
    Subscription,
    is_public_environment,
)
from .profile import AzureProfile
from .profile_store import CredentialMaterial, ProfileStore
from .publish_settings import parse_publish_settings
from .session import SessionContext

logger = logging.getLogger(__name__)


def _parse_subscription_id(value: str) -> UUID | None:
    try:
        return UUID(value)
    except ValueError:
        return None


class ProfileReconciler:
    """Keeps the profile, the session and the remote directories consistent.

    Usage:
        reconciler = ProfileReconciler(profile, session, directory, store)
        account = reconciler.login(Account(), reconciler.get_environment_or_default())
        reconciler.set_subscription_as_default("Production")
    """

    def __init__(
        self,
        profile: AzureProfile,
        session: SessionContext,
        directory: DirectoryClient,
        store: ProfileStore,
        *,
        default_environment_name: str = "AzureCloud",
    ) -> None:
        self._profile = profile
        self._session = session
        self._directory = directory
        self._store = store
        self._default_environment_name = default_environment_name

    @property
    def profile(self) -> AzureProfile:
        return self._profile

    @property
    def session(self) -> SessionContext:
        return self._session

    # =========================================================================
    # Login and refresh
    # =========================================================================

    def login(
        self,
        account: Account,
        environment: Environment,
        secret: str | None = None,
    ) -> Account | None:
        """Authenticate an account and load its subscriptions into the profile.

        Args:
            account: The account to sign in. Its id may be None for an
                     interactive user whose identity is not known yet.
            environment: Environment to authenticate against.
            secret: Service principal secret, if any.

        Returns:
            The stored account, or None if no identity was produced or no
            tenant could be authenticated. In that case the profile is left
            untouched.
        """
        if account.is_certificate:
            logger.warning(
                "Certificate accounts cannot log in; import publish settings instead",
                extra={"account": account.id},
            )
            return None

        try:
            account, subscriptions = self._directory.list_subscriptions(
                account, environment, secret, PromptPolicy.ALWAYS, require_authentication=True
            )
        except (AuthFailedError, AuthCanceledError) as e:
            logger.warning(
                "Login failed: authentication did not succeed",
                extra={"account": account.id, "environment": environment.name, "error": str(e)},
            )
            return None

        if account.id is None:
            logger.warning("Login failed: no identity produced", extra={"environment": environment.name})
            return None

        stored = self._upsert_account(account)
        for subscription in subscriptions:
            self._upsert_subscription(subscription)

        if self._profile.default_subscription is None and subscriptions:
            default = self._select(self._profile.subscriptions[subscriptions[0].id])
            self._profile.default_subscription_id = default.id
            logger.info(
                "Default subscription assigned",
                extra={"subscription_id": str(default.id), "account": stored.id},
            )
        elif self._session.current.is_empty and self._profile.default_subscription is not None:
            self._select(self._profile.default_subscription)

        self._profile.save()

        logger.info(
            "Account logged in",
            extra={
                "account": stored.id,
                "environment": environment.name,
                "subscriptions": len(subscriptions),
            },
        )
        return self._profile.accounts[stored.id]

    def refresh_subscriptions(self, environment: Environment) -> list[Subscription]:
        """Re-enumerate subscriptions for every token-based account.

        Certificate accounts are skipped. A subscription already in the
        profile keeps its recorded owner.

        Returns:
            All subscriptions in the profile after the refresh.
        """
        refreshed = 0
        for account_id in list(self._profile.accounts):
            account = self._profile.accounts[account_id]
            if account.is_certificate:
                continue

            account, subscriptions = self._directory.list_subscriptions(account, environment)
            self._upsert_account(account)

            for subscription in subscriptions:
                existing = self._profile.subscriptions.get(subscription.id)
                if existing is not None:
                    subscription = subscription.with_account(existing.account)
                self._upsert_subscription(subscription)
                refreshed += 1

        self._profile.save()

        logger.info(
            "Subscriptions refreshed",
            extra={"environment": environment.name, "refreshed": refreshed},
        )
        return list(self._profile.subscriptions.values())

    # =========================================================================
    # Accounts
    # =========================================================================

    def add_or_set_account(self, account: Account) -> Account:
        """Insert an account or merge it into the stored one.

        Raises:
            ValueError: If the account has no id.
            IdentityMismatchError: If the stored account has another type.
        """
        stored = self._upsert_account(account)
        self._profile.save()
        return stored

    def get_account_or_none(self, account_id: str) -> Account | None:
        if not account_id:
            raise ValueError("Account id must be specified")
        return self._profile.accounts.get(account_id)

    def get_account(self, account_id: str) -> Account:
        account = self.get_account_or_none(account_id)
        if account is None:
            raise NotFoundError(f"Account '{account_id}' does not exist")
        return account

    def get_account_or_default(self, account_id: str | None = None) -> Account:
        """Get an account by id, or the current account when no id is given.

        The session's working copy is returned when it matches.

        Raises:
            NotFoundError: If the account is unknown or nothing is selected.
        """
        current = self._session.account
        if not account_id:
            if current is None:
                raise NotFoundError("No account is currently selected")
            return current
        if current is not None and current.id == account_id:
            return current
        return self.get_account(account_id)

    def list_accounts(self, account_id: str | None = None) -> list[Account]:
        if not account_id:
            return list(self._profile.accounts.values())
        account = self._profile.accounts.get(account_id)
        return [account] if account is not None else []

    def list_subscription_accounts(self, subscription_id: UUID) -> list[Account]:
        """Accounts that list the subscription among their own."""
        return [
            account
            for account in self._profile.accounts.values()
            if account.has_subscription(subscription_id)
        ]

    def remove_account(self, account_id: str) -> Account:
        """Remove an account and the subscriptions only it could serve.

        Each subscription the account owned is handed to a substitute owner
        if one exists, otherwise it is removed too.

        Raises:
            NotFoundError: If the account is unknown.
        """
        account = self.get_account(account_id)
        del self._profile.accounts[account_id]

        for raw_id in account.subscriptions:
            subscription_id = _parse_subscription_id(raw_id)
            if subscription_id is None:
                continue
            subscription = self._profile.subscriptions.get(subscription_id)
            if subscription is None or subscription.account != account_id:
                continue

            substitute = self._find_substitute_owner(subscription_id)
            if substitute is None:
                self._drop_subscription(subscription)
                continue

            reassigned = subscription.with_account(substitute.id)
            self._profile.subscriptions[subscription_id] = reassigned
            logger.info(
                "Subscription reassigned",
                extra={
                    "subscription_id": str(subscription_id),
                    "from_account": account_id,
                    "to_account": substitute.id,
                },
            )
            if self._session.is_current_subscription(subscription_id):
                self._session.set_current(reassigned, self._session.environment, substitute)

        if self._session.is_current_account(account_id):
            self._repoint_session_from(account_id)

        self._profile.save()

        logger.info("Account removed", extra={"account": account_id})
        return account

    def _find_substitute_owner(self, subscription_id: UUID) -> Account | None:
        # Case-insensitive id order; token-based accounts win over certificates
        candidates = sorted(
            self.list_subscription_accounts(subscription_id),
            key=lambda account: (account.id or "").casefold(),
        )
        for account in candidates:
            if not account.is_certificate:
                return account
        return candidates[0] if candidates else None

    def _repoint_session_from(self, removed_account_id: str) -> None:
        subscription = self._session.subscription
        substitute = self._find_substitute_owner(subscription.id) if subscription else None
        if subscription is None or substitute is None:
            logger.warning(
                "Current account removed; session cleared",
                extra={"account": removed_account_id},
            )
            self._session.clear()
            return
        self._session.set_current(
            subscription.with_account(substitute.id), self._session.environment, substitute
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def add_or_set_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a subscription or merge it into the stored one.

        Raises:
            ValueError: If the subscription names no environment.
            NotFoundError: If its environment is unknown, or it is new and
                           its owning account does not exist.
        """
        stored = self._upsert_subscription(subscription)
        self._profile.save()
        return stored

    def get_subscription(self, id_or_name: UUID | str) -> Subscription:
        """Get a subscription by id or by display name (case-insensitive).

        Raises:
            NotFoundError: If no subscription matches.
        """
        subscription_id = (
            id_or_name if isinstance(id_or_name, UUID) else _parse_subscription_id(id_or_name)
        )
        if subscription_id is not None:
            subscription = self._profile.subscriptions.get(subscription_id)
        else:
            subscription = self._profile.find_subscription_by_name(str(id_or_name))

        if subscription is None:
            raise NotFoundError(f"Subscription '{id_or_name}' does not exist")
        return subscription

    def list_subscriptions(self, account_id: str | None = None) -> list[Subscription]:
        """List all subscriptions, or those the given account can access.

        Raises:
            NotFoundError: If the account is unknown.
        """
        subscriptions = list(self._profile.subscriptions.values())
        if not account_id:
            return subscriptions
        account = self.get_account(account_id)
        return [s for s in subscriptions if account.has_subscription(s.id)]

    def remove_subscription(self, id_or_name: UUID | str) -> Subscription:
        """Remove a subscription and detach it from every account.

        Accounts left without subscriptions are removed as well.

        Raises:
            NotFoundError: If no subscription matches.
        """
        subscription = self.get_subscription(id_or_name)
        self._drop_subscription(subscription)
        self._detach_subscription(subscription.id)
        self._profile.save()

        logger.info("Subscription removed", extra={"subscription_id": str(subscription.id)})
        return subscription

    def set_subscription_as_current(
        self,
        id_or_name: UUID | str,
        account_id: str | None = None,
    ) -> Subscription:
        """Make a subscription the active one for this session.

        Args:
            account_id: Account to use; defaults to the subscription's owner.

        Raises:
            NotFoundError: If the subscription, its environment or the
                           account is unknown.
        """
        return self._select(self.get_subscription(id_or_name), account_id)

    def set_subscription_as_default(
        self,
        id_or_name: UUID | str,
        account_id: str | None = None,
    ) -> Subscription:
        """Make a subscription the persisted default and the active one."""
        current = self.set_subscription_as_current(id_or_name, account_id)
        self._profile.default_subscription_id = current.id
        self._profile.save()

        logger.info("Default subscription set", extra={"subscription_id": str(current.id)})
        return current

    def clear_default_subscription(self) -> None:
        self._profile.default_subscription_id = None
        self._profile.save()
        logger.info("Default subscription cleared")

    def _select(self, subscription: Subscription, account_id: str | None = None) -> Subscription:
        environment = self.get_environment_or_default(subscription.environment)
        owner_id = account_id or subscription.account
        if not owner_id:
            raise NotFoundError(f"Subscription {subscription.id} has no owning account")
        account = self.get_account(owner_id)

        current = subscription.with_account(account.id)
        self._session.set_current(current, environment, account)
        return current

    def _drop_subscription(self, subscription: Subscription) -> None:
        extra = {"subscription_id": str(subscription.id), "name": subscription.name}

        if self._profile.default_subscription_id == subscription.id:
            logger.warning("Removing the default subscription", extra=extra)
            self._profile.default_subscription_id = None

        if self._session.is_current_subscription(subscription.id):
            logger.warning("Removing the current subscription; session cleared", extra=extra)
            self._session.clear()

        self._profile.subscriptions.pop(subscription.id, None)

    def _detach_subscription(self, subscription_id: UUID) -> None:
        for account in self.list_subscription_accounts(subscription_id):
            updated = account.without_subscription(subscription_id)
            if updated.subscriptions:
                self._store_account(updated)
                continue

            del self._profile.accounts[account.id]
            logger.info(
                "Account removed with its last subscription",
                extra={"account": account.id, "subscription_id": str(subscription_id)},
            )
            if self._session.is_current_account(account.id):
                self._session.clear()

    # =========================================================================
    # Environments
    # =========================================================================

    def add_or_set_environment(self, environment: Environment) -> Environment:
        """Insert a custom environment or merge it into the stored one.

        Raises:
            ProtectedResourceError: If the name is a public environment.
        """
        if is_public_environment(environment.name):
            raise ProtectedResourceError(
                f"Changing public environment '{environment.name}' is not supported"
            )

        existing = self._profile.environments.get(environment.name)
        stored = environment if existing is None else merge_environments(environment, existing)
        self._profile.environments[stored.name] = stored

        if self._session.is_current_environment(stored.name):
            self._session.set_current(self._session.subscription, stored, self._session.account)

        self._profile.save()
        return stored

    def get_environment_or_default(self, name: str | None = None) -> Environment:
        """Get an environment by name, or the current one when no name is given.

        Without a name and without a current environment, the configured
        default environment is returned.

        Raises:
            NotFoundError: If the environment is unknown.
        """
        current = self._session.environment
        if not name:
            if current is not None:
                return current
            name = self._default_environment_name
        elif current is not None and current.name == name:
            return current

        environment = self._profile.environments.get(name)
        if environment is None:
            raise NotFoundError(f"Environment '{name}' does not exist")
        return environment

    def list_environments(self, name: str | None = None) -> list[Environment]:
        if not name:
            return list(self._profile.environments.values())
        environment = self._profile.environments.get(name)
        return [environment] if environment is not None else []

    def remove_environment(self, name: str) -> Environment:
        """Remove a custom environment and every subscription in it.

        Raises:
            ProtectedResourceError: If the name is a public environment.
            NotFoundError: If the environment is unknown.
        """
        if is_public_environment(name):
            raise ProtectedResourceError(f"Removing public environment '{name}' is not supported")

        environment = self._profile.environments.get(name)
        if environment is None:
            raise NotFoundError(f"Environment '{name}' does not exist")

        doomed = [s for s in self._profile.subscriptions.values() if s.environment == name]
        for subscription in doomed:
            self._drop_subscription(subscription)
            self._detach_subscription(subscription.id)

        del self._profile.environments[name]

        if self._session.is_current_environment(name):
            self._session.clear()

        self._profile.save()

        logger.info(
            "Environment removed",
            extra={"environment": name, "subscriptions_removed": len(doomed)},
        )
        return environment

    # =========================================================================
    # Certificates and publish settings
    # =========================================================================

    def import_publish_settings(
        self,
        path: Path,
        environment_name: str | None = None,
    ) -> list[Subscription]:
        """Import the subscriptions and management certificate of a publish settings file.

        A Certificate account keyed by the certificate thumbprint owns all
        imported subscriptions.

        Raises:
            NotFoundError: If the file or the environment does not exist.
            AlreadyExistsError: If a non-certificate account uses the thumbprint as id.
            PublishSettingsError: If the file cannot be parsed.
        """
        environment = self.get_environment_or_default(environment_name)

        if not self._store.exists(path):
            raise NotFoundError(f"Publish settings file not found: {path}")
        settings = parse_publish_settings(self._store.read_all(path), str(path))

        existing = self._profile.accounts.get(settings.thumbprint)
        if existing is not None and not existing.is_certificate:
            raise AlreadyExistsError(
                f"Account '{settings.thumbprint}' already exists as {existing.type.value}"
            )

        self.import_certificate(settings.certificate)

        self._upsert_account(
            Account(
                id=settings.thumbprint,
                type=AccountType.CERTIFICATE,
                subscriptions=[str(s.id) for s in settings.subscriptions],
            )
        )

        imported = [
            self._upsert_subscription(subscription.model_copy(update={"environment": environment.name}))
            for subscription in settings.subscriptions
        ]

        self._profile.save()

        logger.info(
            "Publish settings imported",
            extra={
                "thumbprint": settings.thumbprint,
                "environment": environment.name,
                "subscriptions": len(imported),
            },
        )
        return imported

    def import_certificate(self, material: CredentialMaterial) -> None:
        self._store.import_credential_material(material)

    # =========================================================================
    # Upserts
    # =========================================================================

    def _upsert_account(self, account: Account) -> Account:
        if not account.id:
            raise ValueError("Account id must be specified")

        existing = self._profile.accounts.get(account.id)
        stored = account if existing is None else merge_accounts(account, existing)
        self._store_account(stored)
        return stored

    def _store_account(self, account: Account) -> None:
        self._profile.accounts[account.id] = account
        if self._session.is_current_account(account.id):
            self._session.set_current(self._session.subscription, self._session.environment, account)

    def _upsert_subscription(self, subscription: Subscription) -> Subscription:
        if not subscription.environment:
            raise ValueError(f"Subscription {subscription.id} must name an environment")
        environment = self.get_environment_or_default(subscription.environment)

        existing = self._profile.subscriptions.get(subscription.id)
        if existing is not None:
            stored = merge_subscriptions(subscription, existing)
        else:
            if not subscription.account or subscription.account not in self._profile.accounts:
                raise NotFoundError(
                    f"Account '{subscription.account}' for subscription {subscription.id} "
                    "does not exist"
                )
            stored = subscription

        self._profile.subscriptions[stored.id] = stored

        if self._session.is_current_subscription(stored.id):
            account = self._session.account
            current = stored.with_account(account.id) if account is not None else stored
            self._session.set_current(current, environment, account)

        return stored

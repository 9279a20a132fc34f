"""Process-wide current context: the selected subscription, environment, account.

The context is an explicit object handed to the reconciler rather than a
hidden global. The selected triple is held as one immutable snapshot and
replaced under a lock, so readers always see a complete triple or an empty
one, never a mix of old and new values.

The context also caches the tenant token that listed each subscription for an
account. Callers that act on the current subscription, such as management
clients built on top of this profile, look it up with ``get_token`` instead
of authenticating again.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from uuid import UUID

from azure.core.credentials import AccessToken

from .models import Account, Environment, Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextSnapshot:
    """An immutable (subscription, environment, account) triple."""

    subscription: Subscription | None = None
    environment: Environment | None = None
    account: Account | None = None

    @property
    def is_empty(self) -> bool:
        return self.subscription is None and self.environment is None and self.account is None


EMPTY_CONTEXT = ContextSnapshot()


class SessionContext:
    """Holds the currently selected triple and cached per-subscription tokens.

    The stored entities are working copies, independent of the profile's
    canonical copies; the reconciler resynchronizes them after any mutation
    of the active entity.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = EMPTY_CONTEXT
        self._tokens: dict[tuple[UUID, str], AccessToken] = {}

    @property
    def current(self) -> ContextSnapshot:
        """Get the current snapshot."""
        return self._snapshot

    @property
    def subscription(self) -> Subscription | None:
        return self._snapshot.subscription

    @property
    def environment(self) -> Environment | None:
        return self._snapshot.environment

    @property
    def account(self) -> Account | None:
        return self._snapshot.account

    def set_current(
        self,
        subscription: Subscription | None,
        environment: Environment | None,
        account: Account | None,
    ) -> ContextSnapshot:
        """Install a new triple atomically.

        Returns:
            The installed snapshot.
        """
        snapshot = ContextSnapshot(subscription=subscription, environment=environment, account=account)
        with self._lock:
            self._snapshot = snapshot

        logger.debug(
            "Session context updated",
            extra={
                "subscription_id": str(subscription.id) if subscription else None,
                "environment": environment.name if environment else None,
                "account": account.id if account else None,
            },
        )
        return snapshot

    def clear(self) -> None:
        """Reset the context to the empty triple."""
        with self._lock:
            self._snapshot = EMPTY_CONTEXT
        logger.debug("Session context cleared")

    def is_current_subscription(self, subscription_id: UUID) -> bool:
        subscription = self._snapshot.subscription
        return subscription is not None and subscription.id == subscription_id

    def is_current_account(self, account_id: str | None) -> bool:
        account = self._snapshot.account
        return account is not None and account_id is not None and account.id == account_id

    def is_current_environment(self, name: str) -> bool:
        environment = self._snapshot.environment
        return environment is not None and environment.name == name

    def cache_token(self, subscription_id: UUID, account_id: str, token: AccessToken) -> None:
        """Remember the tenant token that listed a subscription for an account."""
        with self._lock:
            self._tokens[(subscription_id, account_id)] = token

    def get_token(self, subscription_id: UUID, account_id: str) -> AccessToken | None:
        """Get the cached token for a subscription and account, if any."""
        return self._tokens.get((subscription_id, account_id))

"""Subscription discovery across tenants and both management surfaces.

ARCHITECTURE:
An account's subscriptions are visible through two independent authorities:
- Service Management (legacy): XML listing at the ServiceManagement endpoint
- Resource Manager: ``SubscriptionClient`` at the ResourceManager endpoint

Discovery runs in two steps:
1. Tenant lookup (once per account, cached on ``Account.tenants``)
2. Per tenant: authenticate, then query each authority

FAILURE ISOLATION:
A failure for one tenant (authentication or remote call) never aborts the
others. Authentication failures and remote-call failures are logged at debug
level, cancellations as warnings, and the tenant contributes nothing.
Any other exception propagates unchanged.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID
from xml.etree import ElementTree

from azure.core import PipelineClient
from azure.core.credentials import AccessToken
from azure.core.exceptions import AzureError, DecodeError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    RetryPolicy,
)
from azure.core.rest import HttpRequest
from azure.mgmt.resource import SubscriptionClient

from .authentication import Authenticator, PromptPolicy, StaticTokenCredential
from .config import COMMON_TENANT
from .errors import AuthCanceledError, AuthFailedError
from .merge import merge_subscription_lists
from .models import (
    Account,
    Endpoint,
    Environment,
    RemoteSubscription,
    Subscription,
    SupportedMode,
)
from .session import SessionContext

logger = logging.getLogger(__name__)

SERVICE_MANAGEMENT_API_VERSION = "2013-08-01"
SERVICE_MANAGEMENT_NAMESPACE = "http://schemas.microsoft.com/windowsazure"

# SECURITY: Bound listing payloads to prevent OOM on a misbehaving endpoint
MAX_SERVICE_MANAGEMENT_RESPONSE_BYTES = 4 * 1024 * 1024

RECOVERABLE_ERRORS: tuple[type[Exception], ...] = (AuthFailedError, AuthCanceledError, AzureError)


class AccountDirectory(Protocol):
    """Lists the tenants an account can sign in to."""

    def list_tenants(self, token: AccessToken) -> list[str]: ...


class SubscriptionDirectory(Protocol):
    """Lists the subscriptions visible to a tenant token."""

    def list_subscriptions(self, token: AccessToken) -> list[RemoteSubscription]: ...


class DirectoryFactory(Protocol):
    """Binds directories to an environment's endpoints."""

    def account_directory(self, environment: Environment) -> AccountDirectory: ...

    def service_management(self, environment: Environment) -> SubscriptionDirectory: ...

    def resource_manager(self, environment: Environment) -> SubscriptionDirectory: ...


# =============================================================================
# Azure-backed directories
# =============================================================================


class ResourceManagerDirectory:
    """Tenant and subscription listing through the Resource Manager surface."""

    def __init__(self, environment: Environment) -> None:
        self._endpoint = environment.require_endpoint(Endpoint.RESOURCE_MANAGER)
        self._scope = environment.token_scope()

    def _client(self, token: AccessToken) -> SubscriptionClient:
        return SubscriptionClient(
            credential=StaticTokenCredential(token),
            base_url=self._endpoint,
            credential_scopes=[self._scope],
        )

    def list_tenants(self, token: AccessToken) -> list[str]:
        """List tenant ids visible to the token.

        Raises:
            HttpResponseError: If the listing call fails.
        """
        with self._client(token) as client:
            return [tenant.tenant_id for tenant in client.tenants.list() if tenant.tenant_id]

    def list_subscriptions(self, token: AccessToken) -> list[RemoteSubscription]:
        """List subscriptions visible to the token.

        Raises:
            HttpResponseError: If the listing call fails.
        """
        with self._client(token) as client:
            return [
                RemoteSubscription(
                    subscription_id=subscription.subscription_id,
                    display_name=subscription.display_name,
                    tenant_id=getattr(subscription, "tenant_id", None),
                )
                for subscription in client.subscriptions.list()
                if subscription.subscription_id
            ]


def parse_service_management_subscriptions(payload: bytes) -> list[RemoteSubscription]:
    """Parse the Service Management subscription listing.

    Raises:
        DecodeError: If the payload is oversized or not the expected XML.
    """
    if len(payload) > MAX_SERVICE_MANAGEMENT_RESPONSE_BYTES:
        raise DecodeError(f"Subscription listing too large: {len(payload)} bytes")

    try:
        root = ElementTree.fromstring(payload)
    except ElementTree.ParseError as e:
        raise DecodeError(f"Invalid subscription listing: {e}") from e

    namespaces = {"wa": SERVICE_MANAGEMENT_NAMESPACE}
    subscriptions: list[RemoteSubscription] = []
    for element in root.findall("wa:Subscription", namespaces):
        subscription_id = element.findtext("wa:SubscriptionID", namespaces=namespaces)
        if not subscription_id:
            continue
        subscriptions.append(
            RemoteSubscription(
                subscription_id=subscription_id.strip(),
                display_name=element.findtext("wa:SubscriptionName", namespaces=namespaces),
                tenant_id=element.findtext("wa:ActiveDirectoryTenantID", namespaces=namespaces),
            )
        )
    return subscriptions


class ServiceManagementDirectory:
    """Subscription listing through the legacy Service Management surface."""

    def __init__(self, environment: Environment) -> None:
        self._endpoint = environment.require_endpoint(Endpoint.SERVICE_MANAGEMENT)
        self._scope = environment.token_scope()

    def list_subscriptions(self, token: AccessToken) -> list[RemoteSubscription]:
        """List subscriptions visible to the token.

        Raises:
            HttpResponseError: If the listing call fails or returns bad XML.
        """
        policies = [
            HeadersPolicy({"x-ms-version": SERVICE_MANAGEMENT_API_VERSION}),
            RetryPolicy(),
            BearerTokenCredentialPolicy(StaticTokenCredential(token), self._scope),
        ]
        with PipelineClient(base_url=self._endpoint, policies=policies) as client:
            response = client.send_request(HttpRequest("GET", "subscriptions"))
            response.raise_for_status()
            return parse_service_management_subscriptions(response.content)


class AzureDirectoryFactory:
    """DirectoryFactory producing the Azure-backed directories."""

    def account_directory(self, environment: Environment) -> AccountDirectory:
        return ResourceManagerDirectory(environment)

    def service_management(self, environment: Environment) -> SubscriptionDirectory:
        return ServiceManagementDirectory(environment)

    def resource_manager(self, environment: Environment) -> SubscriptionDirectory:
        return ResourceManagerDirectory(environment)


# =============================================================================
# Adapter
# =============================================================================


def normalize_subscription(
    remote: RemoteSubscription,
    mode: SupportedMode,
    tenant: str,
) -> Subscription | None:
    """Convert an authority's listing entry into a Subscription.

    The Service Management surface reports each subscription's directory
    tenant; Resource Manager results are tagged with the queried tenant.

    Returns:
        The subscription, or None if the reported id is not a UUID.
    """
    try:
        subscription_id = UUID(remote.subscription_id)
    except (TypeError, ValueError):
        logger.warning(
            "Skipping subscription with malformed id",
            extra={"subscription_id": remote.subscription_id, "mode": mode.value},
        )
        return None

    if mode == SupportedMode.SERVICE_MANAGEMENT:
        owning_tenant = remote.tenant_id or tenant
    else:
        owning_tenant = tenant

    return Subscription(
        id=subscription_id,
        name=remote.display_name,
        supported_modes=(mode.value,),
        tenants=(owning_tenant,),
    )


@dataclass
class TenantListing:
    """Subscriptions one tenant contributed, per authority."""

    tenant: str
    token: AccessToken | None = None
    service_management: list[Subscription] = field(default_factory=list)
    resource_manager: list[Subscription] = field(default_factory=list)


class DirectoryClient:
    """Enumerates an account's subscriptions across tenants and authorities.

    Per-tenant queries run sequentially by default. With ``max_workers``
    above 1 they fan out to a thread pool; results are still consumed in
    tenant order so the merged output does not depend on timing.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        directories: DirectoryFactory,
        session: SessionContext,
        *,
        max_workers: int = 1,
    ) -> None:
        self._authenticator = authenticator
        self._directories = directories
        self._session = session
        self._max_workers = max_workers

    def load_tenants(
        self,
        account: Account,
        environment: Environment,
        secret: str | None = None,
        prompt: PromptPolicy = PromptPolicy.NEVER,
        token: AccessToken | None = None,
    ) -> Account:
        """Authenticate against the account's home tenant and look up its tenants.

        The home tenant is the first known tenant, or the common tenant for an
        account whose tenants are unknown. Known tenants are kept as they are;
        only an account without tenants triggers the listing call.

        Args:
            token: A token already acquired for the home tenant. When None,
                   the account is authenticated with the given prompt policy.

        Raises:
            AuthFailedError, AuthCanceledError: If authentication fails.
            AzureError: If the tenant listing call fails.
        """
        home_tenant = account.tenants[0] if account.tenants else COMMON_TENANT

        if token is None:
            result = self._authenticator.authenticate(
                account, environment, home_tenant, secret, prompt
            )
            account, token = result.account, result.token

        if account.tenants:
            return account

        tenants = self._directories.account_directory(environment).list_tenants(token)

        logger.info(
            "Loaded account tenants",
            extra={"account": account.id, "tenants": len(tenants)},
        )
        return account.with_tenants(tenants)

    def list_subscriptions(
        self,
        account: Account,
        environment: Environment,
        secret: str | None = None,
        prompt: PromptPolicy = PromptPolicy.NEVER,
        token: AccessToken | None = None,
        *,
        require_authentication: bool = False,
    ) -> tuple[Account, list[Subscription]]:
        """Enumerate the subscriptions visible to an account.

        Args:
            require_authentication: Fail instead of returning an empty result
                                    when the account could not be
                                    authenticated against any tenant.

        Returns:
            The updated account (tenants and subscription ids added) and the
            merged subscriptions, stamped with environment and account.

        Raises:
            AuthFailedError, AuthCanceledError: With ``require_authentication``,
                if no authentication succeeded.
        """
        if account.is_certificate:
            logger.debug(
                "Skipping certificate account for token-based discovery",
                extra={"account": account.id},
            )
            return account, []

        # Unknown tenants or an unresolved identity need a home-tenant sign-in first
        signed_in = False
        if not account.tenants or account.id is None:
            try:
                account = self.load_tenants(account, environment, secret, prompt, token)
            except RECOVERABLE_ERRORS as e:
                home_tenant = account.tenants[0] if account.tenants else COMMON_TENANT
                self._log_recoverable(e, account, home_tenant, "tenant_lookup")
                if require_authentication and isinstance(e, (AuthFailedError, AuthCanceledError)):
                    raise
                return account, []
            signed_in = True

        listings = self._query_tenants(account, environment, secret)

        if require_authentication and not signed_in:
            if all(listing.token is None for listing in listings):
                raise AuthFailedError(
                    f"Account '{account.id}' could not be authenticated against any tenant"
                )

        service_management: list[Subscription] = []
        resource_manager: list[Subscription] = []
        for listing in listings:
            service_management.extend(listing.service_management)
            resource_manager.extend(listing.resource_manager)

        merged = merge_subscription_lists(service_management, resource_manager)
        subscriptions = [
            subscription.model_copy(update={"environment": environment.name, "account": account.id})
            for subscription in merged
        ]

        if account.id:
            for listing in listings:
                if listing.token is None:
                    continue
                for subscription in (*listing.service_management, *listing.resource_manager):
                    self._session.cache_token(subscription.id, account.id, listing.token)

        account = account.with_subscriptions(subscription.id for subscription in subscriptions)

        logger.info(
            "Enumerated subscriptions",
            extra={
                "account": account.id,
                "environment": environment.name,
                "tenants": len(account.tenants),
                "subscriptions": len(subscriptions),
            },
        )
        return account, subscriptions

    def _query_tenants(
        self,
        account: Account,
        environment: Environment,
        secret: str | None,
    ) -> list[TenantListing]:
        tenants = list(account.tenants)
        if self._max_workers > 1 and len(tenants) > 1:
            workers = min(self._max_workers, len(tenants))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                return list(
                    pool.map(
                        lambda tenant: self._query_tenant(account, environment, tenant, secret),
                        tenants,
                    )
                )
        return [self._query_tenant(account, environment, tenant, secret) for tenant in tenants]

    def _query_tenant(
        self,
        account: Account,
        environment: Environment,
        tenant: str,
        secret: str | None,
    ) -> TenantListing:
        listing = TenantListing(tenant=tenant)

        try:
            result = self._authenticator.authenticate(
                account, environment, tenant, secret, PromptPolicy.NEVER
            )
        except (AuthFailedError, AuthCanceledError) as e:
            self._log_recoverable(e, account, tenant, "authenticate")
            return listing

        listing.token = result.token
        listing.service_management = self._query_authority(
            self._directories.service_management(environment),
            SupportedMode.SERVICE_MANAGEMENT,
            result.token,
            account,
            tenant,
        )
        listing.resource_manager = self._query_authority(
            self._directories.resource_manager(environment),
            SupportedMode.RESOURCE_MANAGER,
            result.token,
            account,
            tenant,
        )
        return listing

    def _query_authority(
        self,
        directory: SubscriptionDirectory,
        mode: SupportedMode,
        token: AccessToken,
        account: Account,
        tenant: str,
    ) -> list[Subscription]:
        try:
            remote_subscriptions = directory.list_subscriptions(token)
        except AzureError as e:
            self._log_recoverable(e, account, tenant, mode.value)
            return []

        subscriptions = []
        for remote in remote_subscriptions:
            subscription = normalize_subscription(remote, mode, tenant)
            if subscription is not None:
                subscriptions.append(subscription)
        return subscriptions

    @staticmethod
    def _log_recoverable(error: Exception, account: Account, tenant: str, stage: str) -> None:
        extra = {
            "account": account.id,
            "tenant": tenant,
            "stage": stage,
            "error": str(error),
            "error_type": type(error).__name__,
        }
        if isinstance(error, AuthCanceledError):
            logger.warning("Authentication canceled, skipping tenant", extra=extra)
        else:
            logger.debug("Tenant query failed, skipping tenant", extra=extra)

"""Pydantic models for profile entities with validation.

These models provide:
1. Immutable entity values (accounts, subscriptions, environments)
2. Normalized string-list fields (case-insensitive de-duplication)
3. The persisted profile layouts (current and legacy)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .config import LEGACY_PROFILE_VERSION, PROFILE_VERSION

ENTITY_MODEL_CONFIG: Any = {
    "frozen": True,
    "extra": "ignore",
    "populate_by_name": True,
    "alias_generator": to_camel,
}


def dedupe_case_insensitive(*groups: Iterable[str]) -> tuple[str, ...]:
    """Union string groups ignoring case, keeping the first spelling seen."""
    seen: set[str] = set()
    result: list[str] = []
    for group in groups:
        for value in group:
            if not value:
                continue
            key = value.casefold()
            if key not in seen:
                seen.add(key)
                result.append(value)
    return tuple(result)


def _split_list(value: Any) -> Any:
    # Older profiles stored list properties as comma separated strings
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


# =============================================================================
# Accounts
# =============================================================================


class AccountType(str, Enum):
    """Mutually exclusive account variants."""

    USER = "User"
    SERVICE_PRINCIPAL = "ServicePrincipal"
    CERTIFICATE = "Certificate"


class Account(BaseModel):
    """An identity that can list subscriptions.

    The id is a login name, a service principal application id or a
    management certificate thumbprint. It is None only for a login request
    whose identity has not been resolved yet.
    """

    model_config = ENTITY_MODEL_CONFIG

    id: str | None = None
    type: AccountType = AccountType.USER
    tenants: tuple[str, ...] = ()
    subscriptions: tuple[str, ...] = ()
    extensions: dict[str, tuple[str, ...]] = Field(default_factory=dict)

    @field_validator("tenants", "subscriptions", mode="before")
    @classmethod
    def _split(cls, v: Any) -> Any:
        return _split_list(v)

    @field_validator("tenants", "subscriptions", mode="after")
    @classmethod
    def _dedupe(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return dedupe_case_insensitive(v)

    @field_validator("extensions", mode="after")
    @classmethod
    def _dedupe_extensions(cls, v: dict[str, tuple[str, ...]]) -> dict[str, tuple[str, ...]]:
        return {key: dedupe_case_insensitive(values) for key, values in v.items()}

    @model_validator(mode="after")
    def _certificate_has_no_tenants(self) -> Account:
        # Tenants are only ever discovered through interactive or token auth
        if self.type == AccountType.CERTIFICATE and self.tenants:
            raise ValueError("Certificate accounts cannot carry tenants")
        return self

    @property
    def is_certificate(self) -> bool:
        return self.type == AccountType.CERTIFICATE

    def has_subscription(self, subscription_id: UUID | str) -> bool:
        wanted = str(subscription_id).casefold()
        return any(sub.casefold() == wanted for sub in self.subscriptions)

    def with_tenants(self, tenants: Iterable[str]) -> Account:
        return self.model_copy(update={"tenants": dedupe_case_insensitive(self.tenants, tenants)})

    def with_subscriptions(self, subscription_ids: Iterable[UUID | str]) -> Account:
        ids = [str(sub_id) for sub_id in subscription_ids]
        return self.model_copy(
            update={"subscriptions": dedupe_case_insensitive(self.subscriptions, ids)}
        )

    def without_subscription(self, subscription_id: UUID | str) -> Account:
        unwanted = str(subscription_id).casefold()
        remaining = tuple(sub for sub in self.subscriptions if sub.casefold() != unwanted)
        return self.model_copy(update={"subscriptions": remaining})


# =============================================================================
# Subscriptions
# =============================================================================


class SupportedMode(str, Enum):
    """Subscription-listing authority that reported a subscription."""

    SERVICE_MANAGEMENT = "AzureServiceManagement"
    RESOURCE_MANAGER = "AzureResourceManager"


class Subscription(BaseModel):
    """A subscription known to the profile."""

    model_config = ENTITY_MODEL_CONFIG

    id: UUID
    name: str | None = None
    environment: str | None = None
    account: str | None = None
    supported_modes: tuple[str, ...] = ()
    registered_resource_providers: tuple[str, ...] = ()
    tenants: tuple[str, ...] = ()
    extensions: dict[str, tuple[str, ...]] = Field(default_factory=dict)

    @field_validator("supported_modes", "registered_resource_providers", "tenants", mode="before")
    @classmethod
    def _split(cls, v: Any) -> Any:
        if isinstance(v, SupportedMode):
            return [v.value]
        if isinstance(v, (list, tuple)):
            return [item.value if isinstance(item, SupportedMode) else item for item in v]
        return _split_list(v)

    @field_validator("supported_modes", "registered_resource_providers", "tenants", mode="after")
    @classmethod
    def _dedupe(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return dedupe_case_insensitive(v)

    @field_validator("extensions", mode="after")
    @classmethod
    def _dedupe_extensions(cls, v: dict[str, tuple[str, ...]]) -> dict[str, tuple[str, ...]]:
        return {key: dedupe_case_insensitive(values) for key, values in v.items()}

    def supports(self, mode: SupportedMode) -> bool:
        return any(m.casefold() == mode.value.casefold() for m in self.supported_modes)

    def with_account(self, account_id: str | None) -> Subscription:
        return self.model_copy(update={"account": account_id})


@dataclass(frozen=True)
class RemoteSubscription:
    """A subscription as reported by one of the listing authorities."""

    subscription_id: str
    display_name: str | None = None
    tenant_id: str | None = None


# =============================================================================
# Environments
# =============================================================================


class Endpoint(str, Enum):
    """Endpoint kinds an environment can define."""

    ACTIVE_DIRECTORY = "ActiveDirectory"
    ACTIVE_DIRECTORY_SERVICE_ENDPOINT_RESOURCE_ID = "ActiveDirectoryServiceEndpointResourceId"
    RESOURCE_MANAGER = "ResourceManager"
    SERVICE_MANAGEMENT = "ServiceManagement"
    GALLERY = "Gallery"
    GRAPH = "Graph"
    PUBLISH_SETTINGS_FILE_URL = "PublishSettingsFileUrl"
    MANAGEMENT_PORTAL_URL = "ManagementPortalUrl"
    STORAGE_ENDPOINT_SUFFIX = "StorageEndpointSuffix"
    SQL_DATABASE_DNS_SUFFIX = "SqlDatabaseDnsSuffix"


class Environment(BaseModel):
    """A named Azure cloud and its endpoints."""

    model_config = ENTITY_MODEL_CONFIG

    name: str = Field(min_length=1)
    endpoints: dict[Endpoint, str] = Field(default_factory=dict)

    def get_endpoint(self, endpoint: Endpoint) -> str | None:
        return self.endpoints.get(endpoint)

    def require_endpoint(self, endpoint: Endpoint) -> str:
        """Get an endpoint, failing if the environment does not define it."""
        value = self.endpoints.get(endpoint)
        if not value:
            raise ValueError(f"Environment '{self.name}' does not define {endpoint.value}")
        return value

    def token_scope(self) -> str:
        """OAuth scope for tokens accepted by both management surfaces."""
        resource = self.require_endpoint(Endpoint.ACTIVE_DIRECTORY_SERVICE_ENDPOINT_RESOURCE_ID)
        return resource.rstrip("/") + "/.default"

    def authority_host(self) -> str:
        """Host name of the Active Directory authority."""
        authority = self.require_endpoint(Endpoint.ACTIVE_DIRECTORY)
        return urlparse(authority).netloc or authority.strip("/")


PUBLIC_ENVIRONMENTS: dict[str, Environment] = {
    "AzureCloud": Environment(
        name="AzureCloud",
        endpoints={
            Endpoint.ACTIVE_DIRECTORY: "https://login.microsoftonline.com/",
            Endpoint.ACTIVE_DIRECTORY_SERVICE_ENDPOINT_RESOURCE_ID: (
                "https://management.core.windows.net/"
            ),
            Endpoint.RESOURCE_MANAGER: "https://management.azure.com/",
            Endpoint.SERVICE_MANAGEMENT: "https://management.core.windows.net/",
            Endpoint.GALLERY: "https://gallery.azure.com/",
            Endpoint.GRAPH: "https://graph.windows.net/",
            Endpoint.PUBLISH_SETTINGS_FILE_URL: (
                "https://manage.windowsazure.com/publishsettings/index"
            ),
            Endpoint.MANAGEMENT_PORTAL_URL: "https://manage.windowsazure.com/",
            Endpoint.STORAGE_ENDPOINT_SUFFIX: "core.windows.net",
            Endpoint.SQL_DATABASE_DNS_SUFFIX: ".database.windows.net",
        },
    ),
    "AzureChinaCloud": Environment(
        name="AzureChinaCloud",
        endpoints={
            Endpoint.ACTIVE_DIRECTORY: "https://login.chinacloudapi.cn/",
            Endpoint.ACTIVE_DIRECTORY_SERVICE_ENDPOINT_RESOURCE_ID: (
                "https://management.core.chinacloudapi.cn/"
            ),
            Endpoint.RESOURCE_MANAGER: "https://management.chinacloudapi.cn/",
            Endpoint.SERVICE_MANAGEMENT: "https://management.core.chinacloudapi.cn/",
            Endpoint.GALLERY: "https://gallery.chinacloudapi.cn/",
            Endpoint.GRAPH: "https://graph.chinacloudapi.cn/",
            Endpoint.PUBLISH_SETTINGS_FILE_URL: (
                "https://manage.windowsazure.cn/publishsettings/index"
            ),
            Endpoint.MANAGEMENT_PORTAL_URL: "https://manage.windowsazure.cn/",
            Endpoint.STORAGE_ENDPOINT_SUFFIX: "core.chinacloudapi.cn",
            Endpoint.SQL_DATABASE_DNS_SUFFIX: ".database.chinacloudapi.cn",
        },
    ),
}


def is_public_environment(name: str) -> bool:
    return name in PUBLIC_ENVIRONMENTS


# =============================================================================
# Persisted layouts
# =============================================================================


class ProfileDocument(BaseModel):
    """Current persisted layout: three keyed collections and a default."""

    model_config = {"extra": "ignore", "populate_by_name": True, "alias_generator": to_camel}

    version: int = PROFILE_VERSION
    environments: list[Environment] = Field(default_factory=list)
    accounts: list[Account] = Field(default_factory=list)
    subscriptions: list[Subscription] = Field(default_factory=list)
    default_subscription: UUID | None = None


class LegacySubscriptionEntry(BaseModel):
    """A subscription in the legacy layout, with its account embedded."""

    model_config = {"extra": "ignore", "populate_by_name": True, "alias_generator": to_camel}

    id: UUID
    name: str | None = None
    environment: str | None = None
    account: str | None = None
    account_type: AccountType = AccountType.USER
    supported_modes: list[str] = Field(default_factory=list)
    registered_resource_providers: list[str] = Field(default_factory=list)
    tenants: list[str] = Field(default_factory=list)
    is_default: bool = False

    @field_validator("supported_modes", "registered_resource_providers", "tenants", mode="before")
    @classmethod
    def _split(cls, v: Any) -> Any:
        return _split_list(v)


class LegacyProfileDocument(BaseModel):
    """Legacy layout: a single subscription collection plus custom environments."""

    model_config = {"extra": "ignore", "populate_by_name": True, "alias_generator": to_camel}

    version: int = LEGACY_PROFILE_VERSION
    subscriptions: list[LegacySubscriptionEntry] = Field(default_factory=list)
    environments: list[Environment] = Field(default_factory=list)

"""Azure Mock for integration testing.

This module provides in-memory implementations of the collaborators the
profile reconciler depends on, enabling tests without Azure connectivity.

Key Features:
- In-memory profile store with write tracking
- Scripted authenticator resolving identities and issuing per-tenant tokens
- Tenant and subscription directories for both listing surfaces
- Error injection per tenant for failure isolation scenarios

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext(tenants=["tenant-a"]) as ctx:
        ctx.service_management.add_subscription("tenant-a", SUB_ID, "Dev")
        reconciler = ctx.build_reconciler()

        # Your test code here
        reconciler.login(Account(), reconciler.get_environment_or_default())

        # Assert on mock state
        assert ctx.authenticator.tenants_authenticated == ["common", "tenant-a"]
"""

from .certificates import MockCertificate, create_mock_certificate, publish_settings_xml
from .context import MockAzureContext
from .credential import MockAuthenticator, make_token, tenant_of
from .directories import MockAccountDirectory, MockDirectoryFactory, MockSubscriptionDirectory
from .store import MemoryProfileStore

__all__ = [
    "MemoryProfileStore",
    "MockAccountDirectory",
    "MockAuthenticator",
    "MockAzureContext",
    "MockCertificate",
    "MockDirectoryFactory",
    "MockSubscriptionDirectory",
    "create_mock_certificate",
    "make_token",
    "publish_settings_xml",
    "tenant_of",
]

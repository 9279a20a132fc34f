"""Tests for the profile reconciler.

Uses the Azure mocks to run login, refresh and the removal cascades
end-to-end against an in-memory profile.
"""

import json
import logging
from pathlib import Path
from uuid import UUID

import pytest
from azure_mock import (
    MockAzureContext,
    MockCertificate,
    create_mock_certificate,
    publish_settings_xml,
)

from azprofile.authentication import PromptPolicy
from azprofile.config import ProfileConfig
from azprofile.errors import (
    AlreadyExistsError,
    IdentityMismatchError,
    NotFoundError,
    ProtectedResourceError,
)
from azprofile.models import (
    Account,
    AccountType,
    Endpoint,
    Environment,
    Subscription,
    SupportedMode,
)
from azprofile.reconciler import ProfileReconciler

USER = "user@contoso.com"
OTHER = "other@contoso.com"

SUB_1 = UUID("11111111-1111-1111-1111-111111111111")
SUB_2 = UUID("22222222-2222-2222-2222-222222222222")
SUB_3 = UUID("33333333-3333-3333-3333-333333333333")

PROFILE_PATH = Path("/mock/azprofile/azure_profile.json")
SETTINGS_PATH = Path("/mock/downloads/contoso.publishsettings")

CONTOSO = Environment(
    name="contoso",
    endpoints={
        Endpoint.ACTIVE_DIRECTORY: "https://login.contoso.com/",
        Endpoint.ACTIVE_DIRECTORY_SERVICE_ENDPOINT_RESOURCE_ID: "https://management.contoso.com/",
        Endpoint.RESOURCE_MANAGER: "https://rm.contoso.com/",
    },
)


@pytest.fixture
def logged_in(
    mock_context: MockAzureContext,
    reconciler: ProfileReconciler,
    azure_cloud: Environment,
) -> ProfileReconciler:
    """Reconciler after a user login that found S1 (Service Management) and S2 (Resource Manager)."""
    mock_context.service_management.add_subscription("tenant-a", str(SUB_1), "Dev")
    mock_context.resource_manager.add_subscription("tenant-a", str(SUB_2), "Prod")
    reconciler.login(Account(), azure_cloud)
    return reconciler


class TestLogin:
    """Tests for login."""

    def test_login_loads_both_authorities(
        self,
        mock_context: MockAzureContext,
        logged_in: ProfileReconciler,
    ) -> None:
        """Test first login into an empty profile."""
        accounts = logged_in.list_accounts()

        assert [account.id for account in accounts] == [USER]
        assert accounts[0].tenants == ("tenant-a",)
        assert set(accounts[0].subscriptions) == {str(SUB_1), str(SUB_2)}

        assert logged_in.profile.default_subscription_id == SUB_1
        assert logged_in.session.subscription is not None
        assert logged_in.session.subscription.id == SUB_1
        assert logged_in.session.account is not None
        assert logged_in.session.account.id == USER

        dev = logged_in.get_subscription(SUB_1)
        prod = logged_in.get_subscription(SUB_2)
        assert dev.supported_modes == (SupportedMode.SERVICE_MANAGEMENT.value,)
        assert prod.supported_modes == (SupportedMode.RESOURCE_MANAGER.value,)
        assert dev.environment == prod.environment == "AzureCloud"
        assert dev.account == prod.account == USER

        assert mock_context.authenticator.tenants_authenticated == ["common", "tenant-a"]
        assert mock_context.store.write_count == 1

    def test_login_persists_profile(
        self,
        mock_context: MockAzureContext,
        logged_in: ProfileReconciler,
    ) -> None:
        saved = json.loads(mock_context.store.files[PROFILE_PATH])

        assert saved["defaultSubscription"] == str(SUB_1)
        assert [account["id"] for account in saved["accounts"]] == [USER]
        assert {sub["id"] for sub in saved["subscriptions"]} == {str(SUB_1), str(SUB_2)}

    def test_login_without_identity_changes_nothing(self, azure_cloud: Environment) -> None:
        ctx = MockAzureContext(identity=None, tenants=["tenant-a"])
        ctx.resource_manager.add_subscription("tenant-a", str(SUB_1), "Dev")
        reconciler = ctx.build_reconciler()

        result = reconciler.login(Account(), azure_cloud)

        assert result is None
        assert ctx.store.write_count == 0
        assert reconciler.list_accounts() == []
        assert reconciler.profile.subscriptions == {}
        assert reconciler.session.current.is_empty

    def test_login_with_rejected_secret_changes_nothing(self, azure_cloud: Environment) -> None:
        ctx = MockAzureContext(tenants=["tenant-a"])
        ctx.resource_manager.add_subscription("tenant-a", str(SUB_1), "Automation")
        ctx.authenticator.fail_tenant("tenant-a")
        reconciler = ctx.build_reconciler()
        request = Account(id="app-id", type=AccountType.SERVICE_PRINCIPAL, tenants=["tenant-a"])

        result = reconciler.login(request, azure_cloud, secret="wrong")

        assert result is None
        assert ctx.store.write_count == 0
        assert reconciler.list_accounts() == []
        assert reconciler.profile.subscriptions == {}

    def test_login_failing_home_tenant_changes_nothing(
        self,
        mock_context: MockAzureContext,
        reconciler: ProfileReconciler,
        azure_cloud: Environment,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        mock_context.resource_manager.add_subscription("tenant-a", str(SUB_1), "Dev")
        mock_context.authenticator.fail_tenant("common")
        caplog.set_level(logging.WARNING, logger="azprofile.reconciler")

        result = reconciler.login(Account(id=USER), azure_cloud)

        assert result is None
        assert mock_context.store.write_count == 0
        assert reconciler.list_accounts() == []
        assert reconciler.session.current.is_empty
        assert "Login failed: authentication did not succeed" in caplog.messages

    def test_login_caches_subscription_tokens(self, logged_in: ProfileReconciler) -> None:
        token = logged_in.session.get_token(SUB_2, USER)

        assert token is not None
        assert "tenant-a" in token.token

    def test_subscription_from_both_authorities_merged(
        self,
        mock_context: MockAzureContext,
        reconciler: ProfileReconciler,
        azure_cloud: Environment,
    ) -> None:
        mock_context.service_management.add_subscription("tenant-a", str(SUB_1), "Dev (classic)")
        mock_context.resource_manager.add_subscription("tenant-a", str(SUB_1), "Dev")

        reconciler.login(Account(), azure_cloud)

        subscription = reconciler.get_subscription(SUB_1)
        assert len(reconciler.profile.subscriptions) == 1
        assert subscription.name == "Dev (classic)"
        assert subscription.supported_modes == (
            SupportedMode.SERVICE_MANAGEMENT.value,
            SupportedMode.RESOURCE_MANAGER.value,
        )

    def test_failing_tenant_is_isolated(self, azure_cloud: Environment) -> None:
        ctx = MockAzureContext(tenants=["tenant-a", "tenant-b"])
        ctx.resource_manager.add_subscription("tenant-a", str(SUB_1), "Dev")
        ctx.resource_manager.add_subscription("tenant-b", str(SUB_2), "Prod")
        ctx.resource_manager.fail_tenant("tenant-a")
        reconciler = ctx.build_reconciler()

        account = reconciler.login(Account(), azure_cloud)

        assert account is not None
        assert account.tenants == ("tenant-a", "tenant-b")
        assert list(reconciler.profile.subscriptions) == [SUB_2]
        assert reconciler.profile.default_subscription_id == SUB_2

    def test_second_login_keeps_default(
        self,
        mock_context: MockAzureContext,
        logged_in: ProfileReconciler,
        azure_cloud: Environment,
    ) -> None:
        mock_context.resource_manager.add_subscription("tenant-a", str(SUB_3), "Test")
        logged_in.set_subscription_as_default(SUB_2)

        account = logged_in.login(Account(id=USER), azure_cloud)

        assert account is not None
        assert account.has_subscription(SUB_3)
        assert logged_in.profile.default_subscription_id == SUB_2
        assert logged_in.session.subscription is not None
        assert logged_in.session.subscription.id == SUB_2

    def test_login_restores_session_from_default(
        self,
        logged_in: ProfileReconciler,
        azure_cloud: Environment,
    ) -> None:
        logged_in.session.clear()

        logged_in.login(Account(id=USER), azure_cloud)

        assert logged_in.session.subscription is not None
        assert logged_in.session.subscription.id == SUB_1

    def test_login_service_principal(self, azure_cloud: Environment) -> None:
        ctx = MockAzureContext(tenants=["tenant-a"])
        ctx.resource_manager.add_subscription("tenant-a", str(SUB_1), "Automation")
        reconciler = ctx.build_reconciler()
        request = Account(id="app-id", type=AccountType.SERVICE_PRINCIPAL, tenants=["tenant-a"])

        account = reconciler.login(request, azure_cloud, secret="s3cret")

        assert account is not None
        assert account.type == AccountType.SERVICE_PRINCIPAL
        assert ctx.authenticator.tenants_authenticated == ["tenant-a"]
        assert all(call["secret"] == "s3cret" for call in ctx.authenticator.calls)
        assert ctx.directories.tenants.query_count == 0
        assert reconciler.get_subscription(SUB_1).account == "app-id"

    def test_login_certificate_account_refused(
        self,
        mock_context: MockAzureContext,
        reconciler: ProfileReconciler,
        azure_cloud: Environment,
    ) -> None:
        result = reconciler.login(Account(id="ABCDEF", type=AccountType.CERTIFICATE), azure_cloud)

        assert result is None
        assert mock_context.authenticator.calls == []
        assert mock_context.store.write_count == 0

    def test_login_type_mismatch(
        self,
        logged_in: ProfileReconciler,
        azure_cloud: Environment,
    ) -> None:
        request = Account(id=USER, type=AccountType.SERVICE_PRINCIPAL, tenants=["tenant-a"])

        with pytest.raises(IdentityMismatchError):
            logged_in.login(request, azure_cloud, secret="s3cret")


class TestRefresh:
    """Tests for refresh_subscriptions."""

    def test_new_subscriptions_are_added(
        self,
        mock_context: MockAzureContext,
        logged_in: ProfileReconciler,
        azure_cloud: Environment,
    ) -> None:
        mock_context.resource_manager.add_subscription("tenant-a", str(SUB_3), "Test")

        subscriptions = logged_in.refresh_subscriptions(azure_cloud)

        assert {s.id for s in subscriptions} == {SUB_1, SUB_2, SUB_3}
        assert logged_in.get_subscription(SUB_3).account == USER
        assert logged_in.get_account(USER).has_subscription(SUB_3)

    def test_existing_owner_preserved(
        self,
        logged_in: ProfileReconciler,
        azure_cloud: Environment,
    ) -> None:
        """Test that a second account seeing the same subscriptions does not take them over."""
        logged_in.add_or_set_account(Account(id=OTHER, tenants=["tenant-a"]))

        logged_in.refresh_subscriptions(azure_cloud)

        assert logged_in.get_subscription(SUB_1).account == USER
        assert logged_in.get_subscription(SUB_2).account == USER
        assert logged_in.get_account(OTHER).has_subscription(SUB_1)
        assert logged_in.get_account(OTHER).has_subscription(SUB_2)

    def test_certificate_accounts_skipped(
        self,
        mock_context: MockAzureContext,
        logged_in: ProfileReconciler,
        azure_cloud: Environment,
    ) -> None:
        logged_in.add_or_set_account(
            Account(id="ABCDEF", type=AccountType.CERTIFICATE, subscriptions=[str(SUB_3)])
        )

        logged_in.refresh_subscriptions(azure_cloud)

        assert "ABCDEF" not in [call["account"] for call in mock_context.authenticator.calls]
        assert logged_in.get_account("ABCDEF").subscriptions == (str(SUB_3),)

    def test_refresh_never_prompts(
        self,
        mock_context: MockAzureContext,
        logged_in: ProfileReconciler,
        azure_cloud: Environment,
    ) -> None:
        calls_before = len(mock_context.authenticator.calls)

        logged_in.refresh_subscriptions(azure_cloud)

        refresh_calls = mock_context.authenticator.calls[calls_before:]
        assert [call["tenant"] for call in refresh_calls] == ["tenant-a"]
        assert all(call["prompt"] == PromptPolicy.NEVER for call in refresh_calls)


class TestAccounts:
    """Tests for account operations."""

    def test_add_or_set_account_merges(self, reconciler: ProfileReconciler) -> None:
        reconciler.add_or_set_account(Account(id=USER, tenants=["tenant-a"]))

        stored = reconciler.add_or_set_account(Account(id=USER, tenants=["TENANT-A", "tenant-b"]))

        assert stored.tenants == ("TENANT-A", "tenant-b")
        assert len(reconciler.list_accounts()) == 1

    def test_add_account_without_id(self, reconciler: ProfileReconciler) -> None:
        with pytest.raises(ValueError):
            reconciler.add_or_set_account(Account())

    def test_get_account(self, logged_in: ProfileReconciler) -> None:
        assert logged_in.get_account(USER).id == USER
        assert logged_in.get_account_or_none("missing@contoso.com") is None

        with pytest.raises(NotFoundError):
            logged_in.get_account("missing@contoso.com")
        with pytest.raises(ValueError):
            logged_in.get_account_or_none("")

    def test_get_account_or_default(self, logged_in: ProfileReconciler) -> None:
        assert logged_in.get_account_or_default().id == USER

        logged_in.session.clear()
        with pytest.raises(NotFoundError):
            logged_in.get_account_or_default()

    def test_list_accounts_by_id(self, logged_in: ProfileReconciler) -> None:
        assert [account.id for account in logged_in.list_accounts(USER)] == [USER]
        assert logged_in.list_accounts("missing@contoso.com") == []

    def test_list_subscription_accounts(self, logged_in: ProfileReconciler) -> None:
        logged_in.add_or_set_account(Account(id=OTHER, subscriptions=[str(SUB_2)]))

        assert [a.id for a in logged_in.list_subscription_accounts(SUB_1)] == [USER]
        assert [a.id for a in logged_in.list_subscription_accounts(SUB_2)] == [USER, OTHER]

    def test_account_update_refreshes_session(self, logged_in: ProfileReconciler) -> None:
        logged_in.add_or_set_account(Account(id=USER, tenants=["tenant-b"]))

        assert logged_in.session.account is not None
        assert logged_in.session.account.tenants == ("tenant-b", "tenant-a")


class TestRemoveAccount:
    """Tests for remove_account cascades."""

    def test_removes_subscriptions_only_it_owns(
        self, logged_in: ProfileReconciler, caplog: pytest.LogCaptureFixture
    ) -> None:
        caplog.set_level(logging.WARNING, logger="azprofile.reconciler")

        removed = logged_in.remove_account(USER)

        assert removed.id == USER
        assert logged_in.list_accounts() == []
        assert logged_in.profile.subscriptions == {}
        assert logged_in.profile.default_subscription_id is None
        assert logged_in.session.current.is_empty
        assert "Removing the default subscription" in caplog.messages
        assert "Removing the current subscription; session cleared" in caplog.messages

    def test_reassigns_to_substitute_owner(self, logged_in: ProfileReconciler) -> None:
        logged_in.add_or_set_account(Account(id=OTHER, subscriptions=[str(SUB_1)]))

        logged_in.remove_account(USER)

        assert logged_in.get_subscription(SUB_1).account == OTHER
        assert SUB_2 not in logged_in.profile.subscriptions
        assert logged_in.profile.default_subscription_id == SUB_1
        assert logged_in.session.account is not None
        assert logged_in.session.account.id == OTHER
        assert logged_in.session.subscription is not None
        assert logged_in.session.subscription.account == OTHER

    def test_substitute_prefers_token_accounts(self, logged_in: ProfileReconciler) -> None:
        logged_in.add_or_set_account(
            Account(id="AAAA", type=AccountType.CERTIFICATE, subscriptions=[str(SUB_1)])
        )
        logged_in.add_or_set_account(Account(id="zed@contoso.com", subscriptions=[str(SUB_1)]))

        logged_in.remove_account(USER)

        assert logged_in.get_subscription(SUB_1).account == "zed@contoso.com"

    def test_substitute_ordering_ignores_case(self, logged_in: ProfileReconciler) -> None:
        logged_in.add_or_set_account(Account(id="Zed@contoso.com", subscriptions=[str(SUB_1)]))
        logged_in.add_or_set_account(Account(id="bob@contoso.com", subscriptions=[str(SUB_1)]))

        logged_in.remove_account(USER)

        assert logged_in.get_subscription(SUB_1).account == "bob@contoso.com"

    def test_certificate_substitute_as_last_resort(self, logged_in: ProfileReconciler) -> None:
        logged_in.add_or_set_account(
            Account(id="AAAA", type=AccountType.CERTIFICATE, subscriptions=[str(SUB_2)])
        )

        logged_in.remove_account(USER)

        assert logged_in.get_subscription(SUB_2).account == "AAAA"

    def test_unknown_account(self, reconciler: ProfileReconciler) -> None:
        with pytest.raises(NotFoundError):
            reconciler.remove_account("missing@contoso.com")


class TestSubscriptions:
    """Tests for subscription operations."""

    def test_add_or_set_subscription_unions_providers(self, reconciler: ProfileReconciler) -> None:
        reconciler.add_or_set_account(Account(id=USER, subscriptions=[str(SUB_1)]))
        first = Subscription(
            id=SUB_1,
            environment="AzureCloud",
            account=USER,
            registered_resource_providers=["Microsoft.Compute"],
        )
        second = first.model_copy(
            update={"registered_resource_providers": ("Microsoft.Storage", "microsoft.compute")}
        )

        reconciler.add_or_set_subscription(first)
        stored = reconciler.add_or_set_subscription(second)

        assert len(reconciler.list_subscriptions()) == 1
        assert stored.registered_resource_providers == ("Microsoft.Storage", "microsoft.compute")
        assert reconciler.get_subscription(SUB_1).registered_resource_providers == (
            "Microsoft.Storage",
            "microsoft.compute",
        )

    def test_providers_union_keeps_both_sides(self, reconciler: ProfileReconciler) -> None:
        reconciler.add_or_set_account(Account(id=USER, subscriptions=[str(SUB_1)]))
        base = Subscription(id=SUB_1, environment="AzureCloud", account=USER)

        reconciler.add_or_set_subscription(
            base.model_copy(update={"registered_resource_providers": ("Microsoft.Compute",)})
        )
        reconciler.add_or_set_subscription(
            base.model_copy(update={"registered_resource_providers": ("Microsoft.Storage",)})
        )

        assert reconciler.get_subscription(SUB_1).registered_resource_providers == (
            "Microsoft.Storage",
            "Microsoft.Compute",
        )

    def test_subscription_needs_environment(self, reconciler: ProfileReconciler) -> None:
        reconciler.add_or_set_account(Account(id=USER))

        with pytest.raises(ValueError):
            reconciler.add_or_set_subscription(Subscription(id=SUB_1, account=USER))
        with pytest.raises(NotFoundError):
            reconciler.add_or_set_subscription(
                Subscription(id=SUB_1, environment="missing", account=USER)
            )

    def test_new_subscription_needs_account(self, reconciler: ProfileReconciler) -> None:
        with pytest.raises(NotFoundError):
            reconciler.add_or_set_subscription(
                Subscription(id=SUB_1, environment="AzureCloud", account=USER)
            )

    def test_get_subscription_by_id_or_name(self, logged_in: ProfileReconciler) -> None:
        assert logged_in.get_subscription(SUB_1).name == "Dev"
        assert logged_in.get_subscription(str(SUB_2)).name == "Prod"
        assert logged_in.get_subscription("PROD").id == SUB_2

        with pytest.raises(NotFoundError):
            logged_in.get_subscription("Staging")

    def test_list_subscriptions_by_account(self, logged_in: ProfileReconciler) -> None:
        logged_in.add_or_set_account(Account(id=OTHER, subscriptions=[str(SUB_2)]))

        assert [s.id for s in logged_in.list_subscriptions(OTHER)] == [SUB_2]
        assert len(logged_in.list_subscriptions(USER)) == 2
        with pytest.raises(NotFoundError):
            logged_in.list_subscriptions("missing@contoso.com")

    def test_update_refreshes_session(self, logged_in: ProfileReconciler) -> None:
        logged_in.add_or_set_subscription(
            Subscription(
                id=SUB_1,
                environment="AzureCloud",
                registered_resource_providers=["Microsoft.Web"],
            )
        )

        current = logged_in.session.subscription
        assert current is not None
        assert current.registered_resource_providers == ("Microsoft.Web",)
        assert current.account == USER


class TestRemoveSubscription:
    """Tests for remove_subscription."""

    def test_removing_default_and_current(
        self, logged_in: ProfileReconciler, caplog: pytest.LogCaptureFixture
    ) -> None:
        caplog.set_level(logging.WARNING, logger="azprofile.reconciler")

        removed = logged_in.remove_subscription(SUB_1)

        assert removed.id == SUB_1
        assert logged_in.profile.default_subscription_id is None
        assert logged_in.session.current.is_empty
        assert logged_in.get_account(USER).subscriptions == (str(SUB_2),)
        assert "Removing the default subscription" in caplog.messages
        assert "Removing the current subscription; session cleared" in caplog.messages

    def test_account_removed_with_last_subscription(self, logged_in: ProfileReconciler) -> None:
        logged_in.remove_subscription("Dev")
        logged_in.remove_subscription("Prod")

        assert logged_in.list_accounts() == []
        assert logged_in.list_subscriptions() == []

    def test_detached_from_every_account(self, logged_in: ProfileReconciler) -> None:
        logged_in.add_or_set_account(Account(id=OTHER, subscriptions=[str(SUB_1), str(SUB_3)]))

        logged_in.remove_subscription(SUB_1)

        assert logged_in.get_account(OTHER).subscriptions == (str(SUB_3),)

    def test_unknown_subscription(self, reconciler: ProfileReconciler) -> None:
        with pytest.raises(NotFoundError):
            reconciler.remove_subscription(SUB_1)


class TestSelection:
    """Tests for current and default selection."""

    def test_set_current_does_not_change_default(self, logged_in: ProfileReconciler) -> None:
        current = logged_in.set_subscription_as_current("prod")

        assert current.id == SUB_2
        assert logged_in.session.is_current_subscription(SUB_2)
        assert logged_in.profile.default_subscription_id == SUB_1

    def test_set_default(
        self,
        mock_context: MockAzureContext,
        logged_in: ProfileReconciler,
    ) -> None:
        logged_in.set_subscription_as_default(SUB_2)

        assert logged_in.profile.default_subscription_id == SUB_2
        assert logged_in.session.is_current_subscription(SUB_2)
        saved = json.loads(mock_context.store.files[PROFILE_PATH])
        assert saved["defaultSubscription"] == str(SUB_2)

    def test_set_current_with_other_account(self, logged_in: ProfileReconciler) -> None:
        logged_in.add_or_set_account(Account(id=OTHER, subscriptions=[str(SUB_1)]))

        current = logged_in.set_subscription_as_current(SUB_1, OTHER)

        assert current.account == OTHER
        assert logged_in.session.is_current_account(OTHER)
        assert logged_in.get_subscription(SUB_1).account == USER

    def test_set_current_with_unknown_account(self, logged_in: ProfileReconciler) -> None:
        with pytest.raises(NotFoundError):
            logged_in.set_subscription_as_current(SUB_1, "missing@contoso.com")

        assert logged_in.session.is_current_subscription(SUB_1)

    def test_clear_default(self, logged_in: ProfileReconciler) -> None:
        logged_in.clear_default_subscription()

        assert logged_in.profile.default_subscription_id is None
        assert logged_in.session.is_current_subscription(SUB_1)

    def test_default_selected_on_startup(
        self,
        mock_context: MockAzureContext,
        logged_in: ProfileReconciler,
    ) -> None:
        """Test that a new reconciler over the saved profile starts on the default."""
        mock_context.session.clear()

        reopened = mock_context.build_reconciler()

        assert reopened.session.is_current_subscription(SUB_1)
        assert reopened.session.is_current_account(USER)


class TestEnvironments:
    """Tests for environment operations."""

    def test_public_environment_protected(self, reconciler: ProfileReconciler) -> None:
        with pytest.raises(ProtectedResourceError):
            reconciler.add_or_set_environment(Environment(name="AzureCloud"))

    def test_add_custom_environment_merges(self, reconciler: ProfileReconciler) -> None:
        reconciler.add_or_set_environment(CONTOSO)

        stored = reconciler.add_or_set_environment(
            Environment(
                name="contoso",
                endpoints={Endpoint.RESOURCE_MANAGER: "https://rm2.contoso.com/"},
            )
        )

        assert stored.get_endpoint(Endpoint.RESOURCE_MANAGER) == "https://rm2.contoso.com/"
        assert stored.get_endpoint(Endpoint.ACTIVE_DIRECTORY) == "https://login.contoso.com/"

    def test_get_environment_or_default(self, logged_in: ProfileReconciler) -> None:
        """Test that the session environment is used when no name is given."""
        logged_in.add_or_set_environment(CONTOSO)

        assert logged_in.get_environment_or_default() is logged_in.session.environment
        assert logged_in.get_environment_or_default().name == "AzureCloud"
        assert logged_in.get_environment_or_default("contoso") == CONTOSO
        with pytest.raises(NotFoundError):
            logged_in.get_environment_or_default("missing")

    def test_default_environment_without_session(self, reconciler: ProfileReconciler) -> None:
        assert reconciler.get_environment_or_default().name == "AzureCloud"

    def test_configured_default_environment(self, mock_context: MockAzureContext) -> None:
        reconciler = mock_context.build_reconciler(
            ProfileConfig(
                profile_directory=Path("/mock/azprofile"),
                environment_name="AzureChinaCloud",
            )
        )

        assert reconciler.get_environment_or_default().name == "AzureChinaCloud"

    def test_list_environments(self, reconciler: ProfileReconciler) -> None:
        reconciler.add_or_set_environment(CONTOSO)

        names = [environment.name for environment in reconciler.list_environments()]

        assert set(names) == {"AzureCloud", "AzureChinaCloud", "contoso"}
        assert reconciler.list_environments("contoso") == [CONTOSO]
        assert reconciler.list_environments("missing") == []


class TestRemoveEnvironment:
    """Tests for remove_environment cascades."""

    @pytest.fixture
    def contoso(self, reconciler: ProfileReconciler) -> ProfileReconciler:
        """Profile with contoso owning S1 and S2 and AzureCloud owning S3."""
        reconciler.add_or_set_environment(CONTOSO)
        reconciler.add_or_set_account(
            Account(id=USER, subscriptions=[str(SUB_1), str(SUB_2), str(SUB_3)])
        )
        reconciler.add_or_set_account(Account(id=OTHER, subscriptions=[str(SUB_2)]))
        for sub_id, environment in ((SUB_1, "contoso"), (SUB_2, "contoso"), (SUB_3, "AzureCloud")):
            reconciler.add_or_set_subscription(
                Subscription(id=sub_id, environment=environment, account=USER)
            )
        return reconciler

    def test_removes_environment_subscriptions(self, contoso: ProfileReconciler) -> None:
        removed = contoso.remove_environment("contoso")

        assert removed.name == "contoso"
        assert "contoso" not in contoso.profile.environments
        assert list(contoso.profile.subscriptions) == [SUB_3]
        assert contoso.get_account(USER).subscriptions == (str(SUB_3),)
        assert contoso.get_account_or_none(OTHER) is None

    def test_clears_session_in_removed_environment(self, contoso: ProfileReconciler) -> None:
        contoso.set_subscription_as_default(SUB_1)

        contoso.remove_environment("contoso")

        assert contoso.session.current.is_empty
        assert contoso.profile.default_subscription_id is None

    def test_public_environment_leaves_store_unchanged(
        self,
        mock_context: MockAzureContext,
        contoso: ProfileReconciler,
    ) -> None:
        files_before = dict(mock_context.store.files)
        writes_before = mock_context.store.write_count

        with pytest.raises(ProtectedResourceError):
            contoso.remove_environment("AzureCloud")

        assert mock_context.store.files == files_before
        assert mock_context.store.write_count == writes_before
        assert SUB_3 in contoso.profile.subscriptions

    def test_unknown_environment(self, reconciler: ProfileReconciler) -> None:
        with pytest.raises(NotFoundError):
            reconciler.remove_environment("missing")


class TestImportPublishSettings:
    """Tests for import_publish_settings."""

    @pytest.fixture(scope="class")
    def certificate(self) -> MockCertificate:
        return create_mock_certificate()

    def test_import(
        self,
        mock_context: MockAzureContext,
        reconciler: ProfileReconciler,
        certificate: MockCertificate,
    ) -> None:
        mock_context.store.files[SETTINGS_PATH] = publish_settings_xml(
            certificate, [(str(SUB_1), "Classic Dev"), (str(SUB_2), "Classic Prod")]
        )

        imported = reconciler.import_publish_settings(SETTINGS_PATH)

        assert [s.id for s in imported] == [SUB_1, SUB_2]
        account = reconciler.get_account(certificate.thumbprint)
        assert account.type == AccountType.CERTIFICATE
        assert account.tenants == ()
        assert set(account.subscriptions) == {str(SUB_1), str(SUB_2)}
        for subscription in imported:
            assert subscription.environment == "AzureCloud"
            assert subscription.account == certificate.thumbprint
        assert mock_context.store.certificates[certificate.thumbprint].data == certificate.bundle

    def test_import_into_custom_environment(
        self,
        mock_context: MockAzureContext,
        reconciler: ProfileReconciler,
        certificate: MockCertificate,
    ) -> None:
        reconciler.add_or_set_environment(CONTOSO)
        mock_context.store.files[SETTINGS_PATH] = publish_settings_xml(
            certificate, [(str(SUB_1), "Classic Dev")]
        )

        imported = reconciler.import_publish_settings(SETTINGS_PATH, "contoso")

        assert imported[0].environment == "contoso"

    def test_reimport_merges(
        self,
        mock_context: MockAzureContext,
        reconciler: ProfileReconciler,
        certificate: MockCertificate,
    ) -> None:
        mock_context.store.files[SETTINGS_PATH] = publish_settings_xml(
            certificate, [(str(SUB_1), "Classic Dev")]
        )
        reconciler.import_publish_settings(SETTINGS_PATH)
        mock_context.store.files[SETTINGS_PATH] = publish_settings_xml(
            certificate, [(str(SUB_2), "Classic Prod")]
        )

        reconciler.import_publish_settings(SETTINGS_PATH)

        account = reconciler.get_account(certificate.thumbprint)
        assert set(account.subscriptions) == {str(SUB_1), str(SUB_2)}
        assert len(reconciler.list_accounts()) == 1

    def test_thumbprint_collision(
        self,
        mock_context: MockAzureContext,
        reconciler: ProfileReconciler,
        certificate: MockCertificate,
    ) -> None:
        reconciler.add_or_set_account(Account(id=certificate.thumbprint))
        mock_context.store.files[SETTINGS_PATH] = publish_settings_xml(
            certificate, [(str(SUB_1), "Classic Dev")]
        )

        with pytest.raises(AlreadyExistsError):
            reconciler.import_publish_settings(SETTINGS_PATH)

        assert mock_context.store.certificates == {}
        assert reconciler.profile.subscriptions == {}

    def test_missing_file(self, reconciler: ProfileReconciler) -> None:
        with pytest.raises(NotFoundError):
            reconciler.import_publish_settings(SETTINGS_PATH)

    def test_imported_subscriptions_survive_refresh(
        self,
        mock_context: MockAzureContext,
        logged_in: ProfileReconciler,
        certificate: MockCertificate,
        azure_cloud: Environment,
    ) -> None:
        mock_context.store.files[SETTINGS_PATH] = publish_settings_xml(
            certificate, [(str(SUB_3), "Classic Test")]
        )
        logged_in.import_publish_settings(SETTINGS_PATH)

        logged_in.refresh_subscriptions(azure_cloud)

        assert logged_in.get_subscription(SUB_3).account == certificate.thumbprint

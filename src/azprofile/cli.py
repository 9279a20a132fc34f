"""Command-line interface for the Azure profile (azprofile).

A thin layer over ProfileReconciler: every command maps to one reconciler
operation and prints the affected entities. Profile errors are reported as
click errors with exit code 1.

Usage:
    azprofile account login
    azprofile account login --service-principal <app-id> --tenant <tenant>
    azprofile subscription list
    azprofile subscription default "Production"
    azprofile import-publish-settings ./my.publishsettings
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from pydantic import ValidationError

from .config import ConfigurationError, ProfileConfig
from .errors import ProfileError
from .main import build_reconciler, setup_logging
from .models import Account, AccountType, Endpoint, Environment, Subscription
from .reconciler import ProfileReconciler

F = TypeVar("F", bound=Callable[..., Any])


def handle_profile_errors(func: F) -> F:
    """Report profile and validation errors as click errors."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (ProfileError, ValidationError) as e:
            raise click.ClickException(str(e)) from e

    return wrapper  # type: ignore[return-value]


def _format_subscription(reconciler: ProfileReconciler, subscription: Subscription) -> str:
    markers = ""
    if reconciler.profile.default_subscription_id == subscription.id:
        markers += " (default)"
    if reconciler.session.is_current_subscription(subscription.id):
        markers += " (current)"
    modes = ",".join(subscription.supported_modes) or "-"
    return (
        f"{subscription.id}  {subscription.name or '-'}  "
        f"[{subscription.environment or '-'}] {subscription.account or '-'} {modes}{markers}"
    )


def _format_account(account: Account) -> str:
    return (
        f"{account.id}  {account.type.value}  "
        f"tenants={len(account.tenants)} subscriptions={len(account.subscriptions)}"
    )


def _parse_endpoints(values: tuple[str, ...]) -> dict[Endpoint, str]:
    endpoints: dict[Endpoint, str] = {}
    for value in values:
        kind, sep, url = value.partition("=")
        if not sep or not url:
            raise click.BadParameter(f"Expected KIND=VALUE, got {value!r}", param_hint="--endpoint")
        try:
            endpoints[Endpoint(kind)] = url
        except ValueError as e:
            valid = ", ".join(item.value for item in Endpoint)
            raise click.BadParameter(
                f"Unknown endpoint kind {kind!r}; expected one of: {valid}",
                param_hint="--endpoint",
            ) from e
    return endpoints


@click.group()
@click.version_option(version="0.1.0", prog_name="azprofile")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Azure profile CLI (azprofile).

    Manages the local profile of Azure accounts, subscriptions and
    environments. Configuration is read from AZPROFILE_* environment
    variables.

    \b
    Quick Start:
        azprofile account login              # Sign in and load subscriptions
        azprofile subscription list          # Show known subscriptions
        azprofile subscription default NAME  # Pick the default subscription
    """
    if ctx.obj is not None:
        return

    try:
        config = ProfileConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config)
    try:
        ctx.obj = build_reconciler(config)
    except ProfileError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Account Commands
# =============================================================================


@cli.group()
def account() -> None:
    """Manage accounts."""
    pass


@account.command("login")
@click.option("--environment", "-e", "environment_name", help="Environment to sign in to")
@click.option("--service-principal", "application_id", help="Sign in as this service principal")
@click.option("--tenant", "-t", "tenants", multiple=True, help="Tenant to use (repeatable)")
@click.option(
    "--secret",
    envvar="AZPROFILE_CLIENT_SECRET",
    help="Service principal secret (prompted if omitted)",
)
@click.pass_obj
@handle_profile_errors
def account_login(
    reconciler: ProfileReconciler,
    environment_name: str | None,
    application_id: str | None,
    tenants: tuple[str, ...],
    secret: str | None,
) -> None:
    """Sign in and load the account's subscriptions."""
    environment = reconciler.get_environment_or_default(environment_name)

    if application_id:
        if not tenants:
            raise click.UsageError("--tenant is required with --service-principal")
        if not secret:
            secret = click.prompt("Secret", hide_input=True)
        request = Account(id=application_id, type=AccountType.SERVICE_PRINCIPAL, tenants=tenants)
    else:
        request = Account(type=AccountType.USER, tenants=tenants)

    result = reconciler.login(request, environment, secret)
    if result is None:
        raise click.ClickException("Login failed: the account could not be authenticated")

    click.secho(f"✓ Logged in as {result.id}", fg="green")
    for subscription in reconciler.list_subscriptions(result.id):
        click.echo(f"  {_format_subscription(reconciler, subscription)}")


@account.command("list")
@click.argument("account_id", required=False)
@click.pass_obj
@handle_profile_errors
def account_list(reconciler: ProfileReconciler, account_id: str | None) -> None:
    """List accounts."""
    for item in reconciler.list_accounts(account_id):
        click.echo(_format_account(item))


@account.command("remove")
@click.argument("account_id")
@click.pass_obj
@handle_profile_errors
def account_remove(reconciler: ProfileReconciler, account_id: str) -> None:
    """Remove an account and the subscriptions only it can access."""
    removed = reconciler.remove_account(account_id)
    click.secho(f"✓ Removed account {removed.id}", fg="green")


# =============================================================================
# Subscription Commands
# =============================================================================


@cli.group()
def subscription() -> None:
    """Manage subscriptions."""
    pass


@subscription.command("list")
@click.option("--account", "-a", "account_id", help="Only subscriptions of this account")
@click.pass_obj
@handle_profile_errors
def subscription_list(reconciler: ProfileReconciler, account_id: str | None) -> None:
    """List subscriptions."""
    for item in reconciler.list_subscriptions(account_id):
        click.echo(_format_subscription(reconciler, item))


@subscription.command("refresh")
@click.option("--environment", "-e", "environment_name", help="Environment to query")
@click.pass_obj
@handle_profile_errors
def subscription_refresh(reconciler: ProfileReconciler, environment_name: str | None) -> None:
    """Refresh subscriptions of all signed-in accounts."""
    environment = reconciler.get_environment_or_default(environment_name)
    subscriptions = reconciler.refresh_subscriptions(environment)
    click.secho(f"✓ {len(subscriptions)} subscriptions in profile", fg="green")


@subscription.command("select")
@click.argument("subscription")
@click.option("--account", "-a", "account_id", help="Account to use for the subscription")
@click.pass_obj
@handle_profile_errors
def subscription_select(
    reconciler: ProfileReconciler, subscription: str, account_id: str | None
) -> None:
    """Select the current subscription by id or name."""
    current = reconciler.set_subscription_as_current(subscription, account_id)
    click.echo(_format_subscription(reconciler, current))


@subscription.command("default")
@click.argument("subscription")
@click.option("--account", "-a", "account_id", help="Account to use for the subscription")
@click.pass_obj
@handle_profile_errors
def subscription_default(
    reconciler: ProfileReconciler, subscription: str, account_id: str | None
) -> None:
    """Set the default subscription by id or name."""
    default = reconciler.set_subscription_as_default(subscription, account_id)
    click.secho(f"✓ Default subscription: {default.name or default.id}", fg="green")


@subscription.command("clear-default")
@click.pass_obj
@handle_profile_errors
def subscription_clear_default(reconciler: ProfileReconciler) -> None:
    """Clear the default subscription."""
    reconciler.clear_default_subscription()
    click.secho("✓ Default subscription cleared", fg="green")


@subscription.command("remove")
@click.argument("subscription")
@click.pass_obj
@handle_profile_errors
def subscription_remove(reconciler: ProfileReconciler, subscription: str) -> None:
    """Remove a subscription by id or name."""
    removed = reconciler.remove_subscription(subscription)
    click.secho(f"✓ Removed subscription {removed.name or removed.id}", fg="green")


# =============================================================================
# Environment Commands
# =============================================================================


@cli.group()
def environment() -> None:
    """Manage environments."""
    pass


@environment.command("list")
@click.argument("name", required=False)
@click.pass_obj
@handle_profile_errors
def environment_list(reconciler: ProfileReconciler, name: str | None) -> None:
    """List environments."""
    for item in reconciler.list_environments(name):
        click.echo(item.name)
        for kind, url in item.endpoints.items():
            click.echo(f"  {kind.value}: {url}")


@environment.command("add")
@click.argument("name")
@click.option(
    "--endpoint",
    "endpoints",
    multiple=True,
    help="Endpoint as KIND=VALUE, e.g. ResourceManager=https://management.contoso.com/",
)
@click.pass_obj
@handle_profile_errors
def environment_add(reconciler: ProfileReconciler, name: str, endpoints: tuple[str, ...]) -> None:
    """Add or update a custom environment."""
    stored = reconciler.add_or_set_environment(
        Environment(name=name, endpoints=_parse_endpoints(endpoints))
    )
    click.secho(f"✓ Environment {stored.name} saved", fg="green")


@environment.command("remove")
@click.argument("name")
@click.pass_obj
@handle_profile_errors
def environment_remove(reconciler: ProfileReconciler, name: str) -> None:
    """Remove a custom environment and its subscriptions."""
    removed = reconciler.remove_environment(name)
    click.secho(f"✓ Removed environment {removed.name}", fg="green")


# =============================================================================
# Import Commands
# =============================================================================


@cli.command("import-publish-settings")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--environment", "-e", "environment_name", help="Environment of the subscriptions")
@click.pass_obj
@handle_profile_errors
def import_publish_settings(
    reconciler: ProfileReconciler, path: Path, environment_name: str | None
) -> None:
    """Import subscriptions from a .publishsettings file."""
    imported = reconciler.import_publish_settings(path, environment_name)
    click.secho(f"✓ Imported {len(imported)} subscriptions", fg="green")
    for item in imported:
        click.echo(f"  {_format_subscription(reconciler, item)}")


if __name__ == "__main__":
    cli()

"""Property-by-property merging of two versions of the same entity.

Merges are pure: they build a new value and never touch their inputs, so a
caller can retry a merge or apply results in any order. Scalars take the
left-hand value when it is set; every string-list field is a
case-insensitive union. The only failure is an identity mismatch.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .errors import IdentityMismatchError
from .models import Account, Environment, Subscription, dedupe_case_insensitive


def _merge_extensions(
    first: Mapping[str, tuple[str, ...]],
    second: Mapping[str, tuple[str, ...]],
) -> dict[str, tuple[str, ...]]:
    merged: dict[str, tuple[str, ...]] = {}
    for key in [*first.keys(), *(k for k in second.keys() if k not in first)]:
        merged[key] = dedupe_case_insensitive(first.get(key, ()), second.get(key, ()))
    return merged


def merge_accounts(first: Account, second: Account) -> Account:
    """Merge two versions of the same account.

    Raises:
        IdentityMismatchError: If ids or account types differ.
    """
    if first.id != second.id:
        raise IdentityMismatchError(f"Account ids do not match: {first.id} != {second.id}")
    if first.type != second.type:
        raise IdentityMismatchError(
            f"Account types do not match for '{first.id}': "
            f"{first.type.value} != {second.type.value}"
        )

    return Account(
        id=first.id,
        type=first.type,
        tenants=dedupe_case_insensitive(first.tenants, second.tenants),
        subscriptions=dedupe_case_insensitive(first.subscriptions, second.subscriptions),
        extensions=_merge_extensions(first.extensions, second.extensions),
    )


def merge_subscriptions(first: Subscription, second: Subscription) -> Subscription:
    """Merge two versions of the same subscription.

    Raises:
        IdentityMismatchError: If subscription ids differ.
    """
    if first.id != second.id:
        raise IdentityMismatchError(f"Subscription ids do not match: {first.id} != {second.id}")

    return Subscription(
        id=first.id,
        name=first.name or second.name,
        environment=first.environment or second.environment,
        account=first.account or second.account,
        supported_modes=dedupe_case_insensitive(first.supported_modes, second.supported_modes),
        registered_resource_providers=dedupe_case_insensitive(
            first.registered_resource_providers, second.registered_resource_providers
        ),
        tenants=dedupe_case_insensitive(first.tenants, second.tenants),
        extensions=_merge_extensions(first.extensions, second.extensions),
    )


def merge_environments(first: Environment, second: Environment) -> Environment:
    """Merge two versions of the same environment, endpoint by endpoint.

    Raises:
        IdentityMismatchError: If environment names differ.
    """
    if first.name != second.name:
        raise IdentityMismatchError(
            f"Environment names do not match: {first.name} != {second.name}"
        )

    endpoints = dict(second.endpoints)
    endpoints.update({kind: url for kind, url in first.endpoints.items() if url})
    return Environment(name=first.name, endpoints=endpoints)


def merge_subscription_lists(*listings: Iterable[Subscription]) -> list[Subscription]:
    """Fold subscription listings into one list keyed by id.

    Order follows the first time each id is seen; a later duplicate is merged
    into the earlier entry.
    """
    merged: dict[object, Subscription] = {}
    for listing in listings:
        for subscription in listing:
            existing = merged.get(subscription.id)
            merged[subscription.id] = (
                subscription if existing is None else merge_subscriptions(existing, subscription)
            )
    return list(merged.values())

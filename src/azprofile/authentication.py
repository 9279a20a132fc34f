"""Token acquisition for profile accounts.

The reconciler depends only on the ``Authenticator`` protocol. The
implementation here maps each account type onto an azure-identity
credential and turns azure-identity failures into the two recoverable
errors the reconciler understands:

- AuthFailedError: authentication could not complete without a prompt,
  or the identity provider rejected the credentials
- AuthCanceledError: the user dismissed the interactive sign-in

SECURITY INVARIANTS:
1. Service principal secrets are passed per call and never stored
2. Tokens are held in memory only (SessionContext token cache)
3. Certificate accounts never authenticate against Entra ID
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from azure.core.credentials import AccessToken
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import (
    AuthenticationRecord,
    ClientSecretCredential,
    InteractiveBrowserCredential,
)

from .config import COMMON_TENANT
from .errors import AuthCanceledError, AuthFailedError
from .models import Account, AccountType, Environment

logger = logging.getLogger(__name__)

# Markers MSAL puts in the error when the user closes or declines the prompt
CANCELED_ERROR_MARKERS: tuple[str, ...] = ("access_denied", "canceled", "cancelled")


class PromptPolicy(str, Enum):
    """Whether an interactive prompt may be shown."""

    ALWAYS = "always"
    AUTO = "auto"
    NEVER = "never"


@dataclass(frozen=True)
class AuthResult:
    """Outcome of an authentication.

    Attributes:
        account: The account, with its id resolved if it was unknown.
        token: Access token for the requested tenant.
    """

    account: Account
    token: AccessToken


class Authenticator(Protocol):
    """Acquires tokens for an account in a tenant."""

    def authenticate(
        self,
        account: Account,
        environment: Environment,
        tenant: str,
        secret: str | None = None,
        prompt: PromptPolicy = PromptPolicy.NEVER,
    ) -> AuthResult: ...


class StaticTokenCredential:
    """TokenCredential that hands out an already acquired token.

    Lets Azure SDK clients reuse the tenant token the reconciler obtained.
    """

    def __init__(self, token: AccessToken) -> None:
        self._token = token

    def get_token(self, *scopes: str, **kwargs: Any) -> AccessToken:
        return self._token

    def close(self) -> None:
        pass

    def __enter__(self) -> StaticTokenCredential:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def _is_cancellation(error: ClientAuthenticationError) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in CANCELED_ERROR_MARKERS)


class AzureIdentityAuthenticator:
    """Authenticator backed by azure-identity credentials.

    - User accounts use InteractiveBrowserCredential; the authentication
      record from the first sign-in is kept so later tenants authenticate
      silently.
    - Service principal accounts use ClientSecretCredential with the
      secret passed to the call.
    - Certificate accounts are management-certificate identities and
      cannot obtain Entra ID tokens.
    """

    def __init__(self, client_id: str | None = None) -> None:
        """Initialize the authenticator.

        Args:
            client_id: Public client application id for interactive sign-in.
                       If None, azure-identity's default client is used.
        """
        self._client_id = client_id
        self._records: dict[str, AuthenticationRecord] = {}

    def authenticate(
        self,
        account: Account,
        environment: Environment,
        tenant: str,
        secret: str | None = None,
        prompt: PromptPolicy = PromptPolicy.NEVER,
    ) -> AuthResult:
        """Acquire a token for the account in the given tenant.

        Raises:
            AuthFailedError: If a token cannot be obtained.
            AuthCanceledError: If the user canceled the interactive prompt.
        """
        scope = environment.token_scope()

        if account.type == AccountType.CERTIFICATE:
            raise AuthFailedError(
                f"Certificate account '{account.id}' cannot authenticate against "
                "Entra ID; it uses its management certificate"
            )

        try:
            if account.type == AccountType.SERVICE_PRINCIPAL:
                return self._authenticate_service_principal(
                    account, environment, tenant, secret, scope
                )
            return self._authenticate_user(account, environment, tenant, prompt, scope)
        except ClientAuthenticationError as e:
            # Also covers CredentialUnavailableError and AuthenticationRequiredError
            if _is_cancellation(e):
                raise AuthCanceledError(f"Authentication canceled for tenant {tenant}") from e
            raise AuthFailedError(
                f"Authentication failed for '{account.id or 'new account'}' "
                f"in tenant {tenant}: {e.message}"
            ) from e

    def _authenticate_service_principal(
        self,
        account: Account,
        environment: Environment,
        tenant: str,
        secret: str | None,
        scope: str,
    ) -> AuthResult:
        if not account.id:
            raise AuthFailedError("Service principal accounts require an application id")
        if not secret:
            raise AuthFailedError(f"No secret provided for service principal '{account.id}'")
        if tenant == COMMON_TENANT:
            raise AuthFailedError(
                f"Service principal '{account.id}' must authenticate against a specific tenant"
            )

        credential = ClientSecretCredential(
            tenant_id=tenant,
            client_id=account.id,
            client_secret=secret,
            authority=environment.authority_host(),
        )
        token = credential.get_token(scope)

        logger.debug(
            "Service principal authenticated",
            extra={"account": account.id, "tenant": tenant},
        )
        return AuthResult(account=account, token=token)

    def _authenticate_user(
        self,
        account: Account,
        environment: Environment,
        tenant: str,
        prompt: PromptPolicy,
        scope: str,
    ) -> AuthResult:
        record = self._records.get(account.id) if account.id else None

        kwargs: dict[str, Any] = {
            "tenant_id": tenant,
            "authority": environment.authority_host(),
            # NEVER means fail with AuthenticationRequiredError instead of prompting
            "disable_automatic_authentication": prompt == PromptPolicy.NEVER,
        }
        if self._client_id:
            kwargs["client_id"] = self._client_id
        if record is not None:
            kwargs["authentication_record"] = record
        if account.id:
            kwargs["login_hint"] = account.id

        credential = InteractiveBrowserCredential(**kwargs)

        if prompt == PromptPolicy.ALWAYS or (record is None and prompt == PromptPolicy.AUTO):
            record = credential.authenticate(scopes=[scope])
            self._records[record.username] = record
            if account.id != record.username:
                logger.info(
                    "Resolved account identity",
                    extra={"account": record.username, "tenant": tenant},
                )
                account = account.model_copy(update={"id": record.username})

        token = credential.get_token(scope)
        return AuthResult(account=account, token=token)

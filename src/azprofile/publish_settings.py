"""Parser for .publishsettings files.

A publish settings file lists Service Management subscriptions together with
a base64 PKCS#12 management certificate. Two schemas exist:

- 1.0: one ``ManagementCertificate`` on ``PublishProfile``, endpoint in ``Url``
- 2.0: ``ManagementCertificate`` and ``ServiceManagementUrl`` per subscription

SECURITY: The file is size-checked before parsing. The certificate bundle is
only decoded far enough to compute its thumbprint; the private key is never
held outside the returned CredentialMaterial.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from uuid import UUID
from xml.etree import ElementTree

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import pkcs12

from .config import MAX_PUBLISH_SETTINGS_FILE_SIZE_BYTES
from .errors import ProfileError
from .models import Subscription, SupportedMode
from .profile_store import CredentialMaterial

logger = logging.getLogger(__name__)

SERVICE_MANAGEMENT_PUBLISH_METHOD = "AzureServiceManagementAPI"


class PublishSettingsError(ProfileError):
    """Raised when a publish settings file cannot be read or parsed."""

    pass


@dataclass(frozen=True)
class PublishSettings:
    """Contents of a publish settings file.

    Attributes:
        certificate: The management certificate shared by all subscriptions.
        subscriptions: Subscriptions owned by the certificate's thumbprint,
                       not yet bound to an environment.
    """

    certificate: CredentialMaterial
    subscriptions: list[Subscription]

    @property
    def thumbprint(self) -> str:
        return self.certificate.thumbprint


def certificate_thumbprint(bundle: bytes) -> str:
    """Compute the upper-case SHA-1 thumbprint of a PKCS#12 bundle's certificate.

    Raises:
        PublishSettingsError: If the bundle cannot be loaded or has no certificate.
    """
    last_error: Exception | None = None
    # Publish settings bundles are exported without a password, which some
    # exporters encode as an empty password instead
    for password in (None, b""):
        try:
            _key, certificate, _additional = pkcs12.load_key_and_certificates(bundle, password)
        except ValueError as e:
            last_error = e
            continue
        if certificate is None:
            raise PublishSettingsError("Management certificate bundle contains no certificate")
        return certificate.fingerprint(hashes.SHA1()).hex().upper()

    raise PublishSettingsError(f"Invalid management certificate: {last_error}")


def _decode_certificate(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise PublishSettingsError(f"Management certificate is not valid base64: {e}") from e


def parse_publish_settings(data: bytes, source: str = "<publish settings>") -> PublishSettings:
    """Parse publish settings content.

    Returns:
        The certificate and the subscriptions it manages.

    Raises:
        PublishSettingsError: If the content is oversized, malformed, lists no
                              subscriptions or carries more than one certificate.
    """
    if len(data) > MAX_PUBLISH_SETTINGS_FILE_SIZE_BYTES:
        raise PublishSettingsError(
            f"Publish settings file too large: {len(data)} bytes "
            f"(max: {MAX_PUBLISH_SETTINGS_FILE_SIZE_BYTES})"
        )

    try:
        root = ElementTree.fromstring(data)
    except ElementTree.ParseError as e:
        raise PublishSettingsError(f"Invalid publish settings file {source}: {e}") from e

    if root.tag != "PublishData":
        raise PublishSettingsError(f"Not a publish settings file: {source}")

    encoded_certificates: list[str] = []
    subscriptions: list[Subscription] = []

    for publish_profile in root.findall("PublishProfile"):
        method = publish_profile.get("PublishMethod", SERVICE_MANAGEMENT_PUBLISH_METHOD)
        if method != SERVICE_MANAGEMENT_PUBLISH_METHOD:
            logger.debug("Skipping publish profile", extra={"publish_method": method})
            continue

        profile_certificate = publish_profile.get("ManagementCertificate")

        for element in publish_profile.findall("Subscription"):
            raw_id = element.get("Id")
            try:
                subscription_id = UUID(raw_id)
            except (TypeError, ValueError) as e:
                raise PublishSettingsError(
                    f"Invalid subscription id in {source}: {raw_id!r}"
                ) from e

            encoded = element.get("ManagementCertificate") or profile_certificate
            if not encoded:
                raise PublishSettingsError(
                    f"No management certificate for subscription {subscription_id} in {source}"
                )
            if encoded not in encoded_certificates:
                encoded_certificates.append(encoded)

            subscriptions.append(
                Subscription(
                    id=subscription_id,
                    name=element.get("Name"),
                    supported_modes=(SupportedMode.SERVICE_MANAGEMENT.value,),
                )
            )

    if not subscriptions:
        raise PublishSettingsError(f"No subscriptions found in {source}")
    if len(encoded_certificates) > 1:
        raise PublishSettingsError(
            f"Publish settings files with more than one management certificate "
            f"are not supported: {source}"
        )

    bundle = _decode_certificate(encoded_certificates[0])
    thumbprint = certificate_thumbprint(bundle)

    logger.info(
        "Parsed publish settings",
        extra={"source": source, "thumbprint": thumbprint, "subscriptions": len(subscriptions)},
    )
    return PublishSettings(
        certificate=CredentialMaterial(thumbprint=thumbprint, data=bundle),
        subscriptions=[subscription.with_account(thumbprint) for subscription in subscriptions],
    )

"""Persistence capability for profile files and credential material.

The profile logic only ever sees opaque bytes at a path; the disk
implementation below owns file permissions and the certificate directory.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import AlreadyExistsError, NotFoundError

logger = logging.getLogger(__name__)

# SECURITY: Profile files and certificates are readable by the owner only
PRIVATE_FILE_MODE = 0o600
PRIVATE_DIR_MODE = 0o700


@dataclass(frozen=True)
class CredentialMaterial:
    """A management certificate to install alongside the profile.

    Attributes:
        thumbprint: Upper-case hex SHA-1 thumbprint of the certificate.
        data: The PKCS#12 bundle as found in the publish settings file.
    """

    thumbprint: str
    data: bytes

    def __repr__(self) -> str:
        return f"CredentialMaterial(thumbprint={self.thumbprint!r}, data=<{len(self.data)} bytes>)"


class ProfileStore(Protocol):
    """Byte-level persistence used by the profile."""

    def exists(self, path: Path) -> bool: ...

    def read_all(self, path: Path) -> bytes: ...

    def write_all(self, path: Path, data: bytes) -> None: ...

    def delete(self, path: Path) -> None: ...

    def rename(self, old_path: Path, new_path: Path) -> None: ...

    def import_credential_material(self, material: CredentialMaterial) -> None: ...


class DiskProfileStore:
    """ProfileStore backed by the local file system."""

    def __init__(self, certificates_directory: Path) -> None:
        self._certificates_directory = certificates_directory

    def exists(self, path: Path) -> bool:
        return path.is_file()

    def read_all(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {path}") from e

    def write_all(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(mode=PRIVATE_DIR_MODE, parents=True, exist_ok=True)

        # Write to a sibling file first so a crash never leaves a torn profile
        tmp_path = path.with_name(path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PRIVATE_FILE_MODE)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_path, path)

    def delete(self, path: Path) -> None:
        path.unlink(missing_ok=True)

    def rename(self, old_path: Path, new_path: Path) -> None:
        if new_path.exists():
            raise AlreadyExistsError(f"Cannot rename {old_path}: {new_path} already exists")
        old_path.rename(new_path)

    def import_credential_material(self, material: CredentialMaterial) -> None:
        target = self._certificates_directory / f"{material.thumbprint}.pfx"
        self.write_all(target, material.data)
        logger.info(
            "Imported management certificate",
            extra={"thumbprint": material.thumbprint, "path": str(target)},
        )

"""Error taxonomy for profile operations.

Every operation exposed by the reconciler either returns the affected
entities or raises one of these errors. None of them leave partial state
behind: they are raised before the store is mutated.
"""

from __future__ import annotations


class ProfileError(Exception):
    """Base error for profile operations."""

    pass


class NotFoundError(ProfileError):
    """Raised for an unknown account, subscription or environment."""

    pass


class AlreadyExistsError(ProfileError):
    """Raised when a write would clobber an entity it must not replace."""

    pass


class IdentityMismatchError(ProfileError):
    """Raised when merging two entities that do not share an identity."""

    pass


class ProtectedResourceError(ProfileError):
    """Raised on an attempt to change or remove a public environment."""

    pass


class AuthFailedError(ProfileError):
    """Authentication failed without user interaction.

    Recoverable: per tenant the failure is logged at debug level and
    enumeration continues. During login it means the home tenant or every
    tenant rejected the account, and the profile is left untouched.
    """

    pass


class AuthCanceledError(ProfileError):
    """Authentication was canceled by the user.

    Recoverable: logged as a warning and enumeration continues.
    """

    pass

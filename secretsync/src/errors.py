from __future__ import annotations


class SecretSyncError(Exception):
    """Base class for errors raised while reconciling a SecretBinding."""


class ConfigError(SecretSyncError):
    """Raised when controller or resource configuration is invalid."""


class NoSecretError(SecretSyncError):
    """The backend reports that the requested secret does not exist.

    This is an expected outcome, not a failure: callers decide whether an
    absent secret is tolerated based on the binding's deletion policy.
    """


class StoreNotFoundError(SecretSyncError):
    """A referenced SecretStore or ClusterSecretStore does not exist."""


class StoreNotReadyError(SecretSyncError):
    """A referenced store exists but its ``Ready`` condition is not ``True``."""


class UnmanagedStoreError(SecretSyncError):
    """A referenced store belongs to a different controller class."""


class InvalidKeysError(SecretSyncError):
    """Aggregated data contains keys that are not valid secret keys."""


class GeneratorError(SecretSyncError):
    """A generator could not be resolved or failed to produce data."""


class TemplateError(SecretSyncError):
    """A target template failed to render."""


class CachesNotSyncedError(SecretSyncError):
    """The metadata read and the full-object cache disagree about the target.

    Raised when the two reads of the target resource report a different
    ``uid`` or ``resourceVersion``. The caller retries instead of acting on
    a stale view.
    """


class SecretImmutableError(SecretSyncError):
    """The target is immutable and the desired payload differs from it."""


class SecretIsOwnedError(SecretSyncError):
    """The target is controlled by a different SecretBinding."""


class SetOwnerReferenceError(SecretSyncError):
    """The target is controlled by a foreign owner and cannot be claimed."""


class ProviderError(SecretSyncError):
    """A backend call failed for a reason other than the secret being absent."""

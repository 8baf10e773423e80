"""Exception taxonomy for aumai-modelfetch."""

from __future__ import annotations

from pathlib import Path

__all__ = [
    "ModelFetchError",
    "ResolveError",
    "MalformedIdentifierError",
    "MalformedManifestError",
    "ModelNotFoundError",
    "UnauthorizedError",
    "NetworkError",
    "TransferError",
    "BlobNotFoundError",
    "IntegrityError",
    "SizeMismatchError",
    "DigestMismatchError",
    "TransferCancelled",
    "StoreError",
    "PresenceCheckError",
    "SettingsError",
]


class ModelFetchError(Exception):
    """Base class for every error raised by aumai-modelfetch."""

    retryable = False


class ResolveError(ModelFetchError):
    """A manifest or catalogue could not be resolved."""


class MalformedIdentifierError(ResolveError, ValueError):
    """The model identifier does not follow the provider's syntax."""

    def __init__(self, identifier: str, reason: str) -> None:
        super().__init__(f"Invalid model identifier {identifier!r}: {reason}")
        self.identifier = identifier
        self.reason = reason


class MalformedManifestError(ResolveError):
    """The upstream manifest could not be parsed."""


class ModelNotFoundError(ResolveError):
    """The model or tag does not exist upstream."""


class UnauthorizedError(ModelFetchError):
    """The upstream rejected our credentials."""


class NetworkError(ModelFetchError):
    """A transient network failure; retried under the transfer policy."""

    retryable = True

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class TransferError(ModelFetchError):
    """A blob transfer failed."""


class BlobNotFoundError(TransferError):
    """The upstream has no blob with the requested digest."""


class IntegrityError(ModelFetchError):
    """Downloaded bytes do not match what the manifest declared."""


class SizeMismatchError(TransferError, IntegrityError):
    """The served size disagrees with the size declared in the manifest."""

    def __init__(self, digest: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Size mismatch for {digest}: expected {expected} bytes, got {actual}"
        )
        self.digest = digest
        self.expected = expected
        self.actual = actual


class DigestMismatchError(IntegrityError):
    """The bytes on disk hash to something other than the declared digest."""

    def __init__(self, expected: str, actual: str, path: Path | None = None) -> None:
        super().__init__(f"Digest mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual
        self.path = path


class TransferCancelled(ModelFetchError):
    """The transfer stopped because cancellation was requested."""


class StoreError(ModelFetchError):
    """The local model store could not be read or written."""


class PresenceCheckError(ModelFetchError):
    """The Ollama server could not answer the presence query."""


class SettingsError(ModelFetchError):
    """The settings file is unreadable or holds invalid values."""

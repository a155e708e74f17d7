"""Exception hierarchy shared across repositories, the catalog, and the inventory.

Runtime acquisition spans upstream index retrieval, archive transfer, hash
verification, local persistence, and archive extraction.  The failures are
grouped here so that callers can react to broad categories (an integrity
failure vs. a transient repository problem) while still reaching the
specialised subclasses when they need the details.
"""

from __future__ import annotations

from typing import Mapping, Optional, Sequence

__all__ = [
    "RuntimeDepotError",
    "ConfigError",
    "PluginError",
    "FormatError",
    "RepositoryOpenError",
    "RepositoryUpdateError",
    "UnknownRepositoryError",
    "InventoryLayoutError",
    "NotFoundError",
    "UnknownIdentityError",
    "IntegrityError",
    "HashMismatchError",
    "VerificationError",
    "UnpackError",
    "DownloadFailure",
    "OperationTimeoutError",
    "OperationCancelledError",
]


class RuntimeDepotError(RuntimeError):
    """Base exception for runtime discovery, download, and inventory failures."""

    def __init__(self, message: str, *, details: Optional[Mapping[str, object]] = None) -> None:
        super().__init__(message)
        self.details = dict(details or {})


class ConfigError(RuntimeDepotError):
    """Raised when CLI arguments or YAML configuration inputs are invalid."""


class PluginError(RuntimeDepotError):
    """Raised when a provider or codec plugin cannot be registered or loaded."""


class FormatError(RuntimeDepotError):
    """Raised when a description document cannot be parsed or serialised.

    Parsers accumulate every problem they find in a document before raising,
    so ``errors`` lists all of them rather than only the first.
    """

    def __init__(self, message: str, *, errors: Optional[Sequence[str]] = None) -> None:
        super().__init__(message, details={"errors": list(errors or ())})
        self.errors = tuple(errors or ())

    def __str__(self) -> str:
        base = super().__str__()
        if not self.errors:
            return base
        return base + ": " + "; ".join(self.errors)


class RepositoryOpenError(RuntimeDepotError):
    """Raised when a provider cannot establish the local state of its repository."""


class RepositoryUpdateError(RuntimeDepotError):
    """Raised when a repository update fails on network or format errors."""

    def __init__(self, message: str, *, repository: Optional[str] = None) -> None:
        super().__init__(message, details={"repository": repository})
        self.repository = repository


class InventoryLayoutError(RuntimeDepotError, IOError):
    """Raised when the inventory root collides with a foreign file layout."""


class NotFoundError(RuntimeDepotError, LookupError):
    """Raised when a runtime is not known to the inventory."""


class UnknownIdentityError(NotFoundError):
    """Raised when an identity is absent from the catalog's merged view."""


class UnknownRepositoryError(NotFoundError):
    """Raised when an update names a repository the catalog does not hold."""


class IntegrityError(RuntimeDepotError):
    """Base class for archive integrity failures."""

    def __init__(
        self,
        message: str,
        *,
        expected: Optional[str] = None,
        received: Optional[str] = None,
    ) -> None:
        super().__init__(message, details={"expected": expected, "received": received})
        self.expected = expected
        self.received = received


class HashMismatchError(IntegrityError):
    """Raised when a streamed or copied archive does not hash to its declared value."""


class VerificationError(IntegrityError):
    """Raised when a stored archive is missing or no longer matches its record."""


class UnpackError(RuntimeDepotError):
    """Raised when an archive cannot be extracted."""


class DownloadFailure(RuntimeDepotError):
    """Raised when an HTTP download attempt fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after


class OperationTimeoutError(RuntimeDepotError, TimeoutError):
    """Raised when waiting on an operation exceeds its deadline."""


class OperationCancelledError(RuntimeDepotError):
    """Raised at a cooperative checkpoint after cancellation was requested."""

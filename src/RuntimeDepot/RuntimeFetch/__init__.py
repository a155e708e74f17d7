# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.RuntimeFetch",
#   "purpose": "Package initialization for RuntimeDepot.RuntimeFetch",
#   "sections": [
#     {
#       "id": "getattr",
#       "name": "__getattr__",
#       "anchor": "function-getattr",
#       "kind": "function"
#     },
#     {
#       "id": "dir",
#       "name": "__dir__",
#       "anchor": "function-dir",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Public API for discovering, downloading and managing runtime distributions.

The facade is :class:`RuntimeClient`, which binds a catalog over pluggable
repositories to a local inventory of verified archives.  Names are imported
lazily so that ``import RuntimeDepot.RuntimeFetch`` stays cheap for plugins
that only need the value types.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any, Dict

__version__ = "0.1.0"

_EXPORTS: Dict[str, str] = {
    "RuntimeClient": ".client",
    "RepositorySummary": ".client",
    "Catalog": ".catalog",
    "CatalogUpdateResult": ".catalog",
    "Inventory": ".inventory",
    "RuntimeDescriptionDatabase": ".database",
    "RepositoryProviderRegistry": ".plugins",
    "Repository": ".repository",
    "RepositoryProvider": ".repository",
    "RepositoryContext": ".repository",
    "AbstractRepository": ".repository",
    "IndexRepositoryProvider": ".index_repository",
    "Operation": ".operations",
    "OperationRunner": ".operations",
    "UnpackOptions": ".archives",
    "RuntimeSearchCriteria": ".search",
    "RuntimeDescription": ".runtime",
    "RuntimeHash": ".runtime",
    "RuntimeVersion": ".runtime",
    "RuntimeVersionRange": ".runtime",
    "RuntimeConfiguration": ".runtime",
    "RuntimeBuild": ".runtime",
    "RuntimeRepositoryDescription": ".runtime",
    "CatalogEntry": ".runtime",
    "InventoryRecord": ".runtime",
    "VerificationResult": ".runtime",
    "RuntimeDepotSettings": ".settings",
    "load_settings": ".settings",
    "setup_logging": ".logging_config",
    "RuntimeDepotError": ".errors",
    "HashMismatchError": ".errors",
    "VerificationError": ".errors",
    "UnknownIdentityError": ".errors",
    "NotFoundError": ".errors",
    "UnpackError": ".errors",
    "RepositoryOpenError": ".errors",
    "RepositoryUpdateError": ".errors",
    "OperationTimeoutError": ".errors",
    "OperationCancelledError": ".errors",
}

__all__ = [*_EXPORTS, "__version__"]

if TYPE_CHECKING:  # pragma: no cover - import for static analysis only
    from .catalog import Catalog, CatalogUpdateResult
    from .client import RepositorySummary, RuntimeClient
    from .inventory import Inventory
    from .runtime import RuntimeDescription, RuntimeHash, RuntimeVersion


def __getattr__(name: str) -> Any:
    """Lazily import public names from their defining modules."""

    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
    value = getattr(import_module(module_name, __name__), name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    """Expose lazily-populated attributes in ``dir()`` results."""

    return sorted(set(globals()) | set(__all__))

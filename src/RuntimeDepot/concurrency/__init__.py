# === NAVMAP v1 ===
# {
#   "module": "RuntimeDepot.concurrency.__init__",
#   "purpose": "Concurrency helpers shared across RuntimeDepot components.",
#   "sections": []
# }
# === /NAVMAP ===

"""
Concurrency helpers shared across RuntimeDepot components.

Currently exposes :func:`create_executor`, the single place where worker
pools are constructed, so that pool sizing and thread naming stay uniform.
"""

from .executors import create_executor, default_worker_count

__all__ = ["create_executor", "default_worker_count"]

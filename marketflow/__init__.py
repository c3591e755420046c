"""
marketflow - Workflow core for a skills marketplace.

Job lifecycle, escrow-style payments, reviews and direct messages, with
authorization policies, cache invalidation routing and notification
dispatch around them.
"""

from .engine import WorkflowEngine
from .storage import InMemoryEntityStore, SQLiteEntityStore

try:
    from importlib.metadata import version

    __version__ = version("marketflow")
except Exception:
    __version__ = "0.0.0"

__all__ = ["WorkflowEngine", "InMemoryEntityStore", "SQLiteEntityStore"]

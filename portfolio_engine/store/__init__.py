"""Storage adapters: node providers and graph stores."""

from .base import GraphStore, NodeProvider, Reachability
from .memory_store import InMemoryGraphStore, InMemoryNodeProvider
from .sql_store import SqlGraphStore, SqlNodeProvider, create_session_factory

__all__ = [
    "GraphStore",
    "NodeProvider",
    "Reachability",
    "InMemoryGraphStore",
    "InMemoryNodeProvider",
    "SqlGraphStore",
    "SqlNodeProvider",
    "create_session_factory",
]

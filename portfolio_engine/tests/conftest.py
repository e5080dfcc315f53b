"""
Shared fixtures for the portfolio engine tests.
"""
import itertools
from datetime import datetime

import pytest

from portfolio_engine.config import EngineSettings, Settings
from portfolio_engine.graph.dependency_engine import DependencyGraphEngine
from portfolio_engine.graph.relationships import RelationshipService
from portfolio_engine.models import Node, NodeStatus
from portfolio_engine.store.memory_store import InMemoryGraphStore, InMemoryNodeProvider

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture(autouse=True)
def reset_settings():
    """Settings singleton is reloaded for every test."""
    Settings.reset()
    yield
    Settings.reset()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    """Fixed clock so every recomputation is deterministic."""
    return lambda: NOW


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def provider():
    return InMemoryNodeProvider()


@pytest.fixture
def store():
    return InMemoryGraphStore()


@pytest.fixture
def id_factory():
    counter = itertools.count(1)
    return lambda: f"edge-{next(counter)}"


@pytest.fixture
def make_node(provider):
    """Register a node with the provider and return it."""
    def _make(node_id, **fields):
        fields.setdefault("name", node_id.upper())
        fields.setdefault("status", NodeStatus.ACTIVE)
        node = Node(node_id=node_id, **fields)
        provider.upsert(node)
        return node
    return _make


@pytest.fixture
def engine(store, provider, settings, clock, id_factory):
    return DependencyGraphEngine(store, provider, settings, clock=clock, id_factory=id_factory)


@pytest.fixture
def relationships(store, provider, settings, clock, id_factory):
    return RelationshipService(store, provider, settings, clock=clock, id_factory=id_factory)

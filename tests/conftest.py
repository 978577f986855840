import pytest

from vaultindex.core.source import InMemoryChain
from vaultindex.db.store import InMemoryEntityStore
from vaultindex.observability import MetricsCollector


@pytest.fixture
def chain():
    return InMemoryChain()


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def metrics():
    return MetricsCollector()

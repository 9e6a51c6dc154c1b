import pytest

from herbionyx.ledger import make_gateway_factory, seed_demo_batch
from herbionyx.services.ledger.ledger_gateway import LedgerSession
from herbionyx.services.ledger.memory_gateway import InMemoryLedgerGateway


@pytest.fixture
def anyio_backend():
    # the orchestrator schedules its work on the running asyncio loop
    return "asyncio"


@pytest.fixture
def ledger_store():
    store = InMemoryLedgerGateway()
    seed_demo_batch(store)
    return store


@pytest.fixture
def gateway(ledger_store):
    return ledger_store.bind(LedgerSession())


@pytest.fixture
def gateway_factory(ledger_store):
    return make_gateway_factory(backend="memory", store=ledger_store)

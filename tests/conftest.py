"""Shared pytest fixtures for inbox tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from .helpers import FakeGateway  # noqa: E402
from omnichannel.infra.memory_store import InMemoryInboxStore  # noqa: E402
from omnichannel.infra.store import reset_store, set_store  # noqa: E402
from omnichannel.meta.gateway import set_gateway  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_singletons(monkeypatch):
    """Fresh in-memory store and no real gateway for every test.

    The store and gateway are module-level globals; without a reset a test
    would see the contacts and messages of the previous one.
    """
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("INBOX_STORE", raising=False)
    reset_store()
    set_gateway(None)
    yield
    reset_store()
    set_gateway(None)


@pytest.fixture
def store() -> InMemoryInboxStore:
    memory = InMemoryInboxStore()
    set_store(memory)
    return memory


@pytest.fixture
def gateway() -> FakeGateway:
    fake = FakeGateway()
    set_gateway(fake)
    return fake

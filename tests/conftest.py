import pytest

from fastapi_bot_trap.store import MemoryKeyValueStore
from tests.mocks.bot_trap_mocks import FailingKeyValueStore


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def failing_store():
    return FailingKeyValueStore()


@pytest.fixture(autouse=True)
def _clear_bot_trap_env(monkeypatch):
    monkeypatch.delenv("BOT_TRAP_TEST_MODE", raising=False)

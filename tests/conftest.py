"""Shared test fixtures for AutoPair."""
import random

import pytest
import pytest_asyncio

from database.session import Database
from database.store import SqlMessagingStore
from database.store_memory import InMemoryMessagingStore
from gateway.presence import InMemoryPresenceGateway
from job_queue.message_queue import InMemoryMessageQueue
from tests.factories import FixedClock


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def memory_store(clock) -> InMemoryMessagingStore:
    return InMemoryMessagingStore(clock=clock)


@pytest_asyncio.fixture
async def sql_store(tmp_path, clock):
    store = SqlMessagingStore(Database(f"sqlite:///{tmp_path / 'autopair_test.db'}"), clock=clock)
    await store.connect()
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path, clock):
    """Every backend behind the same interface, stamping writes with the test clock."""
    if request.param == "memory":
        backend = InMemoryMessagingStore(clock=clock)
    else:
        backend = SqlMessagingStore(Database(f"sqlite:///{tmp_path / 'autopair_test.db'}"), clock=clock)
    await backend.connect()
    yield backend
    await backend.close()


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    return InMemoryMessageQueue(max_deliveries=5, ttl_seconds=86400, poll_timeout=0.05)


@pytest.fixture
def gateway() -> InMemoryPresenceGateway:
    return InMemoryPresenceGateway()


@pytest_asyncio.fixture
async def users(store):
    """Three active users plus one inactive user who must never be paired."""
    alice = await store.upsert_user("u_alice", "alice", "alice@example.com")
    bob = await store.upsert_user("u_bob", "bob", "bob@example.com")
    carol = await store.upsert_user("u_carol", "carol", "carol@example.com")
    await store.upsert_user("u_dave", "dave", "dave@example.com", is_active=False)
    return [alice, bob, carol]

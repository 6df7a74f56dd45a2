"""Shared test fixtures."""

import asyncio

import pytest
import pytest_asyncio
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

import roster.models  # noqa: F401
from roster.backend.sql import SqlStorageBackend
from roster.main import RosterClient
from roster.sync.pending import PendingLedger
from roster.sync.reconciler import Reconciler
from roster.sync.store import EntityStore


class ControlledBackend:
    """Wraps a backend so tests can make writes fail or hang.

    fail_with: exception raised by the next write instead of running it.
    gate: when set, writes wait for the event before running.
    lose_answer: exception raised by the next write after it committed, as
        if the response never arrived. answer_gate, when set, holds the
        write between the commit and that failure.
    """

    WRITES = {
        "insert_guest", "update_guest", "delete_guest",
        "create_group", "update_group", "delete_group",
        "link", "unlink",
    }

    def __init__(self, inner: SqlStorageBackend):
        self.inner = inner
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.lose_answer: Exception | None = None
        self.answer_gate: asyncio.Event | None = None
        self.calls: list[str] = []

    def subscribe(self):
        return self.inner.subscribe()

    def __getattr__(self, name):
        target = getattr(self.inner, name)
        if name not in self.WRITES:
            return target

        async def write(*args, **kwargs):
            self.calls.append(name)
            if self.gate is not None:
                await self.gate.wait()
            if self.fail_with is not None:
                exc, self.fail_with = self.fail_with, None
                raise exc
            events = await target(*args, **kwargs)
            if self.answer_gate is not None:
                await self.answer_gate.wait()
            if self.lose_answer is not None:
                exc, self.lose_answer = self.lose_answer, None
                raise exc
            return events

        return write


@pytest.fixture(name="guest_data")
def guest_data_fixture():
    """Build a minimal valid guest request, with overrides."""

    def build(**overrides) -> dict:
        return {"first_name": "Ann", "last_name": "Smith", "side": "bride", **overrides}

    return build


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(engine):
    """Create a new database session for each test."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="backend")
def backend_fixture(engine) -> SqlStorageBackend:
    return SqlStorageBackend(engine)


@pytest.fixture(name="controlled")
def controlled_fixture(backend) -> ControlledBackend:
    return ControlledBackend(backend)


@pytest.fixture(name="store")
def store_fixture() -> EntityStore:
    return EntityStore()


@pytest.fixture(name="ledger")
def ledger_fixture() -> PendingLedger:
    return PendingLedger()


@pytest.fixture(name="reconciler")
def reconciler_fixture(store, ledger) -> Reconciler:
    return Reconciler(store, ledger)


@pytest_asyncio.fixture(name="client_a")
async def client_a_fixture(controlled):
    """Client whose writes go through the controllable backend.

    The feed is drained manually with process_feed() so tests decide when
    remote changes arrive.
    """
    client = RosterClient(controlled, name="a", background_feed=False, timeout=1.0)
    await client.start()
    yield client
    await client.close()


@pytest_asyncio.fixture(name="client_b")
async def client_b_fixture(backend):
    """Second client on the same backend, also drained manually."""
    client = RosterClient(backend, name="b", background_feed=False, timeout=1.0)
    await client.start()
    yield client
    await client.close()

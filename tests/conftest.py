import pytest

from event_dispatcher import EventDispatcher, HandlerSettings
from fakes import Chain, FakeResolver
from state_store import AggregateLocks, create_db_engine, init_db, session_factory


@pytest.fixture
def anyio_backend():
    return "asyncio"


# ---------------------------------------------------------------------------
# State store: a fresh in-memory SQLite database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    eng = create_db_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def sessions(engine):
    return session_factory(engine)


@pytest.fixture
def locks():
    return AggregateLocks()


# ---------------------------------------------------------------------------
# Dispatcher without scoring enrichment; scoring tests build their own
# ---------------------------------------------------------------------------


@pytest.fixture
def resolver():
    return FakeResolver({7: "example.com", 8: "nike.io"})


@pytest.fixture
def dispatcher(sessions, engine, resolver, locks):
    return EventDispatcher(
        sessions,
        engine,
        resolver=resolver,
        locks=locks,
        settings=HandlerSettings(liquidation_buffer_hours=24),
    )


@pytest.fixture
def chain():
    return Chain()

"""Shared fixtures."""

import pytest

from countdown_sync.channel import ReplicationChannel
from countdown_sync.engine import TimerEngine
from countdown_sync.storage import InMemorySharedStorage

T0 = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float):
        self.now += int(seconds * 1000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    store = InMemorySharedStorage()
    yield store
    store.close()


@pytest.fixture
def make_engine(storage, clock):
    """Build engines sharing one storage and clock; all are closed afterwards."""
    engines = []

    def _make(context_id=None, store=None, bootstrap=True, tick_interval=3600):
        context_id = context_id or f"ctx_{len(engines)}"
        channel = ReplicationChannel(store or storage, context_id)
        engine = TimerEngine(channel, clock=clock, tick_interval=tick_interval)
        if bootstrap:
            engine.bootstrap()
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()

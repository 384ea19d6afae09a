"""Shared fixtures for the simulation core and API tests."""
import pytest

from cryptoidle.config import TestingConfig
from cryptoidle.game_data_loader import GameDataLoader
from cryptoidle.interfaces import CollectingNotificationSink, MemoryPersistence, StaticIdentity
from cryptoidle.production import recompute
from cryptoidle.session import SessionContext
from cryptoidle.state import new_state


class FakeClock:
    """Manually advanced clock returning epoch-like seconds."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def loader():
    return GameDataLoader()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return CollectingNotificationSink()


@pytest.fixture
def persistence():
    return MemoryPersistence()


@pytest.fixture
def context(loader, sink, persistence, clock):
    return SessionContext(
        loader=loader,
        sink=sink,
        persistence=persistence,
        identity=StaticIdentity('player-1'),
        clock=clock,
        settings=TestingConfig,
    )


@pytest.fixture
def state(loader, context):
    return recompute(new_state(loader), context.rules, context.settings)


def unlock(state, *item_ids):
    """Mark entities unlocked directly, bypassing the engine."""
    for item_id in item_ids:
        for map_name in ('resources', 'buildings', 'upgrades'):
            if item_id in state[map_name]:
                state[map_name][item_id]['unlocked'] = True
        state['unlocks'][item_id] = True
    return state


def messages(sink, severity=None):
    return [m for m, s in sink.messages if severity is None or s == severity]

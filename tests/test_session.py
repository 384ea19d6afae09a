import threading
from concurrent.futures import ThreadPoolExecutor

from cryptoidle.config import TestingConfig
from cryptoidle.interfaces import MemoryPersistence, PersistenceBackend, StaticIdentity
from cryptoidle.session import SaveCoordinator, SessionContext
from cryptoidle.state import INFINITY, merge_snapshot, new_state, normalize_flags, to_snapshot

from conftest import FakeClock, messages


class FailingPersistence(PersistenceBackend):

    def save(self, snapshot):
        raise IOError("disk full")

    def load(self):
        raise IOError("unreadable")

    def clear(self):
        return False


class SlowPersistence(MemoryPersistence):

    def __init__(self, release):
        super().__init__()
        self.release = release

    def load(self):
        self.release.wait(5)
        return super().load()


def test_saves_are_throttled(state, clock):
    persistence = MemoryPersistence()
    saver = SaveCoordinator(persistence, clock=clock, min_interval=2.0)

    assert saver.request_save(state) is True
    assert saver.request_save(state) is False
    assert saver.request_save(state, force=True) is True

    clock.advance(2.0)
    assert saver.request_save(state) is True
    assert persistence.saves == 3
    assert persistence.snapshot['last_saved'] == clock()


def test_no_save_while_one_is_in_flight(state, clock):
    persistence = MemoryPersistence()
    saver = SaveCoordinator(persistence, clock=clock, min_interval=0)
    saver.save_in_progress = True

    assert saver.request_save(state, force=True) is False
    assert persistence.saves == 0


def test_failed_save_warns_and_continues(state, clock):
    warnings = []
    saver = SaveCoordinator(FailingPersistence(), notify=lambda m, s: warnings.append(s),
                            clock=clock, min_interval=0)

    assert saver.request_save(state) is True

    assert saver.failures == 1
    assert saver.save_in_progress is False
    assert saver.last_save_time is None
    assert warnings == ['warning']


def test_load_failure_returns_none(clock):
    saver = SaveCoordinator(FailingPersistence(), clock=clock)

    assert saver.load() is None
    assert saver.clear() is False


def test_load_gives_up_after_timeout(clock):
    release = threading.Event()
    persistence = SlowPersistence(release)
    with ThreadPoolExecutor(max_workers=1) as executor:
        saver = SaveCoordinator(persistence, clock=clock, timeout=0.05, executor=executor)
        assert saver.load() is None
        release.set()


def test_background_save_through_executor(state, clock):
    persistence = MemoryPersistence()
    with ThreadPoolExecutor(max_workers=1) as executor:
        saver = SaveCoordinator(persistence, clock=clock, min_interval=0, executor=executor)
        assert saver.request_save(state) is True
    assert persistence.saves == 1
    assert saver.save_in_progress is False


def test_notify_once_per_key(context, sink):
    assert context.notify_once('welcome', "Welcome back") is True
    assert context.notify_once('welcome', "Welcome back") is False

    assert messages(sink) == ["Welcome back"]


def test_contexts_do_not_share_flags(loader):
    first = SessionContext(loader=loader, clock=FakeClock(), settings=TestingConfig,
                           identity=StaticIdentity('a'))
    second = SessionContext(loader=loader, clock=FakeClock(), settings=TestingConfig,
                            identity=StaticIdentity('b'))

    first.notify_once('welcome', "hi")
    first.saver.save_in_progress = True

    assert 'welcome' not in second.shown_notifications
    assert second.saver.can_save() is True
    assert second.user_id() == 'b'


def test_broken_identity_reads_as_anonymous(context):
    class Broken:
        def user_id(self):
            raise RuntimeError("token expired")

    context.identity = Broken()

    assert context.user_id() is None


def test_snapshot_encodes_infinite_capacity(loader):
    state = new_state(loader)
    state['resources']['knowledge']['max'] = INFINITY

    snapshot = to_snapshot(state)

    assert snapshot['resources']['knowledge']['max'] is None
    assert state['resources']['knowledge']['max'] == INFINITY


def test_merge_drops_unknown_entities_and_keeps_extras(loader):
    template = new_state(loader)
    snapshot = {
        'resources': {'knowledge': {'value': 12}, 'dogecoin': {'value': 3}},
        'buildings': 'corrupted',
        'prestige_points': 'seven',
        'referral_code': 'ABC123',
    }

    merged = merge_snapshot(template, snapshot)

    assert 'dogecoin' not in merged['resources']
    assert merged['resources']['knowledge']['value'] == 12
    assert merged['resources']['knowledge']['max'] == template['resources']['knowledge']['max']
    assert merged['buildings'] == template['buildings']
    assert merged['prestige_points'] == template['prestige_points']
    assert merged['referral_code'] == 'ABC123'


def test_normalize_flags_coerces_shapes(loader):
    state = new_state(loader)
    state['buildings']['practice']['count'] = '3'
    state['resources']['knowledge']['value'] = -4
    state['counters']['apply_knowledge'] = 5

    normalize_flags(state)

    assert state['buildings']['practice']['count'] == 3
    assert state['buildings']['practice']['unlocked'] is True
    assert state['resources']['knowledge']['value'] == 0
    assert state['counters']['apply_knowledge'] == {'id': 'apply_knowledge', 'value': 5}
    assert state['unlocks']['practice'] is True

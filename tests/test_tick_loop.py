import copy
import threading
import types

import pytest

from cryptoidle.config import TestingConfig
from cryptoidle.reducer import reduce
from cryptoidle.tick_loop import IDLE, RUNNING, PeriodicDriver, TickLoop, advance

from conftest import messages, unlock


def test_ten_seconds_of_practice(state, context):
    state['buildings']['practice']['count'] = 1

    after = advance(state, 10, context)

    assert after['resources']['knowledge']['value'] == pytest.approx(6.3)
    assert after['game_time'] == pytest.approx(10)
    assert state['resources']['knowledge']['value'] == 0


def test_values_clamp_at_max(state, context):
    state['buildings']['practice']['count'] = 1
    state['resources']['knowledge']['value'] = 99.0

    after = advance(state, 10, context)

    assert after['resources']['knowledge']['value'] == 100


def test_non_positive_elapsed_is_a_no_op(state, context):
    assert advance(state, 0, context) is state
    assert advance(state, -3, context) is state


def test_catch_up_matches_small_ticks(state, context):
    state['buildings']['practice']['count'] = 2
    state['buildings']['internet_channel']['count'] = 1

    stepped = state
    for _ in range(10):
        stepped = advance(stepped, 1.0, context)
    caught_up = advance(state, 10.0, context)

    assert stepped['resources']['knowledge']['value'] == pytest.approx(
        caught_up['resources']['knowledge']['value'])
    assert stepped['game_time'] == pytest.approx(caught_up['game_time'])


def test_catch_up_matches_small_ticks_through_power_outages(state, context):
    unlock(state, 'electricity', 'computing_power')
    state['resources']['electricity']['value'] = 5.0
    state['buildings']['generator']['count'] = 1
    state['buildings']['home_computer']['count'] = 1

    stepped = state
    for _ in range(100):
        stepped = advance(stepped, 1.0, context)
    caught_up = advance(state, 100.0, context)

    # Drains for 10s, then alternates 2s stalled / 2s computing
    assert stepped['resources']['computing_power']['value'] == pytest.approx(108)
    assert caught_up['resources']['computing_power']['value'] == pytest.approx(108)
    assert caught_up['resources']['electricity']['value'] == pytest.approx(
        stepped['resources']['electricity']['value'])
    assert caught_up['shortages'] == stepped['shortages']


def test_shortage_events_fire_once_per_transition(state, context, sink):
    unlock(state, 'electricity', 'computing_power')
    state['resources']['electricity']['value'] = 1.0
    state['buildings']['home_computer']['count'] = 1

    drained = advance(state, 5, context)
    assert drained['shortages']['electricity'] is True
    assert drained['resources']['electricity']['value'] == 0

    still_drained = advance(drained, 5, context)
    assert still_drained['shortages']['electricity'] is True

    powered = copy.deepcopy(still_drained)
    powered['buildings']['generator']['count'] = 4
    restored = advance(powered, 1, context)
    assert restored['shortages']['electricity'] is False

    warnings = [m for m in messages(sink, 'warning') if 'Electricity' in m]
    assert len(warnings) == 1
    assert messages(sink, 'info').count('Electricity supply restored') == 1


def test_computers_produce_nothing_while_power_is_short(state, context):
    unlock(state, 'electricity', 'computing_power')
    state['buildings']['home_computer']['count'] = 1
    state['shortages'] = {'electricity': True}

    after = advance(state, 10, context)

    assert after['resources']['computing_power']['value'] == 0


def test_tick_failure_keeps_previous_state(state, context, monkeypatch):
    def boom(_state):
        raise RuntimeError("engine exploded")

    monkeypatch.setattr(context.engine, 'evaluate', boom)

    assert advance(state, 5, context) is state


def test_tick_action_goes_through_the_same_path(state, context):
    state['buildings']['practice']['count'] = 1

    by_elapsed = reduce(state, {'type': 'TICK', 'payload': {'elapsed': 10}}, context)

    state['last_update'] = 500.0
    by_timestamp = reduce(state, {'type': 'TICK', 'payload': {'now': 510.0}}, context)

    assert by_elapsed['resources']['knowledge']['value'] == pytest.approx(6.3)
    assert by_timestamp['resources']['knowledge']['value'] == pytest.approx(6.3)
    assert by_timestamp['last_update'] == 510.0


def test_values_stay_within_bounds(state, context):
    actions = [
        {'type': 'LEARN'},
        {'type': 'APPLY_KNOWLEDGE'},
        {'type': 'PURCHASE_BUILDING', 'payload': {'building_id': 'practice'}},
        {'type': 'APPLY_ALL_KNOWLEDGE'},
        {'type': 'SELL_BUILDING', 'payload': {'building_id': 'practice'}},
    ]
    state['resources']['knowledge']['value'] = 60.0
    current = state
    for step in range(40):
        current = reduce(current, actions[step % len(actions)], context)
        current = advance(current, (step % 7) * 3.5, context)
        for resource in current['resources'].values():
            assert 0 <= resource['value'] <= resource['max']


def test_loop_ignores_updates_until_started(state, context, clock, persistence):
    state['buildings']['practice']['count'] = 1
    loop = TickLoop(context, state)

    assert loop.status == IDLE
    assert loop.update() is state

    loop.start()
    assert loop.status == RUNNING
    assert loop.state['last_update'] == clock()

    clock.advance(10)
    loop.update()

    assert loop.state['resources']['knowledge']['value'] == pytest.approx(6.3)
    assert persistence.saves >= 1


def test_loop_restore_without_snapshot_keeps_state(state, context):
    loop = TickLoop(context, state)

    assert loop.restore() is state


def test_loop_restore_from_saved_snapshot(state, context, clock):
    state['buildings']['practice']['count'] = 1
    loop = TickLoop(context, state)
    loop.start()
    clock.advance(10)
    loop.update()
    loop.save(force=True)

    other = TickLoop(context)
    other.restore()

    assert other.status == RUNNING
    assert other.state['buildings']['practice']['count'] == 1
    assert other.state['resources']['knowledge']['value'] == pytest.approx(6.3)


def test_periodic_driver_calls_update():
    called = threading.Event()

    class StubLoop:
        context = types.SimpleNamespace(settings=TestingConfig)

        def update(self):
            called.set()

    driver = PeriodicDriver(StubLoop(), interval=0.01)
    driver.start()
    try:
        assert called.wait(2)
        assert driver.running
    finally:
        driver.stop(timeout=2)
    assert not driver.running

import copy

from cryptoidle.config import TestingConfig
from cryptoidle.unlock_engine import (
    CurrencyCounterRule, UnlockCondition, UnlockEngine, UnlockableItem,
    apply_currency_counter_rule,
)

from conftest import messages


def test_currency_unlocks_at_counter_threshold(state, context, sink):
    state['counters']['apply_knowledge']['value'] = 2

    events = context.engine.evaluate(state)

    assert state['resources']['usdt']['unlocked'] is True
    assert state['unlocks']['usdt'] is True
    assert 'usdt' in [e.item_id for e in events]
    assert messages(sink).count('Unlocked: USDT') == 1


def test_currency_stays_locked_below_threshold(state, context):
    state['counters']['apply_knowledge']['value'] = 1
    context.engine.evaluate(state)
    assert state['resources']['usdt']['unlocked'] is False


def test_unlock_notifies_once(state, context, sink):
    state['counters']['apply_knowledge']['value'] = 2
    context.engine.evaluate(state)

    again = copy.deepcopy(state)
    events = context.engine.evaluate(again)

    assert events == []
    assert messages(sink).count('Unlocked: USDT') == 1


def test_currency_threshold_is_configurable(loader, state, clock):
    class SingleBatchConfig(TestingConfig):
        CURRENCY_UNLOCK_COUNTER_THRESHOLD = 1

    engine = UnlockEngine.from_loader(loader, clock=clock, settings=SingleBatchConfig)
    state['counters']['apply_knowledge']['value'] = 1

    engine.evaluate(state)

    assert state['resources']['usdt']['unlocked'] is True
    assert state['buildings']['practice']['unlocked'] is True


def test_unknown_condition_type_and_missing_target_are_false(state, clock):
    engine = UnlockEngine([], clock=clock)

    assert engine.evaluate_condition(state, UnlockCondition('a', 'planet', 'earth')) is False
    assert engine.evaluate_condition(state, UnlockCondition('b', 'building', 'spaceship')) is False
    assert engine.evaluate_condition(state, UnlockCondition('c', 'counter', 'nope')) is False
    assert engine.evaluate_condition(
        state, UnlockCondition('d', 'counter', 'apply_knowledge', 'between', 0)) is False


def test_malformed_item_never_raises(state, clock):
    broken = UnlockableItem(
        id='mystery', kind='feature',
        conditions=(UnlockCondition('m', 'counter', 'apply_knowledge', 'gte', 'lots'),),
    )
    engine = UnlockEngine([broken], clock=clock)

    engine.evaluate(state)

    assert not state['unlocks'].get('mystery')


def test_grid_power_is_not_unlocked_by_generic_conditions(state, clock):
    always = UnlockableItem(
        id='electricity', kind='resource',
        conditions=(UnlockCondition('e', 'counter', 'knowledge_clicks', 'gte', 0),),
    )
    engine = UnlockEngine([always], clock=clock)

    engine.evaluate(state)
    assert state['resources']['electricity']['unlocked'] is False

    powered = copy.deepcopy(state)
    powered['buildings']['generator']['count'] = 1
    engine.evaluate(powered)
    assert powered['resources']['electricity']['unlocked'] is True


def test_influencing_unlock_triggers_another_pass(state, clock):
    generator = UnlockableItem.from_dict({
        'id': 'generator', 'kind': 'building',
        'conditions': [{'id': 'g', 'type': 'resource', 'target_id': 'usdt',
                        'operator': 'gte', 'target_value': 11}],
    })
    currency = UnlockableItem(
        id='usdt', kind='resource',
        conditions=(UnlockCondition('u', 'counter', 'apply_knowledge', 'gte', 2),),
        influences_others=True,
    )
    # Listed before the currency, so the first pass cannot see it unlocked
    engine = UnlockEngine([generator, currency], clock=clock)
    state['resources']['usdt']['value'] = 15
    state['counters']['apply_knowledge']['value'] = 2

    events = engine.evaluate(state)

    assert [e.item_id for e in events] == ['usdt', 'generator']
    assert engine.last_report['steps'] >= 2
    assert state['counters']['buildings_unlocked']['value'] == 1


def test_fixed_point_is_bounded(state, clock):
    items = [
        UnlockableItem(id=f'feature_{i}', kind='feature', influences_others=True,
                       conditions=(UnlockCondition(f'c{i}', 'counter', 'knowledge_clicks', 'gte', 0),))
        for i in range(3)
    ]
    engine = UnlockEngine(items, clock=clock)

    engine.evaluate(state)

    assert engine.last_report['steps'] <= len(items) + 1
    assert all(state['unlocks'][f'feature_{i}'] for i in range(3))


def test_building_unlocks_feed_equipment_feature(state, context):
    state['counters']['apply_knowledge']['value'] = 2

    context.engine.evaluate(state)

    assert state['buildings']['practice']['unlocked'] is True
    assert state['counters']['buildings_unlocked']['value'] == 1
    assert state['unlocks']['equipment'] is True


def test_condition_cache_expires(state, clock):
    engine = UnlockEngine([], clock=clock, cache_ttl=1.0,
                          currency_rule=CurrencyCounterRule(threshold=2))

    engine.evaluate(state)
    state['counters']['apply_knowledge']['value'] = 2
    engine.evaluate(state)
    # Same state object within the TTL: cached result still applies
    assert state['resources']['usdt']['unlocked'] is False

    clock.advance(1.5)
    engine.evaluate(state)
    assert state['resources']['usdt']['unlocked'] is True


def test_cache_is_dropped_for_a_new_state(state, clock):
    engine = UnlockEngine([], clock=clock, currency_rule=CurrencyCounterRule(threshold=2))
    engine.evaluate(state)

    fresh = copy.deepcopy(state)
    fresh['counters']['apply_knowledge']['value'] = 2
    engine.evaluate(fresh)

    assert fresh['resources']['usdt']['unlocked'] is True


def test_currency_counter_rule_relocks_and_unlocks(state):
    rule = CurrencyCounterRule(threshold=2)
    state['resources']['usdt']['unlocked'] = True
    state['counters']['apply_knowledge']['value'] = 1

    assert apply_currency_counter_rule(state, rule) is True
    assert state['resources']['usdt']['unlocked'] is False
    assert state['unlocks']['usdt'] is False

    state['counters']['apply_knowledge']['value'] = 2
    assert apply_currency_counter_rule(state, rule) is True
    assert state['resources']['usdt']['unlocked'] is True
    assert apply_currency_counter_rule(state, rule) is False


def test_unlock_item_for_feature(state, context, sink):
    event = context.engine.unlock_item(state, 'research', 'feature')

    assert event.name == 'Research'
    assert state['unlocks']['research'] is True
    assert context.engine.unlock_item(state, 'research', 'feature') is None
    assert messages(sink) == ['Unlocked: Research']


def test_counter_condition_defaults_to_shared_threshold():
    entry = {'id': 'practice', 'kind': 'building', 'conditions': [
        {'type': 'counter', 'target_id': 'apply_knowledge'},
        {'type': 'counter', 'target_id': 'knowledge_clicks'},
        {'type': 'counter', 'target_id': 'apply_knowledge', 'target_value': 5},
    ]}

    item = UnlockableItem.from_dict(entry, {'apply_knowledge': 3})

    assert [c.target_value for c in item.conditions] == [3, 1, 5]

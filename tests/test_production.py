import copy
import math

import pytest

from cryptoidle.production import (
    calculate_resources, conversion_rate, parse_effect_key, prestige_gain,
    production_breakdown, safe_log,
)

from conftest import unlock

RESOURCE_IDS = {'knowledge', 'usdt', 'electricity', 'computing_power', 'bitcoin'}


@pytest.mark.parametrize('key, expected', [
    ('knowledge', ('knowledge', 'rate')),
    ('knowledge_max', ('knowledge', 'max')),
    ('knowledge_max_boost', ('knowledge', 'max_boost')),
    ('knowledge_boost', ('knowledge', 'boost')),
    ('computing_power_production_boost', ('computing_power', 'boost')),
    ('usdt_production', ('usdt', 'flat')),
    ('electricity_consumption_reduction', ('electricity', 'consumption_reduction')),
    ('knowledge_efficiency_boost', (None, 'knowledge_efficiency_boost')),
    ('mining_efficiency_boost', (None, 'mining_efficiency_boost')),
    ('unobtainium_boost', (None, None)),
])
def test_parse_effect_key(key, expected):
    assert parse_effect_key(key, RESOURCE_IDS) == expected


def test_single_practice_produces_knowledge(state, context):
    state['buildings']['practice']['count'] = 1

    resources = calculate_resources(state, context.rules)

    assert resources['knowledge']['per_second'] == pytest.approx(0.63)
    assert resources['knowledge']['boosts']['base:practice'] == pytest.approx(0.63)


def test_conversion_with_efficiency_upgrade(state, context):
    state['buildings']['miner']['count'] = 2
    state['upgrades']['algorithm_optimization']['purchased'] = True
    unlock(state, 'bitcoin')

    resources = calculate_resources(state, context.rules)

    assert resources['bitcoin']['per_second'] == pytest.approx(2 * 0.00005 * 1.15)
    assert resources['bitcoin']['conversion_rate'] == pytest.approx(0.000115)


def test_conversion_is_zero_when_output_locked_or_no_units(state, context):
    state['buildings']['miner']['count'] = 2
    assert conversion_rate(state, 'miner', context.rules) == 0.0

    unlock(state, 'bitcoin')
    state['buildings']['miner']['count'] = 0
    assert conversion_rate(state, 'miner', context.rules) == 0.0


def test_conversion_stops_during_input_shortage(state, context):
    unlock(state, 'bitcoin')
    state['buildings']['miner']['count'] = 1
    state['shortages'] = {'computing_power': True}

    assert conversion_rate(state, 'miner', context.rules) == 0.0


def test_pipeline_is_deterministic_and_pure(state, context):
    state['buildings']['practice']['count'] = 3
    state['upgrades']['blockchain_basics']['purchased'] = True
    state['referrals'] = [{'id': 'r1', 'activated': True}]
    before = copy.deepcopy(state)

    first = calculate_resources(state, context.rules)
    second = calculate_resources(state, context.rules)

    assert state == before
    assert first['knowledge']['per_second'] == second['knowledge']['per_second']


def test_upgrade_percent_boost_and_capacity(state, context):
    state['buildings']['practice']['count'] = 1
    state['upgrades']['blockchain_basics']['purchased'] = True

    knowledge = calculate_resources(state, context.rules)['knowledge']

    assert knowledge['per_second'] == pytest.approx(0.63 * 1.1)
    assert knowledge['max'] == pytest.approx(150)
    assert knowledge['boosts']['upgrade:blockchain_basics'] == pytest.approx(0.063)


def test_flat_upgrade_production_needs_unlocked_resource(state, context):
    state['upgrades']['trading_bot']['purchased'] = True
    assert calculate_resources(state, context.rules)['usdt']['per_second'] == 0.0

    unlock(state, 'usdt')
    assert calculate_resources(state, context.rules)['usdt']['per_second'] == pytest.approx(0.1)


def test_referral_bonus_only_on_producing_resources(state, context):
    state['buildings']['practice']['count'] = 1
    unlock(state, 'usdt')
    state['referrals'] = [
        {'id': 'a', 'activated': True},
        {'id': 'b', 'activated': True},
        {'id': 'c', 'activated': False},
    ]

    resources = calculate_resources(state, context.rules)

    assert resources['knowledge']['per_second'] == pytest.approx(0.63 * 1.10)
    assert resources['usdt']['per_second'] == 0.0


def test_helper_bonus_applies_to_its_building_only(state, context):
    unlock(state, 'electricity')
    state['buildings']['practice']['count'] = 2
    state['buildings']['generator']['count'] = 1
    state['referral_helpers'] = [
        {'id': 'helper_a_practice', 'helper_id': 'a', 'building_id': 'practice', 'status': 'accepted'},
        {'id': 'helper_b_generator', 'helper_id': 'b', 'building_id': 'generator', 'status': 'pending'},
    ]

    resources = calculate_resources(state, context.rules)

    assert resources['knowledge']['per_second'] == pytest.approx(1.26 * 1.1)
    assert resources['electricity']['per_second'] == pytest.approx(0.5)


def test_infrastructure_boost(state, context):
    state['buildings']['practice']['count'] = 1
    state['buildings']['internet_channel']['count'] = 1

    knowledge = calculate_resources(state, context.rules)['knowledge']

    assert knowledge['per_second'] == pytest.approx(0.63 * 1.2)
    assert 'infrastructure:internet_channel' in knowledge['boosts']


def test_specialization_bonus(state, context):
    state['buildings']['practice']['count'] = 1
    state['specialization'] = 'analyst'

    knowledge = calculate_resources(state, context.rules)['knowledge']

    assert knowledge['per_second'] == pytest.approx(0.63 * 1.25)


def test_consumption_reduction_is_capped(state, context):
    unlock(state, 'electricity', 'computing_power')
    state['buildings']['home_computer']['count'] = 1
    state['buildings']['cooling_system']['count'] = 3
    state['upgrades']['energy_efficient_components']['purchased'] = True

    resources = calculate_resources(state, context.rules)

    assert resources['electricity']['consumption'] == pytest.approx(0.5)
    assert resources['electricity']['per_second'] == pytest.approx(-0.5)
    assert resources['computing_power']['per_second'] == pytest.approx(2)


def test_consumers_stall_during_shortage(state, context):
    unlock(state, 'electricity', 'computing_power')
    state['buildings']['home_computer']['count'] = 1
    state['shortages'] = {'electricity': True}

    resources = calculate_resources(state, context.rules)

    assert resources['computing_power']['per_second'] == 0.0
    assert resources['electricity']['consumption'] == 0.0
    assert resources['electricity']['demand'] == pytest.approx(1.0)


def test_capacity_from_buildings_and_value_clamp(state, context):
    state['buildings']['crypto_wallet']['count'] = 2
    state['resources']['usdt']['value'] = 500

    resources = calculate_resources(state, context.rules)

    assert resources['usdt']['max'] == pytest.approx(150)
    assert resources['usdt']['value'] == pytest.approx(150)
    assert resources['knowledge']['max'] == pytest.approx(150)


def test_production_breakdown(state, context):
    state['buildings']['practice']['count'] = 1
    state['buildings']['internet_channel']['count'] = 1

    breakdown = production_breakdown(state, 'knowledge', context.rules)

    assert set(breakdown['sources']) == {'base:practice', 'infrastructure:internet_channel'}
    assert breakdown['per_second'] == pytest.approx(sum(breakdown['sources'].values()))
    assert production_breakdown(state, 'dogecoin', context.rules) is None


def test_prestige_gain_guards_log_domain():
    assert prestige_gain(0) == 0
    assert prestige_gain(-50) == 0
    assert prestige_gain(999.99) == 0
    assert prestige_gain(1000) == 0
    assert prestige_gain(1000 * math.exp(1.05)) == 10
    assert prestige_gain(10000) == 23
    assert math.isfinite(safe_log(0))

"""Production pipeline: per-second rates and capacities for every resource.

Every call recomputes every layer from scratch from the state it is given;
nothing is accumulated between calls. Layer order:

1. Base production: ``base_production`` plus, for every owned building,
   ``production[resource] * count`` (plain resource keys only).
2. Purchased upgrades, in template order, each applied to the rate
   accumulated so far (percent via ``<res>_boost``, flat via
   ``<res>_production``).
3. Referral bonus: ``referral_bonus * activated referrals`` on every
   resource that has production.
4. Helper bonus: ``helper_bonus * accepted helpers`` on the helped
   building's own layer-1 contribution only.
5. Infrastructure (``<res>_boost`` keys on owned buildings, per unit),
   specialization and active synergies.

Consumption is subtracted afterwards and can only be reduced by
``<res>_consumption_reduction`` effects (capped). Conversion buildings add
their output last.

Effect keys share one grammar across building production maps and upgrade
effects::

    <res>                       units/sec per building (buildings only)
    <res>_max                   flat capacity
    <res>_max_boost             fractional capacity
    <res>_boost                 fractional production
    <res>_production_boost      fractional production
    <res>_production            flat production
    <res>_consumption_reduction fractional consumption cut
    knowledge_efficiency_boost  knowledge -> usdt exchange bonus (meta)
    mining_efficiency_boost     conversion efficiency bonus (meta)
"""
import copy
import logging
import math

from cryptoidle.config import Config
from cryptoidle.state import INFINITY, clamp

logger = logging.getLogger(__name__)

META_EFFECT_KEYS = ('knowledge_efficiency_boost', 'mining_efficiency_boost')

# Longest suffix first: "_max_boost" must win over "_boost"
EFFECT_SUFFIXES = (
    ('_consumption_reduction', 'consumption_reduction'),
    ('_production_boost', 'boost'),
    ('_max_boost', 'max_boost'),
    ('_production', 'flat'),
    ('_boost', 'boost'),
    ('_max', 'max'),
)

MIN_LOG_ARGUMENT = 1e-12


def parse_effect_key(key, resource_ids):
    """Split an effect key into (resource_id, effect kind).

    Args:
        key: Effect key such as ``knowledge_max_boost``
        resource_ids: Known resource ids

    Returns:
        ``(resource_id, kind)`` where kind is one of rate, flat, boost, max,
        max_boost, consumption_reduction; ``(None, key)`` for meta effects;
        ``(None, None)`` for keys that target no known resource
    """
    if key in META_EFFECT_KEYS:
        return None, key
    if key in resource_ids:
        return key, 'rate'
    for suffix, kind in EFFECT_SUFFIXES:
        if key.endswith(suffix):
            resource_id = key[:-len(suffix)]
            if resource_id in resource_ids:
                return resource_id, kind
    return None, None


def sum_meta_effect(state, key):
    """Total of a meta effect over every purchased upgrade."""
    total = 0.0
    for upgrade in state.get('upgrades', {}).values():
        if upgrade.get('purchased'):
            total += upgrade.get('effects', {}).get(key, 0.0)
    return total


def _rules_value(rules, section, key, default):
    if not rules:
        return default
    return rules.get(section, {}).get(key, default)


def stalled_buildings(state):
    """Buildings that consume a resource currently in shortage."""
    shortages = {rid for rid, active in state.get('shortages', {}).items() if active}
    if not shortages:
        return set()
    return {
        building_id for building_id, building in state.get('buildings', {}).items()
        if building.get('count', 0) > 0
        and any(rid in shortages for rid in building.get('consumption', {}))
    }


def output_bonus(state, resource_id, rules=None):
    """Fractional bonus from the chosen specialization and active synergies.

    Args:
        state: Game state
        resource_id: Target resource
        rules: Economic rules holding specialization ('bonuses') and
            synergy ('bonus') definitions

    Returns:
        List of (source, fraction) pairs with non-zero fractions
    """
    rules = rules or {}
    specializations = rules.get('specializations', {})
    synergies = rules.get('synergies', {})
    sources = []
    chosen = state.get('specialization')
    if chosen and specializations:
        bonuses = specializations.get(chosen, {}).get('bonuses', {})
        fraction = bonuses.get(resource_id, 0.0) + bonuses.get('all', 0.0)
        if fraction:
            sources.append(('specialization', fraction))
    if synergies:
        for synergy_id, synergy_state in state.get('synergies', {}).items():
            if not synergy_state.get('active'):
                continue
            bonus = synergies.get(synergy_id, {}).get('bonus', {})
            fraction = bonus.get(resource_id, 0.0) + bonus.get('all', 0.0)
            if fraction:
                sources.append((f'synergy:{synergy_id}', fraction))
    return sources


def conversion_efficiency(state, output_id, rules=None):
    """Efficiency multiplier for conversion buildings producing ``output_id``."""
    mining_params = state.get('mining_params', {})
    efficiency = 1.0 + sum_meta_effect(state, 'mining_efficiency_boost')
    efficiency *= mining_params.get('mining_efficiency', 1.0)
    for _, fraction in output_bonus(state, output_id, rules):
        efficiency *= 1.0 + fraction
    return efficiency


def conversion_rate(state, building_id, rules=None):
    """Output units/sec of one conversion building type.

    ``base_rate * count * efficiency``; zero when the output resource is
    locked, no units are owned, or one of the consumed inputs is in shortage.
    """
    building = state.get('buildings', {}).get(building_id)
    if not building:
        return 0.0
    conversion = building.get('conversion') or {}
    output_id = conversion.get('output')
    output = state.get('resources', {}).get(output_id)
    count = building.get('count', 0)
    if output is None or not output.get('unlocked') or count <= 0:
        return 0.0
    shortages = state.get('shortages', {})
    if any(shortages.get(input_id) for input_id in building.get('consumption', {})):
        return 0.0
    base_rate = conversion.get('base_rate', 0.0)
    return base_rate * count * conversion_efficiency(state, output_id, rules)


def _record(boosts, resource_id, source, amount):
    if amount:
        entry = boosts.setdefault(resource_id, {})
        entry[source] = entry.get(source, 0.0) + amount


def calculate_resources(state, rules=None, settings=None):
    """Recompute every resource's per-second rate and capacity.

    Args:
        state: Game state (not modified)
        rules: Economic rules (specializations, synergies, social bonuses)
        settings: Config class supplying fallback constants

    Returns:
        New ``resources`` dict with per_second, production, consumption,
        demand, conversion_rate, boosts and max updated and values clamped
    """
    settings = settings or Config
    resources = copy.deepcopy(state.get('resources', {}))
    buildings = state.get('buildings', {})
    upgrades = state.get('upgrades', {})
    resource_ids = set(resources)
    purchased = [u for u in upgrades.values() if u.get('purchased')]
    owned = {bid: b for bid, b in buildings.items() if b.get('count', 0) > 0}
    stalled = stalled_buildings(state)

    rates = {rid: float(r.get('base_production', 0.0)) for rid, r in resources.items()}
    boosts = {}
    for rid, rate in rates.items():
        _record(boosts, rid, 'base', rate)

    # Layer 1: building base production
    building_base = {}
    for building_id, building in owned.items():
        if building_id in stalled:
            continue
        count = building['count']
        for key, amount in building.get('production', {}).items():
            resource_id, kind = parse_effect_key(key, resource_ids)
            if kind != 'rate':
                continue
            contribution = amount * count
            rates[resource_id] += contribution
            building_base.setdefault(building_id, {})[resource_id] = contribution
            _record(boosts, resource_id, f'base:{building_id}', contribution)

    # Layer 2: purchased upgrades, sequential so each compounds on the last
    for upgrade in purchased:
        source = f"upgrade:{upgrade['id']}"
        for key, amount in upgrade.get('effects', {}).items():
            resource_id, kind = parse_effect_key(key, resource_ids)
            if kind == 'boost':
                delta = rates[resource_id] * amount
            elif kind == 'flat':
                delta = amount
            else:
                continue
            rates[resource_id] += delta
            _record(boosts, resource_id, source, delta)

    # Layer 3: activated referrals
    referral_bonus = _rules_value(rules, 'social', 'referral_bonus', settings.REFERRAL_BONUS)
    activated = sum(1 for r in state.get('referrals', []) if r.get('activated'))
    if activated:
        fraction = referral_bonus * activated
        for resource_id, rate in rates.items():
            if rate > 0:
                delta = rate * fraction
                rates[resource_id] += delta
                _record(boosts, resource_id, 'referrals', delta)

    # Layer 4: accepted helpers, only on their building's own output
    helper_bonus = _rules_value(rules, 'social', 'helper_bonus', settings.HELPER_BONUS)
    helpers_by_building = {}
    for helper in state.get('referral_helpers', []):
        if helper.get('status') == 'accepted':
            building_id = helper.get('building_id')
            helpers_by_building[building_id] = helpers_by_building.get(building_id, 0) + 1
    for building_id, helpers in helpers_by_building.items():
        for resource_id, contribution in building_base.get(building_id, {}).items():
            delta = contribution * helper_bonus * helpers
            rates[resource_id] += delta
            _record(boosts, resource_id, f'helper:{building_id}', delta)

    # Layer 5: infrastructure, then specialization and synergies
    for building_id, building in owned.items():
        if building_id in stalled:
            continue
        for key, amount in building.get('production', {}).items():
            resource_id, kind = parse_effect_key(key, resource_ids)
            if kind != 'boost':
                continue
            delta = rates[resource_id] * amount * building['count']
            rates[resource_id] += delta
            _record(boosts, resource_id, f'infrastructure:{building_id}', delta)
    for resource_id in resources:
        for source, fraction in output_bonus(state, resource_id, rules):
            delta = rates[resource_id] * fraction
            rates[resource_id] += delta
            _record(boosts, resource_id, source, delta)

    # Consumption, never boosted; reductions summed and capped
    reductions = {}
    for upgrade in purchased:
        for key, amount in upgrade.get('effects', {}).items():
            resource_id, kind = parse_effect_key(key, resource_ids)
            if kind == 'consumption_reduction':
                reductions[resource_id] = reductions.get(resource_id, 0.0) + amount
    for building in owned.values():
        for key, amount in building.get('production', {}).items():
            resource_id, kind = parse_effect_key(key, resource_ids)
            if kind == 'consumption_reduction':
                reductions[resource_id] = reductions.get(resource_id, 0.0) + amount * building['count']

    demand = {rid: 0.0 for rid in resources}
    consumption = {rid: 0.0 for rid in resources}
    for building_id, building in owned.items():
        for resource_id, amount in building.get('consumption', {}).items():
            if resource_id not in resources:
                continue
            cut = clamp(reductions.get(resource_id, 0.0), 0.0, settings.MAX_CONSUMPTION_REDUCTION)
            used = amount * building['count'] * (1.0 - cut)
            demand[resource_id] += used
            if building_id not in stalled:
                consumption[resource_id] += used

    # Conversion buildings
    conversions = {rid: 0.0 for rid in resources}
    for building_id, building in owned.items():
        output_id = (building.get('conversion') or {}).get('output')
        if output_id not in resources:
            continue
        rate = conversion_rate(state, building_id, rules)
        conversions[output_id] += rate
        _record(boosts, output_id, f'conversion:{building_id}', rate)

    # Capacity
    flat_max = {rid: 0.0 for rid in resources}
    pct_max = {rid: 0.0 for rid in resources}
    for upgrade in purchased:
        for key, amount in upgrade.get('effects', {}).items():
            resource_id, kind = parse_effect_key(key, resource_ids)
            if kind == 'max':
                flat_max[resource_id] += amount
            elif kind == 'max_boost':
                pct_max[resource_id] += amount
    for building in owned.values():
        for key, amount in building.get('production', {}).items():
            resource_id, kind = parse_effect_key(key, resource_ids)
            if kind == 'max':
                flat_max[resource_id] += amount * building['count']
            elif kind == 'max_boost':
                pct_max[resource_id] += amount * building['count']

    for resource_id, resource in resources.items():
        base_max = resource.get('base_max')
        if base_max is None:
            base_max = INFINITY
        if math.isinf(base_max):
            resource['max'] = INFINITY
        else:
            resource['max'] = max(0.0, (base_max + flat_max[resource_id]) * (1.0 + pct_max[resource_id]))
        resource['value'] = clamp(resource.get('value', 0.0), 0.0, resource['max'])

        if resource.get('unlocked'):
            resource['production'] = rates[resource_id]
            resource['consumption'] = consumption[resource_id]
            resource['demand'] = demand[resource_id]
            resource['conversion_rate'] = conversions[resource_id]
            resource['per_second'] = rates[resource_id] - consumption[resource_id] + conversions[resource_id]
            resource['boosts'] = boosts.get(resource_id, {})
        else:
            resource['production'] = 0.0
            resource['consumption'] = 0.0
            resource['demand'] = 0.0
            resource['conversion_rate'] = 0.0
            resource['per_second'] = 0.0
            resource['boosts'] = {}

    return resources


def recompute(state, rules=None, settings=None):
    """Replace ``state['resources']`` with freshly calculated records, in place."""
    state['resources'] = calculate_resources(state, rules, settings)
    return state


def production_breakdown(state, resource_id, rules=None):
    """Per-source table of one resource's current rate, for debugging.

    Returns:
        Dict with the source table and totals, or None for unknown resources
    """
    resources = calculate_resources(state, rules)
    resource = resources.get(resource_id)
    if resource is None:
        return None
    return {
        'resource_id': resource_id,
        'sources': dict(resource['boosts']),
        'production': resource['production'],
        'consumption': resource['consumption'],
        'conversion_rate': resource['conversion_rate'],
        'per_second': resource['per_second'],
        'max': resource['max'],
    }


def safe_log(value):
    """Natural log with its argument clamped into the positive domain."""
    return math.log(max(MIN_LOG_ARGUMENT, value))


def prestige_gain(total_asset_value, threshold=None, difficulty=None):
    """Meta-currency earned for a prestige at ``total_asset_value``.

    ``max(0, floor(log(total / threshold) * difficulty))``; anything below the
    threshold gives zero.
    """
    threshold = Config.PRESTIGE_THRESHOLD if threshold is None else threshold
    difficulty = Config.PRESTIGE_DIFFICULTY if difficulty is None else difficulty
    if threshold <= 0 or total_asset_value < threshold:
        return 0
    return max(0, int(math.floor(safe_log(total_asset_value / threshold) * difficulty)))

"""Game state model: template instantiation, snapshots and defensive merging.

A game state is a plain dict so that it can be stored verbatim in the
``GameSession.game_state`` JSON column and returned from API views. Its
top-level layout::

    {
        'version': 1,
        'game_started': bool, 'last_update': float | None, 'game_time': float,
        'resources': {id: resource}, 'buildings': {id: building},
        'upgrades': {id: upgrade}, 'counters': {id: {'id', 'value'}},
        'unlocks': {item_id: bool},
        'referrals': [...], 'referral_helpers': [...],
        'specialization': str | None, 'synergies': {id: {'id', 'active'}},
        'mining_params': {...}, 'shortages': {resource_id: bool},
        'prestige_points': int, 'upgrade_effects': {...}, 'applied_upgrades': [...],
    }
"""
import copy
import math

from cryptoidle.game_data_loader import get_game_data_loader

STATE_VERSION = 1
INFINITY = float('inf')

# Entity maps that are rebuilt from the template; ids missing from the
# template are dropped on merge
ENTITY_MAPS = ('resources', 'buildings', 'upgrades')

# The only entity fields a snapshot may carry over; everything else is
# definition data or derived by the production pipeline
SESSION_FIELDS = {
    'resources': ('value', 'unlocked'),
    'buildings': ('count', 'unlocked'),
    'upgrades': ('purchased', 'unlocked'),
}

HELPER_STATUSES = ('pending', 'accepted', 'rejected')


def _capacity(value):
    """Convert a definition's max into a float, None meaning unbounded."""
    if value is None:
        return INFINITY
    return float(value)


def new_resource(resource_id, definition):
    base_max = _capacity(definition.get('max'))
    return {
        'id': resource_id,
        'name': definition.get('name', resource_id),
        'type': definition.get('type', 'resource'),
        'value': float(definition.get('value', 0)),
        'base_production': float(definition.get('base_production', 0)),
        'per_second': 0.0,
        'production': 0.0,
        'consumption': 0.0,
        'demand': 0.0,  # consumption including stalled consumers
        'conversion_rate': 0.0,
        'boosts': {},
        'base_max': base_max,
        'max': base_max,
        'unlocked': bool(definition.get('unlocked', False)),
    }


def new_building(building_id, definition):
    return {
        'id': building_id,
        'name': definition.get('name', building_id),
        'category': definition.get('category'),
        'count': 0,
        'cost': dict(definition.get('cost', {})),
        'cost_multiplier': float(definition.get('cost_multiplier', 1.0)),
        'production': dict(definition.get('production', {})),
        'consumption': dict(definition.get('consumption', {})),
        'conversion': copy.deepcopy(definition.get('conversion')),
        'unlocks_on_purchase': copy.deepcopy(definition.get('unlocks_on_purchase', {})),
        'unlocked': bool(definition.get('unlocked', False)),
    }


def new_upgrade(upgrade_id, definition):
    return {
        'id': upgrade_id,
        'name': definition.get('name', upgrade_id),
        'category': definition.get('category'),
        'cost': dict(definition.get('cost', {})),
        'effects': dict(definition.get('effects', {})),
        'unlocks_on_purchase': copy.deepcopy(definition.get('unlocks_on_purchase', {})),
        'purchased': False,
        'unlocked': bool(definition.get('unlocked', False)),
    }


def new_state(loader=None):
    """Instantiate a fresh game state from the static definition tables.

    Derived fields (rates, capacities) are left at their template values;
    run the production pipeline before presenting the state.

    Args:
        loader: GameDataLoader to read definitions from (global one if None)

    Returns:
        New state dict sharing nothing with the definition tables
    """
    loader = loader or get_game_data_loader()

    resources = {rid: new_resource(rid, d) for rid, d in loader.load_resources().items()}
    buildings = {bid: new_building(bid, d) for bid, d in loader.load_buildings().items()}
    upgrades = {uid: new_upgrade(uid, d) for uid, d in loader.load_upgrades().items()}

    unlocks = {}
    for table in (resources, buildings, upgrades):
        for item_id, item in table.items():
            if item['unlocked']:
                unlocks[item_id] = True

    return {
        'version': STATE_VERSION,
        'game_started': False,
        'last_update': None,
        'last_saved': None,
        'game_time': 0.0,
        'prestige_points': 0,
        'resources': resources,
        'buildings': buildings,
        'upgrades': upgrades,
        'counters': {cid: {'id': cid, 'value': 0} for cid in loader.get_counter_ids()},
        'unlocks': unlocks,
        'referrals': [],
        'referral_helpers': [],
        'referral_code': None,
        'referred_by': None,
        'specialization': None,
        'synergies': {sid: {'id': sid, 'active': False} for sid in loader.get_synergies()},
        'mining_params': copy.deepcopy(loader.get_mining_params()),
        'shortages': {},
        'upgrade_effects': {},
        'applied_upgrades': [],
    }


def _encode(value):
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_encode(item) for item in value]
    if isinstance(value, float) and math.isinf(value):
        return None  # JSON has no infinity
    return value


def to_snapshot(state):
    """Return a JSON-safe deep copy of ``state`` (infinite capacities become None)."""
    return _encode(copy.deepcopy(state))


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _merge(default, saved):
    """Merge one saved value onto its template default, template filling gaps."""
    if isinstance(default, dict):
        if not isinstance(saved, dict):
            return copy.deepcopy(default)
        merged = {}
        for key, default_value in default.items():
            if key in saved:
                merged[key] = _merge(default_value, saved[key])
            else:
                merged[key] = copy.deepcopy(default_value)
        for key, saved_value in saved.items():
            if key not in default:
                merged[key] = copy.deepcopy(saved_value)
        return merged
    if saved is None:
        # None also encodes an infinite capacity
        return copy.deepcopy(default)
    if isinstance(default, list):
        return copy.deepcopy(saved) if isinstance(saved, list) else copy.deepcopy(default)
    if _is_number(default) and not _is_number(saved):
        if isinstance(saved, bool):
            return copy.deepcopy(default)
        try:
            return type(default)(saved)
        except (TypeError, ValueError):
            return copy.deepcopy(default)
    return copy.deepcopy(saved)


def _merge_entities(template_map, saved_map, fields):
    """Template entities with only their per-session ``fields`` taken from the save."""
    merged = copy.deepcopy(template_map)
    if not isinstance(saved_map, dict):
        return merged
    for entity_id, entity in merged.items():
        saved = saved_map.get(entity_id)
        if not isinstance(saved, dict):
            continue
        for field in fields:
            if field in saved:
                entity[field] = _merge(entity[field], saved[field])
    return merged


def _text(value):
    return value if isinstance(value, str) and value else None


def referral_record(entry):
    """Rebuild one saved referral into its canonical shape, None if unusable."""
    if not isinstance(entry, dict) or _text(entry.get('id')) is None:
        return None
    return {
        'id': entry['id'],
        'activated': bool(entry.get('activated')),
        'hired': bool(entry.get('hired')),
        'assigned_building_id': _text(entry.get('assigned_building_id')),
    }


def helper_record(entry):
    """Rebuild one saved helper request into its canonical shape, None if unusable."""
    if not isinstance(entry, dict):
        return None
    helper_id = _text(entry.get('helper_id'))
    building_id = _text(entry.get('building_id'))
    status = entry.get('status', 'pending')
    if helper_id is None or building_id is None or status not in HELPER_STATUSES:
        return None
    return {
        'id': _text(entry.get('id')) or f'helper_{helper_id}_{building_id}',
        'helper_id': helper_id,
        'building_id': building_id,
        'status': status,
    }


def _records(saved, build):
    if not isinstance(saved, list):
        return []
    records, seen = [], set()
    for entry in saved:
        record = build(entry)
        if record is not None and record['id'] not in seen:
            seen.add(record['id'])
            records.append(record)
    return records


def merge_snapshot(template, snapshot):
    """Merge a persisted snapshot onto template defaults key by key.

    Definitions (costs, production maps, capacities, mining parameters)
    always come from the template, so table changes reach old saves; only
    the per-session fields listed in ``SESSION_FIELDS`` are read back.
    Entities the template no longer defines are dropped, referral and
    helper records are rebuilt to their canonical shape (unusable ones are
    dropped) and unknown synergies are ignored.

    Args:
        template: Fresh state from ``new_state``
        snapshot: Previously persisted state (possibly partial or stale)

    Returns:
        New merged state; neither argument is modified
    """
    if not isinstance(snapshot, dict):
        return copy.deepcopy(template)

    merged = _merge(template, snapshot)
    for map_name, fields in SESSION_FIELDS.items():
        merged[map_name] = _merge_entities(template[map_name], snapshot.get(map_name), fields)
    merged['mining_params'] = copy.deepcopy(template['mining_params'])

    merged['referrals'] = _records(snapshot.get('referrals'), referral_record)
    merged['referral_helpers'] = _records(snapshot.get('referral_helpers'), helper_record)

    saved_synergies = snapshot.get('synergies')
    if not isinstance(saved_synergies, dict):
        saved_synergies = {}
    merged['synergies'] = {}
    for synergy_id in template['synergies']:
        saved = saved_synergies.get(synergy_id)
        active = isinstance(saved, dict) and saved.get('active') is True
        merged['synergies'][synergy_id] = {'id': synergy_id, 'active': active}

    saved_shortages = snapshot.get('shortages')
    if not isinstance(saved_shortages, dict):
        saved_shortages = {}
    merged['shortages'] = {
        rid: flag for rid, flag in saved_shortages.items()
        if rid in template['resources'] and isinstance(flag, bool)
    }

    for key in ('specialization', 'referral_code', 'referred_by'):
        merged[key] = _text(merged.get(key))
    for key in ('last_update', 'last_saved'):
        if not _is_number(merged.get(key)):
            merged[key] = None
    merged['game_started'] = merged.get('game_started') is True
    if not isinstance(merged.get('counters'), dict):
        merged['counters'] = copy.deepcopy(template['counters'])
    return merged


def normalize_flags(state):
    """Coerce unlock/purchase flags and counts into a consistent shape in place.

    - ``purchased`` implies ``unlocked`` for upgrades
    - a positive building count implies ``unlocked``
    - resource values are clamped to be non-negative
    """
    for resource in state['resources'].values():
        resource['unlocked'] = bool(resource.get('unlocked'))
        resource['value'] = max(0.0, float(resource.get('value') or 0.0))

    for building in state['buildings'].values():
        try:
            building['count'] = max(0, int(building.get('count') or 0))
        except (TypeError, ValueError):
            building['count'] = 0
        building['unlocked'] = bool(building.get('unlocked')) or building['count'] > 0

    for upgrade in state['upgrades'].values():
        upgrade['purchased'] = bool(upgrade.get('purchased'))
        upgrade['unlocked'] = bool(upgrade.get('unlocked')) or upgrade['purchased']

    for counter_id, counter in list(state['counters'].items()):
        if not isinstance(counter, dict):
            counter = {'id': counter_id, 'value': counter}
        value = counter.get('value')
        counter['value'] = value if _is_number(value) and value > 0 else 0
        counter['id'] = counter_id
        state['counters'][counter_id] = counter

    unlocks = state.get('unlocks')
    if not isinstance(unlocks, dict):
        unlocks = {}
    unlocks = {item_id: bool(flag) for item_id, flag in unlocks.items()}
    for map_name in ENTITY_MAPS:
        for entity_id, entity in state[map_name].items():
            unlocks[entity_id] = entity['unlocked']
    state['unlocks'] = unlocks
    return state


def get_counter_value(state, counter_id):
    """Get a counter's value, 0 when the counter does not exist."""
    counter = state.get('counters', {}).get(counter_id)
    if isinstance(counter, dict):
        return counter.get('value', 0)
    return 0


def increment_counter(state, counter_id, amount=1):
    """Increase a counter in place, creating it when missing."""
    counters = state.setdefault('counters', {})
    counter = counters.setdefault(counter_id, {'id': counter_id, 'value': 0})
    counter['value'] = counter.get('value', 0) + amount
    return counter['value']


def is_unlocked(state, item_id):
    """Check whether a resource, building, upgrade or feature is unlocked."""
    for map_name in ENTITY_MAPS:
        entity = state.get(map_name, {}).get(item_id)
        if entity is not None:
            return bool(entity.get('unlocked'))
    return bool(state.get('unlocks', {}).get(item_id))


def clamp(value, low, high):
    return max(low, min(high, value))

"""Action reducer: pure ``(state, action) -> state`` transitions.

An action is a dict ``{'type': 'PURCHASE_BUILDING', 'payload': {...}}``.
Handlers work on a deep copy of the state and return it, or return None to
reject the action, in which case the caller gets the very same input object
back. Unknown action types, malformed payloads and unexpected errors are
treated as rejections; ``reduce`` never raises.
"""
import copy
import logging
import math

from cryptoidle.production import (
    conversion_efficiency, prestige_gain, recompute, sum_meta_effect,
)
from cryptoidle.state import (
    STATE_VERSION, get_counter_value, helper_record, increment_counter, is_unlocked,
    merge_snapshot, new_state, normalize_flags,
)
from cryptoidle.tick_loop import advance
from cryptoidle.unlock_engine import apply_currency_counter_rule

logger = logging.getLogger(__name__)

KNOWLEDGE = 'knowledge'
CURRENCY = 'usdt'
BITCOIN = 'bitcoin'
COMPUTING_POWER = 'computing_power'

APPLY_KNOWLEDGE_COUNTER = 'apply_knowledge'
KNOWLEDGE_CLICKS_COUNTER = 'knowledge_clicks'

ACTION_HANDLERS = {}


def handles(action_type):
    """Register a handler for one action type."""
    def decorator(f):
        ACTION_HANDLERS[action_type] = f
        return f
    return decorator


def reduce(state, action, context):
    """Apply one action.

    Args:
        state: Current game state (never modified)
        action: ``{'type': str, 'payload': dict}``
        context: SessionContext with the engine, rules and collaborators

    Returns:
        New state, or ``state`` itself when the action was rejected
    """
    if not isinstance(action, dict):
        logger.debug("Ignoring malformed action %r", action)
        return state
    action_type = action.get('type')
    payload = action.get('payload')
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        logger.debug("Ignoring %s with non-dict payload", action_type)
        return state

    if action_type == 'TICK':
        return _tick(state, payload, context)

    handler = ACTION_HANDLERS.get(action_type)
    if handler is None:
        logger.debug("Ignoring unknown action type %r", action_type)
        return state

    try:
        result = handler(copy.deepcopy(state), payload, context)
        if result is None:
            logger.debug("Rejected %s %s", action_type, payload)
            return state
        return _finalize(result, context)
    except Exception:
        logger.exception("Action %s failed; state unchanged", action_type)
        return state


def _finalize(state, context):
    """Bring derived fields and unlocks in line after an accepted action."""
    recompute(state, context.rules, context.settings)
    context.engine.evaluate(state)
    recompute(state, context.rules, context.settings)
    return state


def _tick(state, payload, context):
    elapsed = payload.get('elapsed')
    now = payload.get('now')
    if elapsed is None and _is_number(now) and state.get('last_update') is not None:
        elapsed = now - state['last_update']
    if not _is_number(elapsed):
        return state
    return advance(state, elapsed, context, now if _is_number(now) else None)


# Payload helpers

def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _get_id(payload, key):
    value = payload.get(key)
    if isinstance(value, str) and value:
        return value
    return None


def _get_count(payload, key='count', default=1):
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        return None
    return value


def _add_clamped(resource, amount):
    resource['value'] = max(0.0, min(resource['max'], resource['value'] + amount))


# Pricing

def unit_price(base_cost, multiplier, owned):
    """Price of the unit bought when ``owned`` units are already held."""
    return math.floor(base_cost * multiplier ** owned)


def building_cost(building, count=1):
    """Total cost of the next ``count`` units, per resource.

    Each unit is priced ``floor(base * multiplier ** (owned + i))``.
    """
    owned = building.get('count', 0)
    multiplier = building.get('cost_multiplier', 1.0)
    return {
        resource_id: sum(unit_price(base, multiplier, owned + i) for i in range(count))
        for resource_id, base in building.get('cost', {}).items()
    }


def sell_refund(building, count=1, fraction=0.5):
    """Refund for selling ``count`` units.

    Each unit refunds ``fraction`` of the marginal cost at the count held
    just before that unit is sold, i.e. the price the next purchase would
    have cost at that moment.
    """
    owned = building.get('count', 0)
    multiplier = building.get('cost_multiplier', 1.0)
    return {
        resource_id: sum(fraction * unit_price(base, multiplier, owned - i)
                         for i in range(count))
        for resource_id, base in building.get('cost', {}).items()
    }


def can_afford(state, cost):
    resources = state['resources']
    return all(
        resource_id in resources and resources[resource_id]['value'] >= amount
        for resource_id, amount in cost.items()
    )


def _deduct(state, cost):
    for resource_id, amount in cost.items():
        resource = state['resources'][resource_id]
        resource['value'] = max(0.0, resource['value'] - amount)


def _apply_purchase_triggers(state, triggers, context):
    """Unlock everything a purchase declares in its ``unlocks_on_purchase`` table."""
    if not triggers:
        return
    for key, kind in (('resources', 'resource'), ('buildings', 'building'),
                      ('upgrades', 'upgrade'), ('features', 'feature')):
        for item_id in triggers.get(key, []):
            context.engine.unlock_item(state, item_id, kind)


# Upgrade effects bookkeeping

def merge_upgrade_effects(state, upgrade):
    """Fold an upgrade's effects into ``upgrade_effects`` once per upgrade id."""
    applied = state.setdefault('applied_upgrades', [])
    if upgrade['id'] in applied:
        return False
    effects = state.setdefault('upgrade_effects', {})
    for key, amount in upgrade.get('effects', {}).items():
        effects[key] = effects.get(key, 0.0) + amount
    applied.append(upgrade['id'])
    return True


def rebuild_upgrade_effects(state):
    """Re-derive ``upgrade_effects`` from the purchased flags."""
    state['upgrade_effects'] = {}
    state['applied_upgrades'] = []
    for upgrade in state['upgrades'].values():
        if upgrade.get('purchased'):
            merge_upgrade_effects(state, upgrade)
    return state


# Lifecycle

@handles('START_GAME')
def _start_game(state, payload, context):
    if state.get('game_started'):
        return None
    now = payload.get('now')
    state['game_started'] = True
    state['last_update'] = now if _is_number(now) else context.now()
    return state


@handles('RESET')
def _reset(state, payload, context):
    context.notify("Game progress has been reset", 'info')
    return new_state(context.loader)


@handles('LOAD')
def _load(state, payload, context):
    """Merge a persisted snapshot onto the template and re-derive flags."""
    snapshot = payload.get('snapshot')
    if not isinstance(snapshot, dict):
        return None
    loaded = merge_snapshot(new_state(context.loader), snapshot)
    normalize_flags(loaded)
    loaded['version'] = STATE_VERSION
    recompute(loaded, context.rules, context.settings)
    context.engine.evaluate(loaded)
    if context.engine.currency_rule is not None:
        apply_currency_counter_rule(loaded, context.engine.currency_rule)
    rebuild_upgrade_effects(loaded)
    if loaded.get('game_started'):
        now = payload.get('now')
        loaded['last_update'] = now if _is_number(now) else context.now()
    return loaded


@handles('PRESTIGE')
def _prestige(state, payload, context):
    """Restart from the template, keeping the accumulated prestige points."""
    prestige_rules = context.rules.get('prestige', {})
    params = state.get('mining_params', {})
    resources = state['resources']
    total = resources.get(CURRENCY, {}).get('value', 0.0)
    total += resources.get(BITCOIN, {}).get('value', 0.0) * params.get('exchange_rate', 0.0)
    gain = prestige_gain(
        total,
        prestige_rules.get('threshold', context.settings.PRESTIGE_THRESHOLD),
        prestige_rules.get('difficulty', context.settings.PRESTIGE_DIFFICULTY),
    )

    fresh = new_state(context.loader)
    fresh['prestige_points'] = state.get('prestige_points', 0) + gain
    fresh['game_started'] = state.get('game_started', False)
    fresh['last_update'] = state.get('last_update')
    context.notify(f"Prestige: +{gain} points", 'success')
    return fresh


# Buildings and upgrades

@handles('PURCHASE_BUILDING')
def _purchase_building(state, payload, context):
    building_id = _get_id(payload, 'building_id')
    count = _get_count(payload)
    building = state['buildings'].get(building_id)
    if building is None or count is None or not building.get('unlocked'):
        return None

    cost = building_cost(building, count)
    if not can_afford(state, cost):
        context.notify(f"Not enough resources for {building['name']}", 'warning')
        return None

    _deduct(state, cost)
    building['count'] += count
    _apply_purchase_triggers(state, building.get('unlocks_on_purchase'), context)
    return state


@handles('SELL_BUILDING')
def _sell_building(state, payload, context):
    building_id = _get_id(payload, 'building_id')
    count = _get_count(payload)
    building = state['buildings'].get(building_id)
    if building is None or count is None or building.get('count', 0) < count:
        return None

    refund = sell_refund(building, count, context.settings.SELL_REFUND_FRACTION)
    building['count'] -= count
    for resource_id, amount in refund.items():
        resource = state['resources'].get(resource_id)
        if resource is not None:
            _add_clamped(resource, amount)
    return state


@handles('PURCHASE_UPGRADE')
def _purchase_upgrade(state, payload, context):
    upgrade_id = _get_id(payload, 'upgrade_id')
    upgrade = state['upgrades'].get(upgrade_id)
    if upgrade is None or upgrade.get('purchased') or not upgrade.get('unlocked'):
        return None
    if not can_afford(state, upgrade.get('cost', {})):
        context.notify(f"Not enough resources for {upgrade['name']}", 'warning')
        return None

    _deduct(state, upgrade.get('cost', {}))
    upgrade['purchased'] = True
    merge_upgrade_effects(state, upgrade)
    _apply_purchase_triggers(state, upgrade.get('unlocks_on_purchase'), context)
    context.notify(f"Researched {upgrade['name']}", 'success')
    return state


# Conversions

def _knowledge_rules(context):
    rules = context.rules.get('knowledge', {})
    settings = context.settings
    return (rules.get('batch_size', settings.KNOWLEDGE_BATCH_SIZE),
            rules.get('batch_reward', settings.KNOWLEDGE_BATCH_REWARD),
            rules.get('learn_amount', settings.LEARN_AMOUNT))


def _apply_knowledge(state, context, all_batches):
    batch_size, batch_reward, _ = _knowledge_rules(context)
    knowledge = state['resources'].get(KNOWLEDGE)
    currency = state['resources'].get(CURRENCY)
    if knowledge is None or currency is None or knowledge['value'] < batch_size:
        return None

    batches = int(knowledge['value'] // batch_size) if all_batches else 1
    knowledge['value'] = max(0.0, knowledge['value'] - batches * batch_size)
    rate = batch_reward * (1.0 + sum_meta_effect(state, 'knowledge_efficiency_boost'))
    # Credited even while the currency is still hidden
    _add_clamped(currency, batches * rate)
    increment_counter(state, APPLY_KNOWLEDGE_COUNTER)
    return state


@handles('APPLY_KNOWLEDGE')
def _apply_one_batch(state, payload, context):
    return _apply_knowledge(state, context, all_batches=False)


@handles('APPLY_ALL_KNOWLEDGE')
def _apply_all_batches(state, payload, context):
    return _apply_knowledge(state, context, all_batches=True)


@handles('LEARN')
def _learn(state, payload, context):
    _, _, learn_amount = _knowledge_rules(context)
    knowledge = state['resources'].get(KNOWLEDGE)
    if knowledge is None or not knowledge.get('unlocked'):
        return None
    _add_clamped(knowledge, learn_amount)
    increment_counter(state, KNOWLEDGE_CLICKS_COUNTER)
    return state


@handles('MINE')
def _mine(state, payload, context):
    """Spend computing power for a fixed bitcoin reward."""
    params = state.get('mining_params', {})
    compute = state['resources'].get(COMPUTING_POWER)
    bitcoin = state['resources'].get(BITCOIN)
    if compute is None or bitcoin is None:
        return None
    if not compute.get('unlocked') or not bitcoin.get('unlocked'):
        return None
    compute_cost = params.get('mine_compute_cost', 0)
    if compute_cost <= 0 or compute['value'] < compute_cost:
        return None

    compute['value'] -= compute_cost
    reward = params.get('mine_reward', 0.0) * conversion_efficiency(state, BITCOIN, context.rules)
    _add_clamped(bitcoin, reward)
    return state


@handles('EXCHANGE_BTC')
def _exchange_btc(state, payload, context):
    """Sell bitcoin (all of it unless ``amount`` is given) for the currency."""
    params = state.get('mining_params', {})
    bitcoin = state['resources'].get(BITCOIN)
    currency = state['resources'].get(CURRENCY)
    if bitcoin is None or currency is None or bitcoin['value'] <= 0:
        return None

    amount = payload.get('amount')
    if amount is None:
        amount = bitcoin['value']
    elif not _is_number(amount) or amount <= 0 or amount > bitcoin['value']:
        return None

    rate = params.get('exchange_rate', 0.0)
    commission = min(1.0, max(0.0, params.get('exchange_commission', 0.0)))
    proceeds = amount * rate * (1.0 - commission)
    bitcoin['value'] = max(0.0, bitcoin['value'] - amount)
    _add_clamped(currency, proceeds)
    context.notify(f"Exchanged {amount:.8f} BTC for {proceeds:.2f} USDT", 'success')
    return state


# Referrals and helpers

def _find_referral(state, referral_id):
    for referral in state.get('referrals', []):
        if referral.get('id') == referral_id:
            return referral
    return None


def _find_helper(state, helper_record_id):
    for helper in state.get('referral_helpers', []):
        if helper.get('id') == helper_record_id:
            return helper
    return None


@handles('SET_REFERRAL_CODE')
def _set_referral_code(state, payload, context):
    code = _get_id(payload, 'code')
    if code is None or state.get('referral_code') == code:
        return None
    state['referral_code'] = code
    return state


@handles('SET_REFERRED_BY')
def _set_referred_by(state, payload, context):
    code = _get_id(payload, 'code')
    if code is None or state.get('referred_by'):
        return None
    user_id = context.user_id()
    if code == state.get('referral_code') or (user_id is not None and code == str(user_id)):
        return None
    state['referred_by'] = code
    return state


@handles('ADD_REFERRAL')
def _add_referral(state, payload, context):
    referral = payload.get('referral', payload)
    if not isinstance(referral, dict):
        return None
    referral_id = _get_id(referral, 'id')
    if referral_id is None or _find_referral(state, referral_id) is not None:
        return None
    user_id = context.user_id()
    if user_id is not None and referral_id == str(user_id):
        return None
    state.setdefault('referrals', []).append({
        'id': referral_id,
        'activated': bool(referral.get('activated', False)),
        'hired': False,
        'assigned_building_id': None,
    })
    return state


@handles('ACTIVATE_REFERRAL')
def _activate_referral(state, payload, context):
    referral_id = _get_id(payload, 'referral_id')
    if referral_id is None:
        return None
    user_id = context.user_id()
    if user_id is not None and referral_id == str(user_id):
        logger.debug("User %s tried to activate themselves as a referral", user_id)
        return None
    referral = _find_referral(state, referral_id)
    if referral is None or referral.get('activated'):
        return None
    referral['activated'] = True
    context.notify_once(f'referral:{referral_id}', f"Referral {referral_id} is now active", 'success')
    return state


@handles('UPDATE_REFERRAL_STATUS')
def _update_referral_status(state, payload, context):
    referral = _find_referral(state, _get_id(payload, 'referral_id'))
    if referral is None:
        return None
    changed = False
    for field in ('activated', 'hired'):
        value = payload.get(field)
        if isinstance(value, bool) and referral.get(field) != value:
            referral[field] = value
            changed = True
    if not changed:
        return None
    if not referral['hired']:
        referral['assigned_building_id'] = None
    return state


@handles('HIRE_REFERRAL_HELPER')
def _hire_referral_helper(state, payload, context):
    """Ask an activated referral to help out at one of our buildings."""
    referral_id = _get_id(payload, 'referral_id')
    building_id = _get_id(payload, 'building_id')
    referral = _find_referral(state, referral_id)
    building = state['buildings'].get(building_id)
    if referral is None or building is None:
        return None
    if not referral.get('activated') or referral.get('hired') or building.get('count', 0) < 1:
        return None
    helpers = state.setdefault('referral_helpers', [])
    if any(h.get('helper_id') == referral_id and h.get('status') == 'pending' for h in helpers):
        return None

    record_id = f'helper_{referral_id}_{building_id}'
    existing = _find_helper(state, record_id)
    if existing is not None:
        existing['status'] = 'pending'
    else:
        helpers.append({
            'id': record_id,
            'helper_id': referral_id,
            'building_id': building_id,
            'status': 'pending',
        })
    return state


@handles('RESPOND_TO_HELPER_REQUEST')
def _respond_to_helper_request(state, payload, context):
    helper = _find_helper(state, _get_id(payload, 'helper_request_id'))
    accepted = payload.get('accepted')
    if helper is None or not isinstance(accepted, bool) or helper.get('status') != 'pending':
        return None

    helper['status'] = 'accepted' if accepted else 'rejected'
    referral = _find_referral(state, helper.get('helper_id'))
    if accepted and referral is not None:
        referral['hired'] = True
        referral['assigned_building_id'] = helper.get('building_id')
    return state


@handles('UPDATE_HELPERS')
def _update_helpers(state, payload, context):
    """Replace the helper list with an externally synchronized one."""
    helpers = payload.get('helpers')
    if not isinstance(helpers, list):
        return None
    cleaned = [helper_record(helper) for helper in helpers]
    if any(record is None for record in cleaned):
        return None
    state['referral_helpers'] = cleaned
    for helper in cleaned:
        referral = _find_referral(state, helper['helper_id'])
        if referral is not None and helper['status'] == 'accepted':
            referral['hired'] = True
            referral['assigned_building_id'] = helper['building_id']
    return state


# Specialization and synergies

@handles('CHOOSE_SPECIALIZATION')
def _choose_specialization(state, payload, context):
    specialization = _get_id(payload, 'specialization')
    definitions = context.rules.get('specializations', {})
    if specialization not in definitions or state.get('specialization'):
        return None
    if not is_unlocked(state, 'specialization'):
        return None
    state['specialization'] = specialization
    context.notify(f"Specialization chosen: {definitions[specialization].get('name', specialization)}",
                   'success')
    return state


def synergy_requirements_met(state, definition):
    """Whether enough purchased upgrades of each required category are owned."""
    owned = {}
    for upgrade in state['upgrades'].values():
        if upgrade.get('purchased'):
            category = upgrade.get('category')
            owned[category] = owned.get(category, 0) + 1
    required = definition.get('required_categories', {})
    return bool(required) and all(owned.get(c, 0) >= n for c, n in required.items())


def _activate(state, synergy_id, context):
    definition = context.rules.get('synergies', {}).get(synergy_id)
    synergy = state.get('synergies', {}).get(synergy_id)
    if definition is None or synergy is None or synergy.get('active'):
        return False
    if not synergy_requirements_met(state, definition):
        return False
    synergy['active'] = True
    context.notify_once(f'synergy:{synergy_id}',
                        f"Synergy activated: {definition.get('name', synergy_id)}", 'success')
    return True


@handles('ACTIVATE_SYNERGY')
def _activate_synergy(state, payload, context):
    synergy_id = _get_id(payload, 'synergy_id')
    if synergy_id is None or not _activate(state, synergy_id, context):
        return None
    return state


@handles('CHECK_SYNERGIES')
def _check_synergies(state, payload, context):
    activated = [sid for sid in list(state.get('synergies', {})) if _activate(state, sid, context)]
    return state if activated else None


# Counters

@handles('INCREMENT_COUNTER')
def _increment_counter(state, payload, context):
    counter_id = _get_id(payload, 'counter_id')
    amount = payload.get('value', 1)
    if counter_id is None or not _is_number(amount) or amount <= 0:
        return None
    before = get_counter_value(state, counter_id)
    increment_counter(state, counter_id, amount)
    logger.debug("Counter %s: %s -> %s", counter_id, before, before + amount)
    return state

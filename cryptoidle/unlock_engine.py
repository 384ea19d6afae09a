"""Unlock engine: evaluates declarative unlock conditions to a fixed point."""
import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptoidle.config import Config
from cryptoidle.state import get_counter_value, increment_counter

logger = logging.getLogger(__name__)

CONDITION_TYPES = ('resource', 'building', 'upgrade', 'counter')
ITEM_KINDS = ('resource', 'building', 'upgrade', 'feature')
OPERATORS = {
    'gte': lambda current, target: current >= target,
    'eq': lambda current, target: current == target,
    'lte': lambda current, target: current <= target,
}

# Resources that only ever unlock through a specific building being owned.
# They are never part of the generic registry scan
GRID_POWER_GATES = {'electricity': 'generator'}

# Bumped once per building unlock; the "equipment" tab depends on it
BUILDINGS_UNLOCKED_COUNTER = 'buildings_unlocked'

KIND_TO_MAP = {'resource': 'resources', 'building': 'buildings', 'upgrade': 'upgrades'}


@dataclass(frozen=True)
class UnlockCondition:
    id: str
    type: str
    target_id: str
    operator: str = 'gte'
    target_value: float = 1

    @classmethod
    def from_dict(cls, data, owner_id='item', index=0, counter_thresholds=None):
        """Build a condition; counter conditions without a target_value take
        the shared threshold of their counter from ``counter_thresholds``."""
        condition_type = data.get('type', '')
        target_id = data.get('target_id', '')
        default = 1
        if condition_type == 'counter' and counter_thresholds:
            default = counter_thresholds.get(target_id, 1)
        return cls(
            id=data.get('id') or f'{owner_id}_{index}',
            type=condition_type,
            target_id=target_id,
            operator=data.get('operator', 'gte'),
            target_value=data.get('target_value', default),
        )


@dataclass(frozen=True)
class UnlockableItem:
    id: str
    kind: str
    conditions: Tuple[UnlockCondition, ...] = ()
    name: Optional[str] = None
    auto_unlock: bool = True
    influences_others: bool = False

    @classmethod
    def from_dict(cls, data, counter_thresholds=None):
        item_id = data['id']
        conditions = tuple(
            UnlockCondition.from_dict(c, item_id, i, counter_thresholds)
            for i, c in enumerate(data.get('conditions', []))
        )
        return cls(
            id=item_id,
            kind=data.get('kind', 'feature'),
            conditions=conditions,
            name=data.get('name'),
            auto_unlock=data.get('auto_unlock', True),
            influences_others=data.get('influences_others', False),
        )


@dataclass(frozen=True)
class UnlockEvent:
    item_id: str
    kind: str
    name: str


@dataclass(frozen=True)
class CurrencyCounterRule:
    """The currency resource is unlocked exactly when its counter reaches threshold.

    Used forwards as an ordinary registry entry, and on load as the one rule
    allowed to relock an item, so that the flag is re-derived from the
    counter instead of trusted from the save.
    """
    resource_id: str = 'usdt'
    counter_id: str = 'apply_knowledge'
    threshold: int = Config.CURRENCY_UNLOCK_COUNTER_THRESHOLD

    def as_item(self):
        condition = UnlockCondition(
            id=f'{self.resource_id}_{self.counter_id}',
            type='counter',
            target_id=self.counter_id,
            operator='gte',
            target_value=self.threshold,
        )
        return UnlockableItem(
            id=self.resource_id,
            kind='resource',
            conditions=(condition,),
            influences_others=True,
        )

    def should_be_unlocked(self, state):
        return get_counter_value(state, self.counter_id) >= self.threshold


def apply_currency_counter_rule(state, rule):
    """Force the currency resource's flag to match its counter, in place.

    Args:
        state: Game state to reconcile
        rule: CurrencyCounterRule

    Returns:
        True if the flag changed
    """
    resource = state.get('resources', {}).get(rule.resource_id)
    if resource is None:
        return False
    expected = rule.should_be_unlocked(state)
    if bool(resource.get('unlocked')) == expected:
        return False
    resource['unlocked'] = expected
    state.setdefault('unlocks', {})[rule.resource_id] = expected
    logger.info("Currency %s %s by counter rule (%s=%s, threshold %s)",
                rule.resource_id, 'unlocked' if expected else 'relocked',
                rule.counter_id, get_counter_value(state, rule.counter_id), rule.threshold)
    return True


class UnlockEngine:
    """Applies locked -> unlocked transitions for every registry entry.

    The engine mutates the state it is given; callers that need purity hand
    it a copy (the reducer and tick loop both do).
    """

    def __init__(self, items, sink=None, clock=None, cache_ttl=None,
                 currency_rule=None, power_gates=None):
        """Initialize the unlock engine.

        Args:
            items: Iterable of UnlockableItem (registry, evaluation order)
            sink: NotificationSink receiving one message per unlock
            clock: Callable returning seconds, used for the condition cache
            cache_ttl: Max age of a cached condition result in seconds
            currency_rule: CurrencyCounterRule; its item is added to the registry
            power_gates: Resource id -> gating building id
        """
        self.currency_rule = currency_rule
        registry = list(items)
        if currency_rule is not None:
            registry = [i for i in registry if i.id != currency_rule.resource_id]
            registry.insert(0, currency_rule.as_item())
        self.power_gates = dict(GRID_POWER_GATES if power_gates is None else power_gates)
        # Gated resources never go through generic evaluation
        self.items = [i for i in registry
                      if not (i.kind == 'resource' and i.id in self.power_gates)]
        self.sink = sink
        self.clock = clock or time.monotonic
        self.cache_ttl = Config.CONDITION_CACHE_TTL if cache_ttl is None else cache_ttl
        self._cache = {}
        self._state_ref = None
        self.last_report = {}

    @classmethod
    def from_loader(cls, loader, sink=None, clock=None, settings=None):
        """Build an engine from the loader's unlock table and economic rules."""
        settings = settings or Config
        rule_data = loader.load_economic_rules().get('currency_counter_rule', {})
        rule = CurrencyCounterRule(
            resource_id=rule_data.get('resource_id', 'usdt'),
            counter_id=rule_data.get('counter_id', 'apply_knowledge'),
            threshold=settings.CURRENCY_UNLOCK_COUNTER_THRESHOLD,
        )
        # Counter conditions on the rule's counter share its threshold
        thresholds = {rule.counter_id: rule.threshold}
        items = [UnlockableItem.from_dict(entry, thresholds) for entry in loader.load_unlocks()]
        return cls(items, sink=sink, clock=clock,
                   cache_ttl=settings.CONDITION_CACHE_TTL, currency_rule=rule)

    def clear_cache(self):
        self._cache.clear()

    def _read_condition_value(self, state, condition):
        """Read the state field a condition compares against, None if missing."""
        if condition.type == 'resource':
            resource = state.get('resources', {}).get(condition.target_id)
            # A hidden resource cannot satisfy a threshold yet
            if resource is None or not resource.get('unlocked'):
                return None
            return resource.get('value', 0)
        if condition.type == 'building':
            building = state.get('buildings', {}).get(condition.target_id)
            return None if building is None else building.get('count', 0)
        if condition.type == 'upgrade':
            upgrade = state.get('upgrades', {}).get(condition.target_id)
            return None if upgrade is None else int(bool(upgrade.get('purchased')))
        if condition.type == 'counter':
            counter = state.get('counters', {}).get(condition.target_id)
            return None if counter is None else counter.get('value', 0)
        return None

    def evaluate_condition(self, state, condition):
        """Evaluate one condition; unknown types and missing targets are False."""
        now = self.clock()
        cached = self._cache.get(condition.id)
        if cached is not None and now - cached[1] <= self.cache_ttl:
            return cached[0]

        result = False
        compare = OPERATORS.get(condition.operator)
        if compare is None:
            logger.debug("Unknown operator %r in condition %s", condition.operator, condition.id)
        else:
            current = self._read_condition_value(state, condition)
            if current is not None:
                try:
                    result = bool(compare(current, condition.target_value))
                except TypeError:
                    result = False
        self._cache[condition.id] = (result, now)
        return result

    def is_item_unlocked(self, state, item_id, kind):
        map_name = KIND_TO_MAP.get(kind)
        if map_name is not None:
            entity = state.get(map_name, {}).get(item_id)
            if entity is not None:
                return bool(entity.get('unlocked'))
        return bool(state.get('unlocks', {}).get(item_id))

    def _display_name(self, state, item_id, kind, fallback=None):
        map_name = KIND_TO_MAP.get(kind)
        entity = state.get(map_name, {}).get(item_id) if map_name else None
        if entity is not None:
            return entity.get('name', item_id)
        return fallback or item_id.replace('_', ' ').title()

    def unlock_item(self, state, item_id, kind=None, name=None):
        """Unlock one item in place, notifying exactly once.

        Args:
            state: Game state
            item_id: Resource, building, upgrade or feature id
            kind: Item kind; looked up from the state maps when omitted

        Returns:
            UnlockEvent if the item transitioned, None if it was already
            unlocked or does not exist
        """
        if kind is None:
            kind = 'feature'
            for candidate, map_name in KIND_TO_MAP.items():
                if item_id in state.get(map_name, {}):
                    kind = candidate
                    break
        if kind not in ITEM_KINDS:
            return None

        map_name = KIND_TO_MAP.get(kind)
        if map_name is not None and item_id not in state.get(map_name, {}):
            logger.debug("Unlock target %s missing from %s", item_id, map_name)
            return None
        if self.is_item_unlocked(state, item_id, kind):
            return None

        if map_name is not None:
            state[map_name][item_id]['unlocked'] = True
        state.setdefault('unlocks', {})[item_id] = True
        if kind == 'building':
            increment_counter(state, BUILDINGS_UNLOCKED_COUNTER)

        event = UnlockEvent(item_id=item_id, kind=kind,
                            name=self._display_name(state, item_id, kind, name))
        logger.debug("Unlocked %s %s", kind, item_id)
        if self.sink is not None:
            try:
                self.sink.emit(f"Unlocked: {event.name}", 'success')
            except Exception:
                logger.exception("Notification sink failed for unlock of %s", item_id)
        return event

    def apply_power_gates(self, state):
        """Unlock gated resources whose gating building is owned."""
        events = []
        for resource_id, building_id in self.power_gates.items():
            building = state.get('buildings', {}).get(building_id)
            if building is None or building.get('count', 0) < 1:
                continue
            event = self.unlock_item(state, resource_id, 'resource')
            if event is not None:
                events.append(event)
        return events

    def evaluate(self, state):
        """Run the registry to a fixed point, unlocking in place.

        A pass that unlocks an item flagged ``influences_others`` or a
        building (which bumps the buildings_unlocked counter) triggers another
        pass; the number of passes is bounded by the registry size.

        Args:
            state: Game state (mutated)

        Returns:
            List of UnlockEvent, in unlock order
        """
        if state is not self._state_ref:
            self._cache.clear()
            self._state_ref = state

        events = []
        steps = 0
        try:
            events.extend(self.apply_power_gates(state))
            max_passes = len(self.items) + 1
            while steps < max_passes:
                steps += 1
                rescan = False
                for item in self.items:
                    if not item.auto_unlock or self.is_item_unlocked(state, item.id, item.kind):
                        continue
                    if not item.conditions:
                        continue
                    if all(self.evaluate_condition(state, c) for c in item.conditions):
                        event = self.unlock_item(state, item.id, item.kind, item.name)
                        if event is None:
                            continue
                        events.append(event)
                        if item.influences_others or item.kind == 'building':
                            rescan = True
                if not rescan:
                    break
                self._cache.clear()
        except Exception:
            logger.exception("Unlock evaluation failed; keeping unlocks applied so far")

        self.last_report = {
            'steps': steps,
            'unlocked': [e.item_id for e in events],
            'still_locked': [i.id for i in self.items
                             if not self.is_item_unlocked(state, i.id, i.kind)],
        }
        return events

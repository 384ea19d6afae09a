"""Tick loop: advances the simulation by elapsed wall-clock time."""
import copy
import logging
import threading

from cryptoidle.production import recompute
from cryptoidle.state import clamp, new_state

logger = logging.getLogger(__name__)

IDLE = 'idle'
RUNNING = 'running'


def update_shortages(state, context):
    """Flip per-resource shortage flags in place, notifying once per transition.

    A shortage begins when an unlocked resource with a negative net rate has
    been drained to zero while something consumes it. It ends once the stock
    covers one second of the consumers' demand, so that a resource hovering
    around zero does not flap every tick.

    Returns:
        List of ``(resource_id, started)`` transitions
    """
    shortages = state.setdefault('shortages', {})
    transitions = []
    for resource_id, resource in state['resources'].items():
        demand = resource.get('demand', 0.0)
        if not shortages.get(resource_id):
            if (resource.get('unlocked') and demand > 0
                    and resource.get('per_second', 0.0) < 0 and resource['value'] <= 0):
                shortages[resource_id] = True
                transitions.append((resource_id, True))
                context.notify(f"Not enough {resource['name']}: dependent equipment has stopped",
                               'warning')
        elif demand <= 0 or resource['value'] >= min(demand, resource['max']):
            shortages[resource_id] = False
            transitions.append((resource_id, False))
            context.notify(f"{resource['name']} supply restored", 'info')
    return transitions


def next_shortage_transition(state):
    """Earliest time at which a shortage would begin or end at current rates.

    A shortage begins when a consumed resource drains to zero and ends when
    its stock reaches one second of demand.

    Returns:
        ``(seconds, resource_id, value_at_transition)`` or None
    """
    shortages = state.get('shortages', {})
    earliest = None
    for resource_id, resource in state['resources'].items():
        if not resource.get('unlocked'):
            continue
        rate = resource['per_second']
        value = resource['value']
        if not shortages.get(resource_id):
            if rate >= 0 or value <= 0 or resource.get('demand', 0.0) <= 0:
                continue
            target = 0.0
            seconds = value / -rate
        else:
            target = min(resource.get('demand', 0.0), resource['max'])
            if rate <= 0 or value >= target:
                continue
            seconds = (target - value) / rate
        if earliest is None or seconds < earliest[0]:
            earliest = (seconds, resource_id, target)
    return earliest


def _integrate(state, elapsed, snap=None):
    resources = state['resources']
    for resource in resources.values():
        if not resource.get('unlocked'):
            continue
        net = resource['per_second'] - resource['conversion_rate']
        resource['value'] = clamp(resource['value'] + net * elapsed, 0.0, resource['max'])

    # Conversion output, kept separate from direct production
    for resource in resources.values():
        if resource.get('unlocked') and resource['conversion_rate']:
            resource['value'] = clamp(
                resource['value'] + resource['conversion_rate'] * elapsed, 0.0, resource['max'])

    if snap is not None:
        # Land exactly on the transition point so rounding cannot skip it
        resource_id, target = snap
        resource = resources[resource_id]
        resource['value'] = clamp(target, 0.0, resource['max'])


def advance(state, elapsed, context, now=None):
    """Apply ``elapsed`` seconds of production to a copy of ``state``.

    Rates are constant between shortage transitions, so the interval is
    split wherever a consumed resource runs out or recovers, and shortage
    flags, unlocks and rates are refreshed at each split. One large
    catch-up step therefore lands where many small steps would.

    Args:
        state: Current game state (not modified)
        elapsed: Seconds to simulate
        context: SessionContext
        now: Timestamp stored as last_update; defaults to last_update + elapsed

    Returns:
        New state, or the input state itself when elapsed <= 0 or on error
    """
    if elapsed is None or elapsed <= 0:
        return state
    try:
        next_state = copy.deepcopy(state)
        rules = context.rules
        settings = context.settings
        recompute(next_state, rules, settings)

        remaining = elapsed
        segments = 0
        while remaining > 0:
            segments += 1
            step, snap = remaining, None
            if segments < settings.MAX_TICK_SEGMENTS:
                transition = next_shortage_transition(next_state)
                if transition is not None and 0 < transition[0] < remaining:
                    step, snap = transition[0], transition[1:]
            _integrate(next_state, step, snap)
            remaining = remaining - step if snap is not None else 0.0

            update_shortages(next_state, context)
            context.engine.evaluate(next_state)
            # Leave rates consistent with the new unlocks and shortages
            recompute(next_state, rules, settings)

        if segments >= settings.MAX_TICK_SEGMENTS:
            logger.warning("Tick of %.1fs hit the %d segment limit; remainder applied at once",
                           elapsed, settings.MAX_TICK_SEGMENTS)

        if now is None:
            now = (state.get('last_update') or 0.0) + elapsed
        next_state['last_update'] = now
        next_state['game_time'] = next_state.get('game_time', 0.0) + elapsed
        return next_state
    except Exception:
        logger.exception("Tick of %.3fs failed; keeping previous state", elapsed)
        return state


class TickLoop:
    """Owns one session's state and serializes ticks with dispatched actions.

    Status is IDLE until the game is started and RUNNING afterwards; updates
    while idle are ignored.
    """

    def __init__(self, context, state=None, autosave=True):
        """Initialize the loop.

        Args:
            context: SessionContext
            state: Existing state; a fresh template state when None
            autosave: Request a (throttled) save after every update
        """
        self.context = context
        if state is None:
            state = recompute(new_state(context.loader), context.rules, context.settings)
        self.state = state
        self.status = RUNNING if state.get('game_started') else IDLE
        self.autosave = autosave
        self._lock = threading.RLock()

    def start(self, now=None):
        """Transition IDLE -> RUNNING and stamp last_update."""
        with self._lock:
            if self.status == RUNNING:
                return self.state
            self.dispatch({'type': 'START_GAME', 'payload': {'now': now}})
            return self.state

    def update(self, now=None):
        """Advance by the time elapsed since the last update."""
        with self._lock:
            if self.status != RUNNING:
                return self.state
            if now is None:
                now = self.context.now()
            last_update = self.state.get('last_update')
            if last_update is None:
                self.state = dict(self.state, last_update=now)
                return self.state
            self.state = advance(self.state, now - last_update, self.context, now)
            if self.autosave:
                self.context.saver.request_save(self.state)
            return self.state

    def dispatch(self, action):
        """Run one action through the reducer against the loop's state."""
        from cryptoidle.reducer import reduce

        with self._lock:
            self.state = reduce(self.state, action, self.context)
            self.status = RUNNING if self.state.get('game_started') else IDLE
            return self.state

    def save(self, force=False):
        with self._lock:
            return self.context.saver.request_save(self.state, force=force)

    def restore(self):
        """Load the persisted snapshot; keep the in-memory state if there is none."""
        snapshot = self.context.saver.load()
        if snapshot is None:
            return self.state
        return self.dispatch({'type': 'LOAD', 'payload': {'snapshot': snapshot}})


class PeriodicDriver:
    """Background thread calling ``loop.update()`` every ``interval`` seconds."""

    def __init__(self, loop, interval=None):
        self.loop = loop
        self.interval = interval or loop.context.settings.TICK_INTERVAL
        self._stop = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.loop.update()
            except Exception:
                logger.exception("Periodic update failed")

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

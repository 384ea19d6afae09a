"""Per-session runtime context handed to the reducer and tick loop.

Everything that would otherwise be a process-wide flag (save in progress,
last save time, notifications already shown) lives on the context, so two
sessions never share mutable state.
"""
import logging
import time
from concurrent.futures import TimeoutError as FutureTimeoutError

from cryptoidle.config import Config
from cryptoidle.game_data_loader import get_game_data_loader
from cryptoidle.interfaces import LoggingNotificationSink, MemoryPersistence, StaticIdentity
from cryptoidle.state import to_snapshot
from cryptoidle.unlock_engine import UnlockEngine

logger = logging.getLogger(__name__)


class SaveCoordinator:
    """Throttles and isolates persistence writes.

    A save is skipped while another is still running or when the previous
    successful save is younger than ``min_interval``. Writes go through the
    optional executor so the simulation never waits on them; failures are
    logged and surfaced as a warning notification only.
    """

    def __init__(self, persistence, notify=None, clock=None, min_interval=None,
                 timeout=None, executor=None):
        self.persistence = persistence
        self.notify = notify
        self.clock = clock or time.time
        self.min_interval = Config.MIN_SAVE_INTERVAL if min_interval is None else min_interval
        self.timeout = Config.SAVE_TIMEOUT if timeout is None else timeout
        self.executor = executor
        self.save_in_progress = False
        self.last_save_time = None
        self.failures = 0

    def can_save(self, force=False):
        if self.save_in_progress:
            return False
        if force or self.last_save_time is None:
            return True
        return self.clock() - self.last_save_time >= self.min_interval

    def request_save(self, state, force=False):
        """Persist a snapshot of ``state`` unless throttled.

        Args:
            state: Current game state (a snapshot is taken immediately)
            force: Ignore the minimum interval (still respects an in-flight save)

        Returns:
            True if a write was started
        """
        if self.persistence is None or not self.can_save(force):
            return False
        snapshot = to_snapshot(state)
        snapshot['last_saved'] = self.clock()
        self.save_in_progress = True
        if self.executor is not None:
            future = self.executor.submit(self._write, snapshot)
            future.add_done_callback(self._log_future_error)
        else:
            self._write(snapshot)
        return True

    def _write(self, snapshot):
        ok = False
        try:
            ok = bool(self.persistence.save(snapshot))
        except Exception:
            logger.exception("Saving game state failed")
        finally:
            self.save_in_progress = False
        if ok:
            self.last_save_time = snapshot['last_saved']
        else:
            self.failures += 1
            logger.warning("Game state was not saved; continuing with in-memory state")
            if self.notify is not None:
                self.notify("Progress could not be saved, will retry", 'warning')
        return ok

    @staticmethod
    def _log_future_error(future):
        error = future.exception()
        if error is not None:
            logger.error("Background save crashed: %s", error)

    def load(self):
        """Fetch the persisted snapshot; None on failure or timeout."""
        if self.persistence is None:
            return None
        try:
            if self.executor is not None:
                return self.executor.submit(self.persistence.load).result(timeout=self.timeout)
            return self.persistence.load()
        except FutureTimeoutError:
            logger.warning("Loading game state timed out after %ss", self.timeout)
        except Exception:
            logger.exception("Loading game state failed")
        return None

    def clear(self):
        if self.persistence is None:
            return False
        try:
            return bool(self.persistence.clear())
        except Exception:
            logger.exception("Clearing saved game state failed")
            return False


class SessionContext:
    """Explicit collaborators and runtime flags for one game session."""

    def __init__(self, loader=None, sink=None, persistence=None, identity=None,
                 clock=None, settings=None, executor=None, engine=None):
        """Initialize the session context.

        Args:
            loader: GameDataLoader with the static definitions
            sink: NotificationSink (logging sink by default)
            persistence: PersistenceBackend (in-memory by default)
            identity: IdentityProvider (guest by default)
            clock: Callable returning epoch seconds; injectable for tests
            settings: Config class with tuning constants
            executor: Optional concurrent.futures executor for saves/loads
            engine: Pre-built UnlockEngine (built from the loader otherwise)
        """
        self.loader = loader or get_game_data_loader()
        self.sink = sink or LoggingNotificationSink()
        self.persistence = persistence if persistence is not None else MemoryPersistence()
        self.identity = identity or StaticIdentity()
        self.clock = clock or time.time
        self.settings = settings or Config
        self.shown_notifications = set()
        self.engine = engine or UnlockEngine.from_loader(
            self.loader, sink=self.sink, clock=self.clock, settings=self.settings)
        self.saver = SaveCoordinator(
            self.persistence,
            notify=self.notify,
            clock=self.clock,
            min_interval=self.settings.MIN_SAVE_INTERVAL,
            timeout=self.settings.SAVE_TIMEOUT,
            executor=executor,
        )

    @property
    def rules(self):
        return self.loader.load_economic_rules()

    def now(self):
        return self.clock()

    def notify(self, message, severity='info'):
        try:
            self.sink.emit(message, severity)
        except Exception:
            logger.exception("Notification sink failed for %r", message)

    def notify_once(self, key, message, severity='info'):
        """Emit a notification only the first time ``key`` is seen this session."""
        if key in self.shown_notifications:
            return False
        self.shown_notifications.add(key)
        self.notify(message, severity)
        return True

    def user_id(self):
        """Current player's id from the identity collaborator, None on failure."""
        try:
            return self.identity.user_id()
        except Exception:
            logger.exception("Identity lookup failed")
            return None

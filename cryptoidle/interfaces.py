"""Collaborators the simulation core talks to: persistence, notifications, identity."""
import copy
import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

SEVERITIES = ('info', 'success', 'warning', 'error')


class PersistenceBackend(ABC):
    """Stores and retrieves state snapshots. Failures are never fatal to the game."""

    @abstractmethod
    def save(self, snapshot):
        """Persist a JSON-safe snapshot; return True on success."""

    @abstractmethod
    def load(self):
        """Return the last persisted snapshot, or None."""

    @abstractmethod
    def clear(self):
        """Drop any persisted snapshot; return True on success."""


class NotificationSink(ABC):
    """One-directional channel for player-facing messages."""

    @abstractmethod
    def emit(self, message, severity='info'):
        pass


class IdentityProvider(ABC):
    """Supplies the stable opaque id of the current player."""

    @abstractmethod
    def user_id(self):
        pass


class LoggingNotificationSink(NotificationSink):
    """Routes notifications to the module logger."""

    LEVELS = {
        'info': logging.INFO,
        'success': logging.INFO,
        'warning': logging.WARNING,
        'error': logging.ERROR,
    }

    def __init__(self, log=None):
        self.log = log or logger

    def emit(self, message, severity='info'):
        self.log.log(self.LEVELS.get(severity, logging.INFO), "[%s] %s", severity, message)


class CollectingNotificationSink(NotificationSink):
    """Keeps every notification in memory; handy for API responses and tests."""

    def __init__(self):
        self.messages = []

    def emit(self, message, severity='info'):
        self.messages.append((message, severity))

    def drain(self):
        """Return and forget the collected messages."""
        messages, self.messages = self.messages, []
        return messages


class MemoryPersistence(PersistenceBackend):
    """Keeps the last snapshot in process memory."""

    def __init__(self, snapshot=None):
        self.snapshot = copy.deepcopy(snapshot)
        self.saves = 0

    def save(self, snapshot):
        self.snapshot = copy.deepcopy(snapshot)
        self.saves += 1
        return True

    def load(self):
        return copy.deepcopy(self.snapshot)

    def clear(self):
        self.snapshot = None
        return True


class StaticIdentity(IdentityProvider):
    """Identity provider returning a fixed id (None for guests)."""

    def __init__(self, user_id=None):
        self._user_id = user_id

    def user_id(self):
        return self._user_id

"""Database-backed persistence for game state snapshots."""
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from cryptoidle.interfaces import PersistenceBackend
from cryptoidle.models import db, GameSession

logger = logging.getLogger(__name__)


class SqlAlchemyPersistence(PersistenceBackend):
    """Stores snapshots in ``GameSession.game_state``. Needs an app context."""

    def __init__(self, session_id):
        self.session_id = session_id

    def _get_session(self):
        return db.session.get(GameSession, self.session_id)

    def save(self, snapshot):
        session = self._get_session()
        if session is None:
            logger.warning("Cannot save: game session %s does not exist", self.session_id)
            return False
        try:
            session.game_state = snapshot
            session.prestige_points = snapshot.get('prestige_points', 0)
            session.saved_at = datetime.utcnow()
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Saving game session %s failed", self.session_id)
            return False
        return True

    def load(self):
        session = self._get_session()
        if session is None or not session.game_state:
            return None
        return session.game_state

    def clear(self):
        session = self._get_session()
        if session is None:
            return False
        try:
            session.game_state = {}
            session.prestige_points = 0
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Clearing game session %s failed", self.session_id)
            return False
        return True

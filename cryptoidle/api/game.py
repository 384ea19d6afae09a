"""Game API endpoints.

Each request rebuilds the session's simulation from its stored snapshot,
catches it up to the current time, applies the request and stores the
result again.
"""
import logging

from flask import Blueprint, current_app, request, jsonify
from cryptoidle.auth import TokenIdentity, get_current_user
from cryptoidle.game_data_loader import get_game_data_loader
from cryptoidle.interfaces import CollectingNotificationSink
from cryptoidle.models import db, GameSession, ActionLog
from cryptoidle.persistence import SqlAlchemyPersistence
from cryptoidle.production import production_breakdown
from cryptoidle.reducer import building_cost
from cryptoidle.session import SessionContext
from cryptoidle.state import to_snapshot
from cryptoidle.tick_loop import TickLoop

logger = logging.getLogger(__name__)

game_bp = Blueprint('game', __name__)

def build_context(session, user=None):
    """Session context wired to the database and the requesting user."""
    return SessionContext(
        loader=get_game_data_loader(),
        sink=CollectingNotificationSink(),
        persistence=SqlAlchemyPersistence(session.id),
        identity=TokenIdentity(user),
        settings=current_app.config.get('GAME_SETTINGS'),
    )

class UnreadableSaveError(Exception):
    """The stored snapshot was rejected by LOAD; it must not be overwritten."""

    def __init__(self, session_id):
        super().__init__(f"Stored game state of session {session_id} could not be loaded")
        self.session_id = session_id

@game_bp.app_errorhandler(UnreadableSaveError)
def unreadable_save(error):
    db.session.rollback()
    logger.error("%s; leaving the stored snapshot untouched", error)
    return jsonify({'error': str(error)}), 409

def load_loop(session, context, catch_up=True):
    """Rebuild a TickLoop from the stored snapshot, optionally catching up.

    Raises:
        UnreadableSaveError: if a stored snapshot exists but LOAD rejected it
    """
    loop = TickLoop(context, autosave=False)
    snapshot = session.game_state
    if snapshot:
        before = loop.state
        # Keep the stored timestamp so the update below covers the offline gap
        loop.dispatch({'type': 'LOAD', 'payload': {
            'snapshot': snapshot,
            'now': snapshot.get('last_update') if isinstance(snapshot, dict) else None,
        }})
        if loop.state is before:
            raise UnreadableSaveError(session.id)
    if catch_up:
        loop.update()
    return loop

def authorize(session, user):
    """Return an error response if ``user`` may not touch ``session``."""
    if session.user_id and (user is None or session.user_id != user.id):
        return jsonify({'error': 'Unauthorized'}), 403
    return None

def view_state(state):
    """Snapshot plus the price of the next unit of every building."""
    snapshot = to_snapshot(state)
    snapshot['building_costs'] = {
        building_id: building_cost(building)
        for building_id, building in state['buildings'].items()
    }
    return snapshot

def respond(loop, context, **extra):
    body = {
        'game_state': view_state(loop.state),
        'notifications': [
            {'message': message, 'severity': severity}
            for message, severity in context.sink.drain()
        ],
    }
    body.update(extra)
    return jsonify(body)

def get_session_from_request(data):
    session_id = data.get('session_id')
    if not session_id:
        return None, (jsonify({'error': 'Missing session_id'}), 400)
    session = db.session.get(GameSession, session_id)
    if session is None:
        return None, (jsonify({'error': 'Game session not found'}), 404)
    return session, None

def run_action(session, user, action, restore=True):
    """Apply one action to a stored session and persist the outcome.

    Args:
        restore: Start from the stored snapshot; RESET skips it so that an
            unreadable save can still be discarded

    Returns:
        (loop, context, accepted)
    """
    context = build_context(session, user)
    if restore:
        loop = load_loop(session, context)
    else:
        loop = TickLoop(context, autosave=False)
    before = loop.state
    loop.dispatch(action)
    accepted = loop.state is not before

    if accepted:
        sequence = ActionLog.query.filter_by(session_id=session.id).count()
        db.session.add(ActionLog(
            session_id=session.id,
            action_type=action.get('type'),
            action_data=action.get('payload') or {},
            game_time=loop.state.get('game_time', 0.0),
            sequence_number=sequence + 1
        ))
    # Always store the caught-up state, even for rejected actions
    loop.save(force=True)
    return loop, context, accepted

@game_bp.route('/start', methods=['POST'])
def start_game():
    """Start a new game session (guest mode allowed)."""
    user = get_current_user()
    session = GameSession(user_id=user.id if user else None)
    db.session.add(session)
    db.session.commit()

    context = build_context(session, user)
    loop = TickLoop(context, autosave=False)
    loop.start()
    loop.save(force=True)

    return respond(loop, context, session_id=session.id), 201

@game_bp.route('/state/<int:session_id>', methods=['GET'])
def get_game_state(session_id):
    """Current state, advanced by the time passed since the last visit."""
    session = db.get_or_404(GameSession, session_id)
    user = get_current_user()
    error = authorize(session, user)
    if error:
        return error

    context = build_context(session, user)
    loop = load_loop(session, context)
    loop.save(force=True)
    return respond(loop, context)

@game_bp.route('/action', methods=['POST'])
def game_action():
    """Dispatch one action: {session_id, action: {type, payload}}."""
    data = request.get_json(silent=True) or {}
    session, error = get_session_from_request(data)
    if error:
        return error
    user = get_current_user()
    error = authorize(session, user)
    if error:
        return error

    action = data.get('action')
    if not isinstance(action, dict) or not action.get('type'):
        return jsonify({'error': 'Missing action type'}), 400

    try:
        loop, context, accepted = run_action(session, user, action)
        db.session.commit()
    except UnreadableSaveError:
        raise
    except Exception as e:
        db.session.rollback()
        logger.exception("Action %s failed for session %s", action.get('type'), session.id)
        return jsonify({'error': str(e)}), 400
    return respond(loop, context, success=accepted)

@game_bp.route('/save', methods=['POST'])
def save_game():
    """Store a client-side snapshot after validating it against the template."""
    data = request.get_json(silent=True) or {}
    session, error = get_session_from_request(data)
    if error:
        return error
    user = get_current_user()
    error = authorize(session, user)
    if error:
        return error

    game_state = data.get('game_state')
    if not isinstance(game_state, dict):
        return jsonify({'error': 'Missing game_state'}), 400

    context = build_context(session, user)
    loop = TickLoop(context, autosave=False)
    loop.dispatch({'type': 'LOAD', 'payload': {
        'snapshot': game_state,
        'now': game_state.get('last_update'),
    }})
    saved = loop.save(force=True)
    return respond(loop, context, success=saved)

@game_bp.route('/load', methods=['POST'])
def load_game():
    """Restore the stored snapshot without advancing time."""
    data = request.get_json(silent=True) or {}
    session, error = get_session_from_request(data)
    if error:
        return error
    user = get_current_user()
    error = authorize(session, user)
    if error:
        return error

    context = build_context(session, user)
    loop = TickLoop(context, autosave=False)
    loop.restore()
    return respond(loop, context, session_id=session.id)

@game_bp.route('/reset', methods=['POST'])
def reset_game():
    """Discard all progress of a session."""
    data = request.get_json(silent=True) or {}
    session, error = get_session_from_request(data)
    if error:
        return error
    user = get_current_user()
    error = authorize(session, user)
    if error:
        return error

    loop, context, _ = run_action(session, user, {'type': 'RESET'}, restore=False)
    db.session.commit()
    return respond(loop, context, success=True)

@game_bp.route('/breakdown/<int:session_id>/<resource_id>', methods=['GET'])
def get_breakdown(session_id, resource_id):
    """Per-source production table for one resource."""
    session = db.get_or_404(GameSession, session_id)
    user = get_current_user()
    error = authorize(session, user)
    if error:
        return error

    context = build_context(session, user)
    loop = load_loop(session, context, catch_up=False)
    breakdown = production_breakdown(loop.state, resource_id, context.rules)
    if breakdown is None:
        return jsonify({'error': f'Unknown resource {resource_id}'}), 404
    return jsonify({'breakdown': to_snapshot(breakdown)})

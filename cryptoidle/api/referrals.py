"""Referral and helper API endpoints."""
from flask import Blueprint, request, jsonify, g
from cryptoidle.api.game import get_session_from_request, authorize, respond, run_action
from cryptoidle.auth import get_current_user, login_required
from cryptoidle.models import db

referrals_bp = Blueprint('referrals', __name__)

def _dispatch(action_type, payload, user):
    """Shared body of the referral endpoints: one reducer action per request."""
    data = request.get_json(silent=True) or {}
    session, error = get_session_from_request(data)
    if error:
        return error
    error = authorize(session, user)
    if error:
        return error

    loop, context, accepted = run_action(session, user, {'type': action_type, 'payload': payload(data)})
    db.session.commit()
    if not accepted:
        return respond(loop, context, success=False), 400
    return respond(loop, context, success=True)

@referrals_bp.route('/code', methods=['POST'])
def set_code():
    """Set the player's own referral code."""
    return _dispatch('SET_REFERRAL_CODE', lambda d: {'code': d.get('code')}, get_current_user())

@referrals_bp.route('/referred_by', methods=['POST'])
def set_referred_by():
    """Record whose code brought this player in."""
    return _dispatch('SET_REFERRED_BY', lambda d: {'code': d.get('code')}, get_current_user())

@referrals_bp.route('/add', methods=['POST'])
def add_referral():
    """Register a newly joined referral."""
    return _dispatch('ADD_REFERRAL', lambda d: {'referral': d.get('referral')}, get_current_user())

@referrals_bp.route('/activate', methods=['POST'])
@login_required
def activate_referral():
    """Activate a referral; the player's own id can never be activated."""
    return _dispatch('ACTIVATE_REFERRAL', lambda d: {'referral_id': d.get('referral_id')},
                     g.current_user)

@referrals_bp.route('/helpers', methods=['POST'])
def hire_helper():
    """Ask an activated referral to help at a building."""
    return _dispatch('HIRE_REFERRAL_HELPER',
                     lambda d: {'referral_id': d.get('referral_id'), 'building_id': d.get('building_id')},
                     get_current_user())

@referrals_bp.route('/helpers/respond', methods=['POST'])
def respond_to_helper():
    """Accept or reject a pending helper request."""
    return _dispatch('RESPOND_TO_HELPER_REQUEST',
                     lambda d: {'helper_request_id': d.get('helper_request_id'),
                                'accepted': d.get('accepted')},
                     get_current_user())

@referrals_bp.route('/helpers/sync', methods=['POST'])
def sync_helpers():
    """Replace the helper list with the social service's view of it."""
    return _dispatch('UPDATE_HELPERS', lambda d: {'helpers': d.get('helpers')}, get_current_user())

@referrals_bp.route('/<int:session_id>', methods=['GET'])
def list_referrals(session_id):
    """Referrals and helpers of a session, without advancing time."""
    from cryptoidle.models import GameSession
    session = db.get_or_404(GameSession, session_id)
    error = authorize(session, get_current_user())
    if error:
        return error
    state = session.game_state or {}
    return jsonify({
        'referral_code': state.get('referral_code'),
        'referred_by': state.get('referred_by'),
        'referrals': state.get('referrals', []),
        'helpers': state.get('referral_helpers', [])
    })

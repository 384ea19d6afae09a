"""Authentication API endpoints."""
from flask import Blueprint, request, jsonify, g
from cryptoidle.models import db, User, GameSession
from cryptoidle.auth import generate_token, login_required

auth_bp = Blueprint('auth', __name__)

def _latest_session_id(user):
    """Most recently started game session of a user, if any."""
    session = GameSession.query.filter_by(user_id=user.id) \
        .order_by(GameSession.started_at.desc()).first()
    return session.id if session else None

@auth_bp.route('/register', methods=['POST'])
def register():
    """Create an account and return a token for it."""
    data = request.get_json(silent=True) or {}
    username = data.get('username')
    email = data.get('email')
    password = data.get('password')

    if not username or not email or not password:
        return jsonify({'error': 'username, email and password are required'}), 400

    taken = User.query.filter(
        (User.username == username) | (User.email == email)
    ).first()
    if taken:
        field = 'Username' if taken.username == username else 'Email'
        return jsonify({'error': f'{field} already registered'}), 400

    user = User(username=username, email=email)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()

    return jsonify({
        'token': generate_token(user),
        'user': user.to_dict(),
        'session_id': None
    }), 201

@auth_bp.route('/login', methods=['POST'])
def login():
    """Exchange credentials for a token; also reports the player's latest session."""
    data = request.get_json(silent=True) or {}

    if not data.get('username') or not data.get('password'):
        return jsonify({'error': 'Missing username or password'}), 400

    user = User.query.filter_by(username=data['username']).first()
    if user is None or not user.check_password(data['password']):
        return jsonify({'error': 'Invalid credentials'}), 401

    return jsonify({
        'token': generate_token(user),
        'user': user.to_dict(),
        'session_id': _latest_session_id(user)
    })

@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    """Tokens are stateless; the client simply forgets it."""
    return jsonify({'message': 'Logged out successfully'})

@auth_bp.route('/me', methods=['GET'])
@login_required
def me():
    """Current user with the ids of their game sessions."""
    user = g.current_user
    return jsonify({
        'user': user.to_dict(),
        'session_ids': [s.id for s in user.sessions]
    })

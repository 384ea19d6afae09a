"""Player identity carried by signed bearer tokens.

Game sessions only ever see a :class:`TokenIdentity`; the HTTP layer builds
one per request from the ``Authorization: Bearer <token>`` header.
"""
import datetime
import logging
from functools import wraps

import jwt
from flask import current_app, g, jsonify, request

from cryptoidle.interfaces import IdentityProvider
from cryptoidle.models import db, User

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = 'HS256'

def generate_token(user, now=None):
    """Sign a token naming ``user`` that expires after ``TOKEN_TTL`` seconds."""
    issued = now or datetime.datetime.now(datetime.timezone.utc)
    claims = {
        'sub': str(user.id),
        'name': user.username,
        'iat': issued,
        'exp': issued + datetime.timedelta(seconds=current_app.config['TOKEN_TTL']),
    }
    return jwt.encode(claims, current_app.config['SECRET_KEY'], algorithm=TOKEN_ALGORITHM)

def bearer_token(header):
    """Token part of an ``Authorization`` header, None unless it is a bearer one."""
    if not header:
        return None
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()

def token_player_id(token):
    """Player id signed into ``token``; None when expired, forged or malformed."""
    try:
        claims = jwt.decode(token, current_app.config['SECRET_KEY'],
                            algorithms=[TOKEN_ALGORITHM], options={'require': ['sub', 'exp']})
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired player token")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning("Rejected player token: %s", e)
        return None
    subject = str(claims['sub'])
    return int(subject) if subject.isdigit() else None

class TokenIdentity(IdentityProvider):
    """Identity of the player behind a request; guests have no user."""

    def __init__(self, user=None):
        self.user = user

    @classmethod
    def from_request(cls):
        """Identity named by the current request's bearer token."""
        token = bearer_token(request.headers.get('Authorization'))
        player_id = token_player_id(token) if token else None
        if player_id is None:
            return cls()
        return cls(db.session.get(User, player_id))

    @property
    def authenticated(self):
        return self.user is not None

    def user_id(self):
        if self.user is None:
            return None
        return str(self.user.id)

def get_current_user():
    """Signed-in player of this request, None for guests."""
    return TokenIdentity.from_request().user

def login_required(f):
    """Reject guests with 401; expose the player as ``g.current_user``."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        identity = TokenIdentity.from_request()
        if not identity.authenticated:
            return jsonify({'error': 'Sign in to play with an account'}), 401
        g.current_user = identity.user
        return f(*args, **kwargs)
    return decorated_function

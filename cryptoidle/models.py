"""Database models for the game."""
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt

db = SQLAlchemy()
bcrypt = Bcrypt()

class User(db.Model):
    """User model for authentication and profile."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    sessions = db.relationship('GameSession', backref='user', lazy=True, cascade='all, delete-orphan')

    def set_password(self, password):
        """Hash and set password."""
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        """Check password against hash."""
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        """Convert to dictionary."""
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'created_at': self.created_at.isoformat()
        }

class GameSession(db.Model):
    """Game session model holding the latest state snapshot."""
    __tablename__ = 'game_sessions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)  # Allow guest sessions
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    saved_at = db.Column(db.DateTime, nullable=True)
    prestige_points = db.Column(db.Integer, default=0, nullable=False)
    game_state = db.Column(db.JSON, default=dict)  # Full game state snapshot

    # Relationships
    actions = db.relationship('ActionLog', backref='session', lazy=True, cascade='all, delete-orphan', order_by='ActionLog.sequence_number')

    def to_dict(self):
        """Convert to dictionary."""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'started_at': self.started_at.isoformat(),
            'saved_at': self.saved_at.isoformat() if self.saved_at else None,
            'prestige_points': self.prestige_points,
            'game_state': self.game_state
        }

class ActionLog(db.Model):
    """Accepted player actions, in dispatch order."""
    __tablename__ = 'action_logs'

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('game_sessions.id'), nullable=False, index=True)
    action_type = db.Column(db.String(50), nullable=False)  # PURCHASE_BUILDING, APPLY_KNOWLEDGE, ...
    action_data = db.Column(db.JSON, nullable=False)
    game_time = db.Column(db.Float, nullable=False)  # simulated seconds when applied
    sequence_number = db.Column(db.Integer, nullable=False, index=True)

    def to_dict(self):
        """Convert to dictionary."""
        return {
            'id': self.id,
            'session_id': self.session_id,
            'action_type': self.action_type,
            'action_data': self.action_data,
            'game_time': self.game_time,
            'sequence_number': self.sequence_number
        }

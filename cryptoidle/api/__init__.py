"""API blueprints for the crypto idle game."""
from cryptoidle.api.auth import auth_bp
from cryptoidle.api.game import game_bp
from cryptoidle.api.referrals import referrals_bp

__all__ = ['auth_bp', 'game_bp', 'referrals_bp']

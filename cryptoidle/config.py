"""Configuration settings for the Flask application and the simulation core."""
import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    TOKEN_TTL = int(os.environ.get('TOKEN_TTL', 7 * 24 * 3600))  # seconds a player token stays valid
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        os.environ.get('SQLALCHEMY_DATABASE_URI') or \
        'sqlite:///crypto_idle.db'  # Use SQLite for development
    GAME_DATA_DIR = os.environ.get('GAME_DATA_DIR')  # None = bundled game_data/

    # Simulation cadence
    # The driver nominally ticks once per second, but every update derives
    # elapsed time from last_update, so irregular intervals are fine
    TICK_INTERVAL = 1.0  # seconds
    MAX_TICK_SEGMENTS = 10000  # shortage transitions handled within one catch-up tick
    CONDITION_CACHE_TTL = 1.0  # seconds, upper bound for cached unlock conditions

    # Persistence
    MIN_SAVE_INTERVAL = 2.0  # seconds between two persisted snapshots
    SAVE_TIMEOUT = 5.0  # seconds before a pending load/save is abandoned

    # Economy
    # FALLBACK values - primary source is game_data/economic_rules.json
    KNOWLEDGE_BATCH_SIZE = 10  # knowledge spent per applied batch
    KNOWLEDGE_BATCH_REWARD = 1.0  # usdt granted per batch before bonuses
    LEARN_AMOUNT = 1.0  # knowledge per manual click
    SELL_REFUND_FRACTION = 0.5
    REFERRAL_BONUS = 0.05  # per activated referral
    HELPER_BONUS = 0.10  # per accepted helper, on its building only
    MAX_CONSUMPTION_REDUCTION = 0.5
    PRESTIGE_THRESHOLD = 1000.0  # total asset value (usdt)
    PRESTIGE_DIFFICULTY = 10.0

    # Number of applied knowledge batches needed before the currency shows up.
    # Older clients used 1; 2 is the current rule
    CURRENCY_UNLOCK_COUNTER_THRESHOLD = int(os.environ.get('CURRENCY_UNLOCK_COUNTER_THRESHOLD', 2))

class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True

class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False

class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    MIN_SAVE_INTERVAL = 0.0

config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}

"""Flask application entry point."""
from flask import Flask, send_from_directory
from flask_cors import CORS
from flask_migrate import Migrate
import os

from cryptoidle.config import config
from cryptoidle.models import db, bcrypt
from cryptoidle.game_data_loader import get_game_data_loader

def create_app(config_name=None):
    """Create and configure Flask application."""
    base_dir = os.path.dirname(os.path.dirname(__file__))

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'development')
    settings = config[config_name]
    app.config.from_object(settings)
    app.config['GAME_SETTINGS'] = settings  # class form, handed to SessionContext

    # Initialize extensions
    db.init_app(app)
    bcrypt.init_app(app)
    CORS(app)
    Migrate(app, db)

    # Initialize game data loader
    game_data_dir = app.config.get('GAME_DATA_DIR') or os.path.join(base_dir, 'game_data')
    with app.app_context():
        data_loader = get_game_data_loader(game_data_dir)
        errors = data_loader.validate_data()
        if errors:
            app.logger.warning(f"Game data validation warnings: {errors}")

    # Register blueprints
    from cryptoidle.api import auth_bp, game_bp, referrals_bp
    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(game_bp, url_prefix='/api/game')
    app.register_blueprint(referrals_bp, url_prefix='/api/referrals')

    # Serve game data files
    @app.route('/game_data/<path:filename>')
    def serve_game_data(filename):
        """Serve game data JSON files."""
        return send_from_directory(game_data_dir, filename)

    # Error handlers
    @app.errorhandler(404)
    def not_found(error):
        return {'error': 'Not found'}, 404

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return {'error': 'Internal server error'}, 500

    return app

if __name__ == '__main__':
    app = create_app()
    port = int(os.environ.get('PORT', 5001))
    app.run(debug=True, host='0.0.0.0', port=port)

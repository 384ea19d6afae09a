#!/usr/bin/env python3
"""Run script for the crypto idle game server."""
import logging
import os

from cryptoidle.app import create_app

if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    app = create_app(os.environ.get('FLASK_ENV', 'development'))

    # Initialize database
    with app.app_context():
        from cryptoidle.models import db
        db.create_all()
        app.logger.info("Database initialized.")

    port = int(os.environ.get('PORT', 5001))
    app.logger.info(f"Starting crypto idle game server on http://localhost:{port}")
    app.run(debug=app.config.get('DEBUG', False), host='0.0.0.0', port=port)

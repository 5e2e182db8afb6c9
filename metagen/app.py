"""
Flask application for the batch metadata pipeline

Registers the session and history APIs and initializes the database.
"""
import os
import logging
from datetime import datetime

from flask import Flask, jsonify
from sqlalchemy import text

from .pipeline_config import config
from .database_models import db_manager
from .session_api import session_api, session_registry
from .history_api import history_api

config.create_directories()

# Setup logging
logging.basicConfig(
    level=logging.DEBUG if config.enable_debug_logging else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(os.path.join(config.log_dir, 'metagen_app.log')),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


def create_app() -> Flask:
    """Create and configure the Flask application"""
    app = Flask(__name__)
    app.config.update({
        'SECRET_KEY': config.secret_key,
        'MAX_CONTENT_LENGTH': config.max_request_size,
        'UPLOAD_FOLDER': config.upload_dir,
        'JSON_SORT_KEYS': False,
    })

    for warning in config.validate_configuration():
        logger.warning(f"Configuration warning: {warning}")

    try:
        db_manager.create_tables()
        app.db_initialized = True
        logger.info("Database tables ready")
    except Exception as e:
        app.db_initialized = False
        logger.error(f"Database initialization failed - history will not be saved: {e}")

    app.register_blueprint(session_api)
    app.register_blueprint(history_api)

    @app.route('/api/v1/health')
    def health():
        """Liveness plus database reachability"""
        database_ok = True
        try:
            with db_manager.get_session() as session:
                session.execute(text('SELECT 1'))
        except Exception as e:
            logger.warning(f"Health check database error: {e}")
            database_ok = False

        return jsonify({
            'success': True,
            'data': {
                'status': 'ok' if database_ok else 'degraded',
                'database': database_ok,
                'active_sessions': len(session_registry),
            },
            'timestamp': datetime.now().isoformat()
        }), 200 if database_ok else 503

    return app

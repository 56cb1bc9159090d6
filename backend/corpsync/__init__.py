"""
Corporation sync backend

``create_app`` wires configuration, logging, the database, the HTTP API and
the sync runtime (token store, fetch client, state store, error log,
executor and scheduler) into one Flask application.
"""
import time
from flask import Flask, g, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .config import get_config
from .exceptions import StorageError
from .extensions import db, migrate
from . import models  # noqa: F401  registers the tables with db.metadata
from .api import sync_bp, sync_errors_bp, corporations_bp, sync_logs_bp
from .services.sync_runtime import init_sync_runtime, get_sync_runtime
from .utils.logger import setup_logger, get_logger
from .utils.responses import ApiResponse
from .websocket import socketio, init_socketio

__all__ = ['create_app', 'socketio']

BLUEPRINTS = (sync_bp, sync_errors_bp, corporations_bp, sync_logs_bp)

# Error codes for the HTTP errors raised by Flask itself
HTTP_ERROR_CODES = {
    400: 'BAD_REQUEST',
    404: 'NOT_FOUND',
    405: 'METHOD_NOT_ALLOWED',
    415: 'UNSUPPORTED_MEDIA_TYPE',
}


def create_app(config_class=None):
    """Build the application.

    Args:
        config_class: Config class; picked from FLASK_ENV when None

    Returns:
        Flask app with the sync runtime in ``app.extensions['sync_runtime']``
    """
    config_class = config_class or get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)

    setup_logger(
        log_level=app.config.get('LOG_LEVEL', 'INFO'),
        log_file=app.config.get('LOG_FILE')
    )
    logger = get_logger('app')

    CORS(app, resources={r"/api/*": config_class.get_cors_config()})

    db.init_app(app)
    migrate.init_app(app, db)

    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix='/api')

    # The runtime reads kv_entries on startup, so the tables must exist first.
    # Schema changes still go through 'flask db migrate'.
    with app.app_context():
        db.create_all()

    _register_error_handlers(app)
    _register_request_timing(app)
    _register_health_check(app)

    runtime = init_sync_runtime(app)

    if app.config.get('WEBSOCKET_ENABLED'):
        try:
            init_socketio(app)
            runtime.broadcaster.enable_websocket()
            logger.info("Socket.IO sync events enabled")
        except (RuntimeError, ValueError) as e:
            logger.warning(f"Socket.IO unavailable, sync events go to SSE only: {e}")

    logger.info(
        f"Sync backend ready: {len(runtime.scheduler.get_scheduled_processes())} scheduled process(es), "
        f"database {app.config.get('SQLALCHEMY_DATABASE_URI', '')}"
    )
    return app


def _register_error_handlers(app):
    """JSON envelopes for HTTP errors, storage failures and crashes."""
    logger = get_logger('error')

    @app.errorhandler(HTTPException)
    def http_error(error):
        code = HTTP_ERROR_CODES.get(error.code, 'HTTP_ERROR')
        return ApiResponse.error(error.description or error.name, error.code, code)

    @app.errorhandler(StorageError)
    def storage_error(error):
        logger.error(f"Storage failure while handling {request.method} {request.path}: {error}")
        return ApiResponse.server_error('Storage failure')

    @app.errorhandler(500)
    def internal_error(error):
        logger.exception(error)
        return ApiResponse.server_error('Internal server error')


def _register_request_timing(app):
    """Log API calls slower than SLOW_REQUEST_MS."""
    threshold_ms = app.config.get('SLOW_REQUEST_MS', 1000)
    logger = get_logger('slow_request')

    @app.before_request
    def start_timer():
        g.request_started = time.perf_counter()

    @app.after_request
    def log_slow_request(response):
        started = g.pop('request_started', None)
        if started is not None:
            elapsed_ms = (time.perf_counter() - started) * 1000
            if elapsed_ms > threshold_ms:
                logger.warning(
                    f"{request.method} {request.path} -> {response.status_code} took {elapsed_ms:.0f}ms"
                )
        return response


def _register_health_check(app):

    @app.route('/api/health')
    def health_check():
        """Liveness plus a summary of the sync runtime."""
        runtime = get_sync_runtime()
        return jsonify({
            'status': 'healthy',
            'service': 'corpsync-backend',
            'scheduler_running': runtime.scheduler.is_running,
            'corporations': len(runtime.token_store.corporation_ids()),
        })

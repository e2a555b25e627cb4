"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints.
"""
import logging

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger('prescreen.app')


def create_app():
    """Create and configure the Flask application."""
    from prescreen import config
    from prescreen.logging_config import configure_logging
    from prescreen.pipeline.base import PrescreenError, SubmissionFailedError

    app = Flask(__name__)

    configure_logging(app)

    # Secret key for sessions; the public default would let anyone sign an admin cookie
    if config.SECRET_KEY == config.DEFAULT_SECRET_KEY and (config.ADMIN_PASSWORD or config.VIEWER_PASSWORD):
        raise RuntimeError('SECRET_KEY must be set when ADMIN_PASSWORD or VIEWER_PASSWORD is configured')
    if not (config.ADMIN_PASSWORD or config.VIEWER_PASSWORD):
        if config.AUTH_DISABLED:
            logger.warning("AUTH_DISABLED is set: every caller is treated as a local admin")
        else:
            logger.warning("No ADMIN_PASSWORD or VIEWER_PASSWORD set: all API routes will answer 401")
    app.secret_key = config.SECRET_KEY

    # ── JSON errors ─────────────────────────────────────────────────────
    @app.errorhandler(PrescreenError)
    def handle_pipeline_error(error):
        payload = {'error': error.message}
        if isinstance(error, SubmissionFailedError) and error.batch_id is not None:
            payload['batchId'] = error.batch_id
        return jsonify(payload), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        if isinstance(error, HTTPException):
            return jsonify({'error': error.description}), error.code
        logger.error("Unhandled error: %s", error, exc_info=True)
        return jsonify({'error': 'Internal server error'}), 500

    # Register blueprints
    from prescreen.auth import bp as auth_bp
    from prescreen.routes.health import bp as health_bp
    from prescreen.routes.prescreen import bp as prescreen_bp
    from prescreen.routes.fill import bp as fill_bp
    from prescreen.routes.results import bp as results_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(prescreen_bp)
    app.register_blueprint(fill_bp)
    app.register_blueprint(results_bp)

    # Initialize circuit breakers for external API services
    from prescreen.extensions import redis_client
    from prescreen.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # Import models so Base.metadata knows about them (required for SQLAlchemy).
    # Schema is managed by Alembic, there is no init_db() call.
    import importlib
    importlib.import_module('prescreen.models.program')
    importlib.import_module('prescreen.models.batch')
    importlib.import_module('prescreen.models.lead')
    importlib.import_module('prescreen.models.result')
    importlib.import_module('prescreen.models.audit_log')

    return app

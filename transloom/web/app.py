"""Flask application configuration and blueprint registration."""

from __future__ import annotations

from flask import Flask, jsonify

from transloom.errors import JobNotFoundError
from transloom.logger import get_logger

from .routes.jobs import EXTENSION_KEY, error_payload, jobs_bp
from .routes.settings import settings_bp

logger = get_logger(__name__)


def build_app(orchestrator) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Ensure JSON responses keep Unicode data.
    app.json.ensure_ascii = False
    app.extensions[EXTENSION_KEY] = orchestrator

    register_blueprints(app)
    register_default_routes(app)

    return app


def register_blueprints(app: Flask) -> None:
    """Register Flask blueprints."""
    app.register_blueprint(jobs_bp, url_prefix="/api/jobs")
    app.register_blueprint(settings_bp, url_prefix="/api/settings")


def register_default_routes(app: Flask) -> None:
    """Register health route and JSON error handlers."""

    @app.get("/health")
    def health_check():
        logger.debug("Health check requested")
        return jsonify({"status": "ok"})

    @app.errorhandler(JobNotFoundError)
    def job_not_found(e):
        return jsonify(error_payload(e)), 404

    @app.errorhandler(404)
    def page_not_found(e):
        return jsonify({"error": "Not found", "code": "not_found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "code": "method_not_allowed"}), 405

    @app.errorhandler(500)
    def internal_error(e):
        logger.exception("Internal server error: %s", e)
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500

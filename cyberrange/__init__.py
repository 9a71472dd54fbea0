#!/usr/bin/env python3
"""
Flask Application Factory

This module provides the create_app factory function for creating
configured Flask application instances of the lab orchestration API.
"""

import logging

from flask import Flask, jsonify, request

from cyberrange.config import SECRET_KEY, LabsConfig
from cyberrange.errors import LabError

# Initialize logging
from cyberrange.utils.logging import configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)


def create_app(config=None, driver=None):
    """Create and configure the Flask application.

    Args:
        config: Optional configuration dictionary to override defaults.
            ``LABS_*`` / ``DOCKER_LAB_*`` / ``CYBERRANGE_*`` keys override
            the environment for the orchestration settings.
        driver: Optional LabDriver instance to use instead of the one named
            by DOCKER_LAB_DRIVER

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    # Configure secret key
    app.secret_key = SECRET_KEY

    # Apply any additional config
    if config:
        app.config.update(config)

    labs_config = LabsConfig.from_mapping(app.config, base=LabsConfig.from_env())
    if app.config.get('TESTING') and labs_config.probe_host_ports:
        labs_config = LabsConfig.from_mapping({'DOCKER_LAB_PROBE_PORTS': False}, base=labs_config)

    # Initialize database (SQLAlchemy)
    from cyberrange.models import init_db
    init_db(app)
    logger.info("Database initialized")

    # Build orchestration services once per app
    from cyberrange.services import build_services
    app.extensions['cyberrange'] = build_services(labs_config, driver=driver)
    logger.info("Lab orchestration ready (driver=%s, ports %s-%s)",
                labs_config.driver, labs_config.port_start, labs_config.port_end)

    # Register blueprints
    from cyberrange.routes import register_blueprints
    register_blueprints(app)

    @app.errorhandler(LabError)
    def handle_lab_error(error):
        """Render orchestration errors with their status and details."""
        level = logging.ERROR if error.status_code >= 500 else logging.INFO
        logger.log(level, f"{type(error).__name__} on {request.method} {request.path}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    # Global error handler for API routes to return JSON instead of HTML
    @app.errorhandler(Exception)
    def handle_api_error(error):
        """Return JSON for API errors instead of HTML."""
        from werkzeug.exceptions import HTTPException

        if isinstance(error, HTTPException) and not request.path.startswith('/api/'):
            return error

        # Log all errors with the URL that caused them
        logger.error(f"Error on {request.method} {request.path}: {error}", exc_info=True)

        # Only apply to /api/ routes
        if request.path.startswith('/api/'):
            # Get HTTP status code if available
            status_code = getattr(error, 'code', 500)
            if not isinstance(status_code, int):
                status_code = 500

            return jsonify({
                'ok': False,
                'error': str(error),
                'type': type(error).__name__
            }), status_code

        # For non-API routes, use default Flask error handling
        raise error

    @app.route('/health')
    def health():
        """Liveness endpoint for load balancers."""
        return jsonify({'ok': True, 'driver': labs_config.driver})

    # Start expiry sweeper daemon
    if labs_config.sweeper_enabled and not app.config.get('TESTING'):
        from cyberrange.services.expiry_sweeper import start_expiry_sweeper
        start_expiry_sweeper(app)

    logger.info("Flask app created successfully")
    return app

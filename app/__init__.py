"""Flask application factory for the mesh optimizer proxy."""

import logging

from flask import Flask

from app.config import get_package_version, get_settings


def create_app() -> Flask:
    """Create and configure the Flask application.

    Raises:
        RuntimeError: If no upstream API token is configured
    """
    settings = get_settings()
    if not settings.api_token:
        raise RuntimeError(
            "Missing RAPIDPIPELINE_TOKEN in environment; the upstream API cannot be called"
        )

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = 200 * 1024 * 1024  # JSON bodies only; files go direct

    # Store settings in app config for easy access
    app.config["SETTINGS"] = settings

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )

    # Register blueprints
    from app.routes.downloads import downloads_bp
    from app.routes.logs import logs_bp
    from app.routes.main import main_bp
    from app.routes.optimize import optimize_bp
    from app.routes.settings import settings_bp
    from app.routes.upload import upload_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(upload_bp, url_prefix="/api")
    app.register_blueprint(optimize_bp, url_prefix="/api")
    app.register_blueprint(downloads_bp, url_prefix="/api")
    app.register_blueprint(settings_bp, url_prefix="/api/settings")
    app.register_blueprint(logs_bp, url_prefix="/api/logs")

    # Log application startup
    from app.services.log_service import get_log_service

    log = get_log_service()
    log.info(
        "app",
        "app_started",
        f"Application started (v{get_package_version()})",
        {"version": get_package_version(), "api_base": settings.api_base},
    )

    return app

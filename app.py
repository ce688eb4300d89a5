"""Flask application factory for the RMAS Bihar membership service."""
import os
from typing import Optional

import click
from flask import Flask, jsonify, request
from dotenv import load_dotenv
from sqlalchemy.engine.url import make_url
from werkzeug.exceptions import HTTPException

from utils.logger import init_logging
from utils.security import apply_security_headers
from utils.errors import AuthorizationError, MembershipServiceError
from utils.locations import EXTENSION_KEY as LOCATIONS_KEY, LocationHierarchy
from utils.roles import CATALOGUE_KEY, PostsCatalogue
from extensions import csrf, db, migrate, login_manager


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(MembershipServiceError)
    def service_error(error: MembershipServiceError):
        if error.status_code >= 500:
            db.session.rollback()
            app.logger.error(
                "Service error",
                extra={"path": request.path, "error": error.message, "kind": error.__class__.__name__},
            )
        elif not isinstance(error, AuthorizationError):
            app.logger.info(
                "Request rejected",
                extra={"path": request.path, "error": error.message, "kind": error.__class__.__name__},
            )
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(403)
    def forbidden(error):
        app.logger.warning("403 Forbidden", extra={"path": request.path, "method": request.method})
        return jsonify({"ok": False, "error": "Forbidden"}), 403

    @app.errorhandler(404)
    def not_found_error(error):
        app.logger.warning("404 Not Found", extra={"path": request.path, "method": request.method})
        return jsonify({"ok": False, "error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"ok": False, "error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        app.logger.exception("500 Internal Server Error")
        return jsonify({"ok": False, "error": "Internal server error"}), 500

    @app.errorhandler(Exception)
    def unhandled_error(error):
        if isinstance(error, HTTPException):
            return jsonify({"ok": False, "error": error.description}), error.code
        db.session.rollback()
        app.logger.exception("Unhandled error", extra={"path": request.path})
        return jsonify({"ok": False, "error": "Internal server error"}), 500


def ensure_default_superadmin(app: Flask) -> None:
    """Ensure a superadmin can log in on a fresh database without manual provisioning."""
    from models import User  # Local import to avoid circular dependency

    admin_email = (app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower().strip()
    admin_password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not admin_email or not admin_password:
        return

    admin_user = User.query.filter_by(email=admin_email).first()
    if admin_user:
        if admin_user.role != "superadmin" or not admin_user.active:
            admin_user.role = "superadmin"
            admin_user.assigned_level = None
            admin_user.assigned_id = None
            admin_user.active = True
            db.session.commit()
        return

    admin_user = User(
        name="System Administrator",
        email=admin_email,
        role="superadmin",
        active=True,
        password_changed=False,
    )
    admin_user.set_password(admin_password)
    db.session.add(admin_user)
    db.session.commit()
    app.logger.info("Default superadmin created", extra={"email": admin_email})


def ensure_sqlite_directory(database_uri: str) -> None:
    url = make_url(database_uri)
    if url.drivername.startswith("sqlite") and url.database:
        os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)


def create_app(config_name: Optional[str] = None, locations: Optional[LocationHierarchy] = None, catalogue: Optional[PostsCatalogue] = None) -> Flask:
    """Application factory with environment-aware configuration.

    ``locations`` and ``catalogue`` replace the JSON-backed reference data, mainly for tests.
    """
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    # Resolve configuration
    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())

    ensure_sqlite_directory(app.config["SQLALCHEMY_DATABASE_URI"])

    # Optional instance-specific overrides
    if not app.testing:
        app.config.from_pyfile("config.py", silent=True)
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize logging early
    logger = init_logging(app)
    app.logger = logger

    # Reference data, loaded once per process and reloadable by a superadmin
    app.extensions[LOCATIONS_KEY] = locations if locations is not None else LocationHierarchy(path=app.config.get("LOCATIONS_PATH"))
    app.extensions[CATALOGUE_KEY] = catalogue if catalogue is not None else PostsCatalogue(path=app.config.get("ROLES_HIERARCHY_PATH"))

    # Initialize extensions
    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id):
        from models import User  # Local import to avoid circular dependency

        if not user_id:
            return None
        return db.session.get(User, str(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"ok": False, "error": "Authentication required"}), 401

    # Blueprints
    from routes import admin_bp, auth_bp, documents_bp, main_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(documents_bp)

    @app.cli.command("otp-cleanup")
    def otp_cleanup():
        """Delete expired download OTP rows (schedule this via cron)."""
        from utils.download_otp import purge_expired

        removed = purge_expired()
        app.logger.info("Expired download OTPs purged", extra={"removed": removed})
        click.echo(f"Removed {removed} expired download OTP records")

    @app.cli.command("create-superadmin")
    @click.argument("email")
    @click.argument("password")
    @click.option("--name", default="Super Admin")
    def create_superadmin(email, password, name):
        """Create or promote a superadmin account."""
        from models import User

        email = email.strip().lower()
        user = User.query.filter_by(email=email).first() or User(email=email, name=name)
        user.role = "superadmin"
        user.assigned_level = None
        user.assigned_id = None
        user.active = True
        user.password_changed = True
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Superadmin ready: {email}")

    # Error handlers
    register_error_handlers(app)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        db.create_all()
        ensure_default_superadmin(app)

    return app

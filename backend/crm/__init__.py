# backend/crm/__init__.py
from flask import Flask, request
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from .config import Config
from .extensions import db, migrate
from .responses import fail


def create_app(config_class=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class or Config)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.notification_service import NotificationDispatcher
    NotificationDispatcher(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.stores import stores_bp
    from .routes.customers import customers_bp
    from .routes.products import products_bp
    from .routes.inventory import inventory_bp
    from .routes.sales import sales_bp
    from .routes.repairs import repairs_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(stores_bp)
    app.register_blueprint(customers_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(repairs_bp)

    _register_error_handlers(app)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin in app.config.get("CORS_ORIGINS", []):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app


def _register_error_handlers(app):
    """Typed service errors that escape a route become envelope responses."""
    from .validation import ValidationError, ConflictError, NotFoundError
    from .services.auth_service import AuthError, ForbiddenError, PasswordValidationError
    from .services.reservation_service import ReservationError
    from .services.sales_service import SaleError
    from .services.repair_service import RepairError

    @app.errorhandler(ValidationError)
    def handle_validation(error):
        return fail(str(error), 400, errors=error.errors)

    @app.errorhandler(PasswordValidationError)
    def handle_password(error):
        return fail(str(error), 400, errors=[{"field": "password", "message": str(error)}])

    @app.errorhandler(NotFoundError)
    def handle_not_found(error):
        return fail(str(error), 404)

    @app.errorhandler(ConflictError)
    def handle_conflict(error):
        return fail(str(error), 409)

    @app.errorhandler(IntegrityError)
    def handle_integrity(error):
        db.session.rollback()
        app.logger.warning("Integrity error: %s", error.orig)
        return fail("Duplicate or conflicting record", 409)

    @app.errorhandler(ReservationError)
    @app.errorhandler(SaleError)
    @app.errorhandler(RepairError)
    def handle_business_rule(error):
        return fail(str(error), 400, details=error.details)

    @app.errorhandler(AuthError)
    def handle_auth(error):
        return fail(str(error), 401)

    @app.errorhandler(ForbiddenError)
    def handle_forbidden(error):
        return fail(str(error), 403)

    @app.errorhandler(HTTPException)
    def handle_http(error):
        return fail(error.description or error.name, error.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        message = f"Internal server error: {error}" if app.debug else "Internal server error"
        return fail(message, 500)

# backend/settlehub/__init__.py
import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)

    # Overrides must land before the engine is bound in db.init_app()
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))
    logging.getLogger("settlehub").setLevel(app.logger.level)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.products import products_bp
    from .routes.product_images import product_images_bp
    from .routes.categories import categories_bp, admin_categories_bp
    from .routes.tags import tags_bp
    from .routes.orders import orders_bp
    from .routes.payments import payments_bp
    from .routes.refunds import refunds_bp
    from .routes.settlements import settlements_bp
    from .routes.reviews import reviews_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(product_images_bp)
    app.register_blueprint(categories_bp)
    app.register_blueprint(admin_categories_bp)
    app.register_blueprint(tags_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(refunds_bp)
    app.register_blueprint(settlements_bp)
    app.register_blueprint(reviews_bp)

    allowed_origins = set(app.config.get("CORS_ORIGINS") or [])

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type, Idempotency-Key"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app

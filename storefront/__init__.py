# storefront/__init__.py
from datetime import timedelta

from flask import Flask, g, jsonify, request

from .config import Config
from .extensions import db, jwt, cors, migrate


def create_app(config_overrides=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_object(Config)
    Config.init_app(app)
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(days=1)
    app.config["JWT_REFRESH_TOKEN_EXPIRES"] = timedelta(days=30)
    if config_overrides:
        app.config.update(config_overrides)
    app.json.sort_keys = False

    from .utils.log import configure_logging
    logger = configure_logging(app)

    # Init extensions
    db.init_app(app)
    jwt.init_app(app)
    cors.init_app(app, resources={r"/api/*": {"origins": "*"}})
    migrate.init_app(app, db)

    from .services.gateway import init_gateway
    init_gateway(app)

    from .errors import register_error_handlers
    register_error_handlers(app)

    # Register blueprints
    from .cart import bp as cart_bp; app.register_blueprint(cart_bp)
    from .order import bp as order_bp; app.register_blueprint(order_bp)
    from .payment import bp as payment_bp; app.register_blueprint(payment_bp)
    from .admin import bp as admin_bp; app.register_blueprint(admin_bp)
    from .coupon import bp as coupon_bp; app.register_blueprint(coupon_bp)

    from .cli import register_cli
    register_cli(app)

    @app.before_request
    def _assign_request_id():
        g.request_id = (request.headers.get("X-Request-Id") or "").strip()[:64] or None

    @app.get("/")
    def health():
        return jsonify(ok=True, msg="API running")

    with app.app_context():
        from . import model  # noqa: F401
        db.create_all()

    logger.info("storefront app created db=%s", app.config["SQLALCHEMY_DATABASE_URI"].split("://")[0])
    return app

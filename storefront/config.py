import os


def _env_bool(name, default):
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


class Config:
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    ENV = os.getenv("FLASK_ENV", "development")
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "dev-secret-change-me")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "usd")
    PAYMENT_GATEWAY_TIMEOUT = float(os.getenv("PAYMENT_GATEWAY_TIMEOUT", "10"))
    MAX_PAYMENT_AMOUNT = os.getenv("MAX_PAYMENT_AMOUNT", "10000.00")
    WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))

    # Checkout pricing policy
    TAX_RATE = os.getenv("TAX_RATE", "0.10")
    SHIPPING_FLAT_RATE = os.getenv("SHIPPING_FLAT_RATE", "10.00")
    FREE_SHIPPING_THRESHOLD = os.getenv("FREE_SHIPPING_THRESHOLD", "100.00")

    # Cart / order policy
    MAX_CART_QTY = int(os.getenv("MAX_CART_QTY", "10"))
    RETURN_WINDOW_DAYS = int(os.getenv("RETURN_WINDOW_DAYS", "30"))
    RESTOCK_ON_CANCEL = _env_bool("RESTOCK_ON_CANCEL", True)
    RESTOCK_ON_REFUND = _env_bool("RESTOCK_ON_REFUND", False)

    @staticmethod
    def init_app(app):
        if not os.getenv("DATABASE_URL"):
            os.makedirs(app.instance_path, exist_ok=True)
            app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{os.path.join(app.instance_path, 'app.db')}"
        else:
            app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL")

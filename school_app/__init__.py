import os
import logging
from datetime import timedelta
from flask import Flask, request, g
from flask_login import LoginManager, current_user
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_caching import Cache
from werkzeug.exceptions import HTTPException
from flask_limiter.errors import RateLimitExceeded

__version__ = "1.0.0"

# Global extensions
db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()


def _rate_key():
    try:
        ip = (request.headers.get("X-Forwarded-For") or request.remote_addr or "local").split(",")[0].strip()
        uid = ""
        if getattr(current_user, "is_authenticated", False):
            uid = str(current_user.user_id)
        path = (getattr(request, "path", "/") or "/")
        return f"{ip}|{uid}|{path}"
    except Exception:
        return "local"


limiter = Limiter(key_func=_rate_key)
cache = Cache()


def _configure_logging(app):
    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if not any(getattr(h, "_school_app", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        handler._school_app = True
        root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)


def create_app(overrides=None):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key")
    app.config["APP_ENV"] = os.environ.get("APP_ENV", "development")
    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO")

    # Token lifetimes (seconds)
    app.config["ACCESS_TOKEN_TTL"] = int(os.environ.get("ACCESS_TOKEN_TTL", "3600"))
    app.config["REFRESH_TOKEN_TTL"] = int(os.environ.get("REFRESH_TOKEN_TTL", str(14 * 24 * 3600)))
    app.config["PASSWORD_RESET_TTL"] = int(os.environ.get("PASSWORD_RESET_TTL", "3600"))

    REDIS_URL = os.environ.get("REDIS_URL")
    if REDIS_URL:
        app.config["CACHE_TYPE"] = "RedisCache"
        app.config["CACHE_REDIS_URL"] = REDIS_URL
        app.config["RATELIMIT_STORAGE_URI"] = REDIS_URL
    else:
        app.config["CACHE_TYPE"] = "SimpleCache"
    app.config["CACHE_DEFAULT_TIMEOUT"] = 300

    app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_CONTENT_LENGTH", str(8 * 1024 * 1024)))

    # Mail configuration (optional; welcome, reset, settlement and alert emails)
    app.config["MAIL_HOST"] = os.environ.get("MAIL_HOST")
    app.config["MAIL_PORT"] = int(os.environ.get("MAIL_PORT", "587"))
    app.config["MAIL_USER"] = os.environ.get("MAIL_USER")
    app.config["MAIL_PASSWORD"] = os.environ.get("MAIL_PASSWORD")
    app.config["MAIL_FROM"] = os.environ.get("MAIL_FROM", os.environ.get("MAIL_USER", "noreply@example.com"))
    app.config["MAIL_USE_TLS"] = (os.environ.get("MAIL_USE_TLS", "true").lower() == "true")
    app.config["MAIL_USE_SSL"] = (os.environ.get("MAIL_USE_SSL", "false").lower() == "true")
    app.config["SECURITY_ALERT_EMAIL"] = os.environ.get("SECURITY_ALERT_EMAIL")

    # Payments
    app.config["PAYMENT_GST_RATE"] = float(os.environ.get("PAYMENT_GST_RATE", "0.18"))
    # Fernet key for gateway credentials at rest
    app.config["PAYMENT_ENCRYPTION_KEY"] = os.environ.get("PAYMENT_ENCRYPTION_KEY")

    # Backups
    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    app.config["BACKUP_DIR"] = os.environ.get("BACKUP_DIR", os.path.join(base_dir, "backups"))
    app.config["BACKUP_RETENTION_DAYS"] = int(os.environ.get("BACKUP_RETENTION_DAYS", "30"))
    app.config["BACKUP_MAX_COUNT"] = int(os.environ.get("BACKUP_MAX_COUNT", "10"))

    # Database configuration: use DATABASE_URL if provided, else sqlite file
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(base_dir, 'school.db')}"

    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    app.config.setdefault("RATELIMIT_STORAGE_URI", "memory://")
    if overrides:
        app.config.update(overrides)

    _configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cache.init_app(app)
    login_manager.init_app(app)

    # Import models so they are registered with SQLAlchemy
    from . import models  # noqa: F401
    from .auth.services import load_user_from_request

    login_manager.request_loader(load_user_from_request)

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            return db.session.get(models.User, int(user_id))
        except (TypeError, ValueError):
            return None

    @login_manager.unauthorized_handler
    def unauthorized():
        from .api_utils import api_error
        return api_error("unauthorized", "Authentication required", 401)

    @app.before_request
    def check_maintenance_mode():
        # Login and health stay reachable so a Super Admin can get in
        if request.endpoint in ("auth.login", "health.health", "static"):
            return
        try:
            maint = db.session.get(models.SystemConfig, "maintenance_mode")
        except Exception:
            # If DB error or table missing, fail open
            app.logger.debug("maintenance check skipped", exc_info=True)
            return
        if maint and maint.config_value == "true":
            if current_user.is_authenticated and current_user.is_super_admin:
                return
            from .api_utils import api_error
            return api_error("maintenance", "The platform is under maintenance. Please try again later.", 503)

    @app.before_request
    def reset_campus_context():
        g.campus_id = None

    # Blueprints
    from .health import health_bp
    app.register_blueprint(health_bp)

    from .auth import auth_bp
    app.register_blueprint(auth_bp, url_prefix="/auth")

    from .users import users_bp
    app.register_blueprint(users_bp, url_prefix="/users")

    from .features import features_bp
    app.register_blueprint(features_bp, url_prefix="/campus-features")

    from .classes import classes_bp
    app.register_blueprint(classes_bp)

    from .attendance import attendance_bp
    app.register_blueprint(attendance_bp, url_prefix="/attendance")

    from .quizzes import quizzes_bp
    app.register_blueprint(quizzes_bp, url_prefix="/class-quiz")

    from .meetings import meetings_bp
    app.register_blueprint(meetings_bp, url_prefix="/meetings")

    from .notifications import notifications_bp
    app.register_blueprint(notifications_bp, url_prefix="/notifications")

    from .payments import payments_bp
    app.register_blueprint(payments_bp, url_prefix="/payment")

    from .super_admin import super_admin_bp
    app.register_blueprint(super_admin_bp, url_prefix="/super-admin")

    from .cli import register_cli
    register_cli(app)

    from .errors import AppError
    from .api_utils import api_error

    @app.errorhandler(AppError)
    def handle_app_error(e):
        if e.status_code >= 500:
            app.logger.error("%s: %s", e.code, e.message)
        return api_error(e.code, e.message, e.status_code, extra=e.extra)

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        return api_error("rate_limited", "Too many requests", 429)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        return api_error(str(e.code), e.description or "", e.code)

    # Create tables on first run (dev convenience)
    with app.app_context():
        db.create_all()

    app.logger.info("school_app started (env=%s)", app.config["APP_ENV"])
    return app

from flask import current_app
from flask_login import login_required, current_user
from sqlalchemy import text
from . import health_bp
from .. import db, cache, __version__
from ..api_utils import api_success
from ..models import utc_now


@health_bp.route("/health", methods=["GET"])
def health():
    checks = {}
    try:
        db.session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        current_app.logger.error("Health check database failure: %s", e)
        checks["database"] = "error"
    try:
        cache.set("__health_ping__", "ok", timeout=30)
        checks["cache"] = "ok" if cache.get("__health_ping__") == "ok" else "degraded"
    except Exception as e:
        current_app.logger.warning("Health check cache failure: %s", e)
        checks["cache"] = "error"
    checks["cache_backend"] = current_app.config.get("CACHE_TYPE")

    healthy = checks["database"] == "ok"
    data = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "environment": current_app.config.get("APP_ENV"),
        "timestamp": utc_now().isoformat(),
        "checks": checks,
    }
    return api_success(data, status=200 if healthy else 503)


@health_bp.route("/system-messages/active", methods=["GET"])
@login_required
def active_system_messages():
    from ..super_admin.services import active_messages_for
    return api_success({"items": [m.to_dict() for m in active_messages_for(current_user)]})

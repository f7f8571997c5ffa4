import logging
import time
import uuid
from flask import current_app, g, request
from flask_login import current_user
from .error_handler import handle_payment_error, format_error_response
from .security_monitor import security_monitor

logger = logging.getLogger(__name__)


def client_ip():
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr or "unknown"


def _event_type():
    segment = request.path.rstrip("/").split("/")[-1] or "unknown"
    return f"{request.method.lower()}_{segment}"


def request_context():
    """Monitoring context of the current payment request."""
    return getattr(g, "payment_ctx", None) or {}


def install_monitoring(bp):
    """Attach request auditing and coded error responses to a blueprint."""

    @bp.before_request
    def open_request_context():
        user_id = campus_id = user_type = None
        if current_user.is_authenticated:
            user_id = current_user.user_id
            user_type = current_user.user_type
            campus_id = current_user.campus_id_fk
        g.payment_ctx = {
            "request_id": str(uuid.uuid4()),
            "start_time": time.monotonic(),
            "user_id": user_id,
            "user_type": user_type,
            "campus_id": campus_id,
            "ip_address": client_ip(),
            "user_agent": request.headers.get("User-Agent", "unknown"),
            "endpoint": request.path,
            "method": request.method,
        }
        logger.info("[PAYMENT_REQUEST] %s %s request=%s user=%s campus=%s",
                    request.method, request.path, g.payment_ctx["request_id"], user_id, campus_id)

    @bp.after_request
    def record_request(response):
        ctx = request_context()
        if not ctx:
            return response
        elapsed_ms = int((time.monotonic() - ctx["start_time"]) * 1000)
        success = response.status_code < 400
        security_monitor.log_audit_event(
            _event_type(),
            success,
            campus_id=ctx["campus_id"],
            user_id=ctx["user_id"],
            details={"endpoint": ctx["endpoint"], "method": ctx["method"],
                     "status": response.status_code, "error_code": g.get("payment_error_code")},
            request_id=ctx["request_id"],
            execution_time_ms=elapsed_ms,
        )
        response.headers["X-Request-ID"] = ctx["request_id"]
        logger.info("[PAYMENT_RESPONSE] %s %s status=%s time_ms=%d",
                    ctx["method"], ctx["endpoint"], response.status_code, elapsed_ms)
        return response

    @bp.errorhandler(Exception)
    def payment_error(exc):
        ctx = request_context()
        err, status = handle_payment_error(exc, security_monitor, {
            "request_id": ctx.get("request_id"),
            "endpoint": request.path,
            "method": request.method,
            "user_id": ctx.get("user_id"),
            "campus_id": ctx.get("campus_id"),
            "ip_address": ctx.get("ip_address"),
            "user_agent": ctx.get("user_agent"),
        })
        g.payment_error_code = err.code
        if status >= 500:
            current_app.logger.exception("[PAYMENT_ERROR] %s %s code=%s", request.method, request.path, err.code)
        include_details = current_app.config.get("APP_ENV") == "development"
        return format_error_response(err, include_details), status

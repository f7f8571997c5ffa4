from flask import request, g
from flask_login import login_required, current_user
from . import auth_bp
from . import services
from .. import limiter
from ..api_utils import api_success, get_json, require_fields


def _client_ip():
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    payload = get_json()
    data = services.login(
        payload.get("email"),
        payload.get("password"),
        ip_address=_client_ip(),
        user_agent=request.headers.get("User-Agent"),
    )
    return api_success(data)


@auth_bp.route("/refresh", methods=["POST"])
def refresh():
    payload = get_json()
    require_fields(payload, "refresh_token")
    return api_success(services.refresh(payload["refresh_token"]))


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    services.logout(getattr(g, "session_id", None))
    return api_success({"logged_out": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    data = current_user.to_dict()
    data["campus"] = current_user.campus.to_dict() if current_user.campus else None
    return api_success(data)


@auth_bp.route("/change-password", methods=["POST"])
@login_required
def change_password():
    payload = get_json()
    require_fields(payload, "current_password", "new_password")
    services.change_password(
        current_user,
        payload["current_password"],
        payload["new_password"],
        keep_session_id=getattr(g, "session_id", None),
    )
    return api_success({"message": "Password updated"})


@auth_bp.route("/forgot-password", methods=["POST"])
@limiter.limit("5 per minute")
def forgot_password():
    payload = get_json()
    require_fields(payload, "email")
    services.request_password_reset(payload["email"])
    # Same answer whether or not the account exists
    return api_success({"message": "If the account exists, a reset email has been sent."})


@auth_bp.route("/reset-password", methods=["POST"])
def reset_password():
    payload = get_json()
    require_fields(payload, "token", "password")
    services.reset_password(payload["token"], payload["password"])
    return api_success({"message": "Password has been reset"})

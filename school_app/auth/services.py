import uuid
from datetime import timedelta
from flask import current_app, g
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from werkzeug.security import generate_password_hash, check_password_hash
from .. import db
from ..models import User, UserSession, utc_now
from ..errors import UnauthorizedError, ForbiddenError, ValidationError
from ..email_utils import send_templated_email

ACCESS_SALT = "access-token"
REFRESH_SALT = "refresh-token"
RESET_SALT = "password-reset"

MIN_PASSWORD_LENGTH = 8


def _serializer(salt):
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=salt)


def validate_password(password):
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def hash_password(password):
    validate_password(password)
    return generate_password_hash(password)


def _campus_blocked(user):
    return (not user.is_super_admin) and user.campus is not None and not user.campus.is_active


def issue_tokens(user, ip_address=None, user_agent=None):
    """Open a login session for `user` and sign access/refresh tokens bound to it."""
    cfg = current_app.config
    sess = UserSession(
        session_id=uuid.uuid4().hex,
        user_id_fk=user.user_id,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:255] or None,
        expires_at=utc_now() + timedelta(seconds=cfg["REFRESH_TOKEN_TTL"]),
    )
    db.session.add(sess)
    db.session.commit()
    claims = {"uid": user.user_id, "sid": sess.session_id}
    return {
        "access_token": _serializer(ACCESS_SALT).dumps(claims),
        "refresh_token": _serializer(REFRESH_SALT).dumps(claims),
        "token_type": "Bearer",
        "expires_in": cfg["ACCESS_TOKEN_TTL"],
        "session_id": sess.session_id,
    }


def _resolve_token(token, salt, max_age):
    try:
        claims = _serializer(salt).loads(token, max_age=max_age)
    except SignatureExpired:
        return None
    except BadSignature:
        return None
    if not isinstance(claims, dict):
        return None
    sess = db.session.get(UserSession, claims.get("sid"))
    if not sess or sess.revoked_at or sess.expires_at < utc_now() or sess.user_id_fk != claims.get("uid"):
        return None
    user = db.session.get(User, claims.get("uid"))
    if not user or not user.is_active or user.is_deleted or _campus_blocked(user):
        return None
    return user, sess


def load_user_from_request(req):
    """Flask-Login request loader for `Authorization: Bearer <token>`."""
    header = req.headers.get("Authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    resolved = _resolve_token(header[7:].strip(), ACCESS_SALT, current_app.config["ACCESS_TOKEN_TTL"])
    if not resolved:
        return None
    user, sess = resolved
    g.session_id = sess.session_id
    return user


def login(email, password, ip_address=None, user_agent=None):
    email = (email or "").strip().lower()
    if not email or not password:
        raise ValidationError("Email and password are required")
    user = User.query.filter_by(email=email, is_deleted=False).first()
    if not user or not check_password_hash(user.password_hash, password):
        current_app.logger.info("Failed login for %s from %s", email, ip_address)
        raise UnauthorizedError("Invalid email or password", code="invalid_credentials")
    if not user.is_active:
        raise ForbiddenError("Account is disabled", code="account_disabled")
    if _campus_blocked(user):
        raise ForbiddenError("Campus is currently suspended", code="campus_inactive")

    user.last_login = utc_now()
    user.last_login_ip = ip_address
    db.session.commit()
    tokens = issue_tokens(user, ip_address, user_agent)
    tokens["user"] = user.to_dict()
    return tokens


def refresh(refresh_token):
    resolved = _resolve_token(refresh_token or "", REFRESH_SALT, current_app.config["REFRESH_TOKEN_TTL"])
    if not resolved:
        raise UnauthorizedError("Invalid or expired refresh token", code="invalid_token")
    user, sess = resolved
    claims = {"uid": user.user_id, "sid": sess.session_id}
    return {
        "access_token": _serializer(ACCESS_SALT).dumps(claims),
        "token_type": "Bearer",
        "expires_in": current_app.config["ACCESS_TOKEN_TTL"],
    }


def logout(session_id):
    sess = db.session.get(UserSession, session_id) if session_id else None
    if sess and not sess.revoked_at:
        sess.revoked_at = utc_now()
        db.session.commit()


def revoke_all_sessions(user, keep_session_id=None):
    now = utc_now()
    q = UserSession.query.filter(UserSession.user_id_fk == user.user_id, UserSession.revoked_at.is_(None))
    count = 0
    for sess in q.all():
        if sess.session_id == keep_session_id:
            continue
        sess.revoked_at = now
        count += 1
    return count


def change_password(user, current_password, new_password, keep_session_id=None):
    if not check_password_hash(user.password_hash, current_password or ""):
        raise UnauthorizedError("Current password is incorrect", code="invalid_credentials")
    user.password_hash = hash_password(new_password)
    revoke_all_sessions(user, keep_session_id=keep_session_id)
    db.session.commit()


def make_reset_token(user):
    # Bound to the current hash so a token stops working once the password changes
    return _serializer(RESET_SALT).dumps({"uid": user.user_id, "ph": user.password_hash[-16:]})


def request_password_reset(email):
    """Email a reset token when the account exists. Never reveals whether it does."""
    user = User.query.filter_by(email=(email or "").strip().lower(), is_deleted=False, is_active=True).first()
    if not user:
        return False
    token = make_reset_token(user)
    ttl = current_app.config["PASSWORD_RESET_TTL"]
    return send_templated_email(
        "password_reset",
        user.email,
        user_name=user.full_name,
        reset_token=token,
        expires_minutes=max(1, ttl // 60),
    )


def reset_password(token, new_password):
    try:
        claims = _serializer(RESET_SALT).loads(token or "", max_age=current_app.config["PASSWORD_RESET_TTL"])
    except SignatureExpired:
        raise ValidationError("Reset token has expired", code="invalid_token")
    except BadSignature:
        raise ValidationError("Invalid reset token", code="invalid_token")
    user = db.session.get(User, claims.get("uid"))
    if not user or user.password_hash[-16:] != claims.get("ph"):
        raise ValidationError("Invalid reset token", code="invalid_token")
    user.password_hash = hash_password(new_password)
    revoke_all_sessions(user)
    db.session.commit()
    return user

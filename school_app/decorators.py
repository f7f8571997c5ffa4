from functools import wraps
from flask import current_app, request, g
from flask_login import current_user
from .errors import ForbiddenError, ValidationError


def role_required(*roles):
    """
    Decorator to ensure the current user has one of the allowed user types.
    Must be placed *after* @login_required.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return current_app.login_manager.unauthorized()

            user_type = (getattr(current_user, "user_type", "") or "").strip().lower()
            allowed = {r.strip().lower() for r in roles}

            if user_type not in allowed:
                raise ForbiddenError("You do not have permission to access this resource.")

            return func(*args, **kwargs)
        return wrapper
    return decorator


def super_admin_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            return current_app.login_manager.unauthorized()
        if not current_user.is_super_admin:
            raise ForbiddenError("Super Admin access required")
        return func(*args, **kwargs)
    return wrapper


def resolve_campus_id():
    """Campus of the current request.

    Regular users are pinned to their own campus. A Super Admin picks one with
    ?campus_id= or a campus_id body field and may get None.
    """
    if not current_user.is_authenticated:
        return None
    if not current_user.is_super_admin:
        return current_user.campus_id_fk
    raw = request.args.get("campus_id")
    if raw in (None, ""):
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            raw = body.get("campus_id")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("campus_id must be an integer")


def campus_required(func):
    """Resolve g.campus_id; must be placed *after* @login_required."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            return current_app.login_manager.unauthorized()
        campus_id = resolve_campus_id()
        if not campus_id:
            raise ValidationError("Campus ID is required", code="campus_required")
        g.campus_id = campus_id
        return func(*args, **kwargs)
    return wrapper


def feature_required(feature):
    """Block the route when `feature` is disabled for the caller's campus."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return current_app.login_manager.unauthorized()
            if current_user.is_super_admin:
                return func(*args, **kwargs)
            campus_id = resolve_campus_id()
            if not campus_id:
                raise ValidationError("Campus ID is required", code="campus_required")
            from .features.services import is_feature_enabled
            if not is_feature_enabled(campus_id, feature):
                label = feature.replace("_", " ").title()
                raise ForbiddenError(
                    f"{label} feature is disabled for this campus",
                    code="feature_disabled",
                    extra={"feature": feature, "campus_id": campus_id},
                )
            return func(*args, **kwargs)
        return wrapper
    return decorator

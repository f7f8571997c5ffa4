import json
from datetime import datetime, date
from flask import jsonify, request
from .errors import ValidationError


def api_success(data=None, meta=None, status=200):
    body = {"success": True, "data": data if data is not None else {}, "meta": meta or {}}
    return jsonify(body), status


def api_error(code="error", message="", status=400, extra=None):
    body = {"success": False, "error": {"code": code, "message": message}}
    if extra:
        body.update(extra)
    return jsonify(body), status


def get_json():
    """Request body as a dict; a non-object body is a validation error."""
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def require_fields(payload, *names):
    missing = [n for n in names if payload.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", extra={"fields": missing})


def page_args(default_limit=20, max_limit=100):
    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = int(request.args.get("limit", default_limit))
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers")
    limit = max(1, min(limit, max_limit))
    return page, limit


def paginate(query, page, limit):
    """Apply offset/limit to a SQLAlchemy query and return (items, meta)."""
    total = query.count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    pages = (total + limit - 1) // limit if total else 0
    return items, {"page": page, "limit": limit, "total": total, "pages": pages}


def parse_datetime(value, field="date"):
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise ValidationError(f"Invalid {field}: expected ISO-8601 datetime")


def parse_date(value, field="date"):
    if value in (None, ""):
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid {field}: expected YYYY-MM-DD")


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_int(value, field, required=False):
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")


def load_json(text, default=None):
    if not text:
        return default
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return default


def iso(value):
    return value.isoformat() if value else None

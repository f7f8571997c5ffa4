from flask import request, g
from flask_login import login_required, current_user
from . import users_bp
from . import services
from ..api_utils import api_success, get_json, require_fields, page_args, paginate, parse_bool
from ..decorators import role_required, campus_required, resolve_campus_id


@users_bp.route("", methods=["POST"])
@login_required
@role_required("Super Admin", "Admin")
def create_user():
    payload = get_json()
    require_fields(payload, "email", "password", "first_name", "user_type")
    user = services.create_user(resolve_campus_id(), payload, current_user)
    return api_success(user.to_dict(), status=201)


@users_bp.route("", methods=["GET"])
@login_required
@role_required("Super Admin", "Admin", "Teacher")
@campus_required
def list_users():
    page, limit = page_args()
    q = services.list_users(
        g.campus_id,
        user_type=request.args.get("user_type"),
        search=request.args.get("search"),
        include_inactive=parse_bool(request.args.get("include_inactive")),
    )
    items, meta = paginate(q, page, limit)
    return api_success({"items": [u.to_dict() for u in items]}, meta)


@users_bp.route("/<int:user_id>", methods=["GET"])
@login_required
@campus_required
def get_user(user_id):
    user = services.get_campus_user(g.campus_id, user_id)
    return api_success(user.to_dict())


@users_bp.route("/<int:user_id>", methods=["PUT", "PATCH"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def update_user(user_id):
    user = services.update_user(g.campus_id, user_id, get_json())
    return api_success(user.to_dict())


@users_bp.route("/<int:user_id>", methods=["DELETE"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def delete_user(user_id):
    services.delete_user(g.campus_id, user_id, current_user)
    return api_success({"deleted": True, "user_id": user_id})

from flask import request, g
from flask_login import login_required, current_user
from . import notifications_bp
from . import services
from ..api_utils import api_success, get_json, page_args, paginate, parse_bool
from ..decorators import role_required, campus_required


@notifications_bp.route("", methods=["POST"])
@login_required
@role_required("Super Admin", "Admin", "Teacher")
@campus_required
def create():
    notification, recipients, emailed = services.create_notification(g.campus_id, get_json(), current_user)
    data = notification.to_dict()
    data.update({"recipient_count": recipients, "emails_sent": emailed})
    return api_success(data, status=201)


@notifications_bp.route("/mine", methods=["GET"])
@login_required
def mine():
    query = services.my_notifications_query(
        current_user.user_id, unseen_only=parse_bool(request.args.get("unseen")))
    page, limit = page_args()
    rows, meta = paginate(query, page, limit)
    return api_success({"items": services.serialize_recipients(rows)}, meta=meta)


@notifications_bp.route("/unseen-count", methods=["GET"])
@login_required
def unseen_count():
    return api_success({"unseen": services.unseen_count(current_user.user_id)})


@notifications_bp.route("/<int:notification_id>/seen", methods=["POST"])
@login_required
def mark_seen(notification_id):
    row = services.mark_seen(current_user.user_id, notification_id)
    return api_success({"notification_id": notification_id, "seen_at": row.seen_at.isoformat()})


@notifications_bp.route("/seen-all", methods=["POST"])
@login_required
def mark_all_seen():
    return api_success({"marked": services.mark_all_seen(current_user.user_id)})


@notifications_bp.route("", methods=["GET"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def campus_list():
    query = services.campus_notifications_query(g.campus_id, scope=request.args.get("scope"))
    page, limit = page_args()
    items, meta = paginate(query, page, limit)
    data = []
    for n in items:
        row = n.to_dict()
        row["delivery"] = services.delivery_stats(n)
        data.append(row)
    return api_success({"items": data}, meta=meta)


@notifications_bp.route("/<int:notification_id>", methods=["DELETE"])
@login_required
@role_required("Super Admin", "Admin", "Teacher")
@campus_required
def delete(notification_id):
    services.delete_notification(g.campus_id, notification_id, current_user)
    return api_success({"deleted": True, "notification_id": notification_id})

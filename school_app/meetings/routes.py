from flask import request, g
from flask_login import login_required, current_user
from . import meetings_bp
from . import services
from .. import limiter
from ..api_utils import api_success, get_json, page_args, paginate, parse_bool
from ..decorators import role_required, campus_required, feature_required

MEETING_LIMIT = "100 per 15 minutes"
STRICT_LIMIT = "10 per 10 minutes"
ORGANIZERS = ("Super Admin", "Admin", "Teacher")


def _meeting_data(meeting):
    data = meeting.to_dict()
    if current_user.user_type in ("Super Admin", "Admin"):
        data["audit_trail"] = meeting.audit_trail
    return data


@meetings_bp.route("", methods=["POST"])
@limiter.limit(STRICT_LIMIT)
@login_required
@role_required(*ORGANIZERS)
@campus_required
@feature_required("meetings")
def create_meeting():
    meeting = services.create_meeting(g.campus_id, get_json(), current_user)
    return api_success(_meeting_data(meeting), status=201)


@meetings_bp.route("", methods=["GET"])
@limiter.limit(MEETING_LIMIT)
@login_required
@campus_required
@feature_required("meetings")
def list_meetings():
    status = request.args.get("status")
    upcoming = parse_bool(request.args.get("upcoming"))
    if current_user.user_type in ("Super Admin", "Admin"):
        query = services.list_campus_meetings(g.campus_id, status, upcoming)
    else:
        query = services.list_user_meetings(g.campus_id, current_user.user_id, status, upcoming)
    page, limit = page_args()
    items, meta = paginate(query, page, limit)
    return api_success({"items": [m.to_dict() for m in items]}, meta=meta)


@meetings_bp.route("/mine", methods=["GET"])
@limiter.limit(MEETING_LIMIT)
@login_required
@campus_required
@feature_required("meetings")
def my_meetings():
    query = services.list_user_meetings(
        g.campus_id, current_user.user_id,
        request.args.get("status"), parse_bool(request.args.get("upcoming")),
    )
    page, limit = page_args()
    items, meta = paginate(query, page, limit)
    return api_success({"items": [m.to_dict() for m in items]}, meta=meta)


@meetings_bp.route("/<int:meeting_id>", methods=["GET"])
@limiter.limit(MEETING_LIMIT)
@login_required
@campus_required
@feature_required("meetings")
def get_meeting(meeting_id):
    meeting = services.get_visible_meeting(g.campus_id, meeting_id, current_user)
    return api_success(_meeting_data(meeting))


@meetings_bp.route("/<int:meeting_id>", methods=["PUT", "PATCH"])
@limiter.limit(MEETING_LIMIT)
@login_required
@campus_required
@feature_required("meetings")
def update_meeting(meeting_id):
    meeting = services.update_meeting(g.campus_id, meeting_id, get_json(), current_user)
    return api_success(_meeting_data(meeting))


@meetings_bp.route("/<int:meeting_id>", methods=["DELETE"])
@limiter.limit(MEETING_LIMIT)
@login_required
@campus_required
@feature_required("meetings")
def cancel_meeting(meeting_id):
    meeting = services.cancel_meeting(g.campus_id, meeting_id, current_user)
    return api_success({"meeting_id": meeting.meeting_id, "meeting_status": meeting.meeting_status})


@meetings_bp.route("/<int:meeting_id>/start", methods=["POST"])
@limiter.limit(STRICT_LIMIT)
@login_required
@campus_required
@feature_required("meetings")
def start_meeting(meeting_id):
    meeting = services.start_meeting(g.campus_id, meeting_id, current_user)
    return api_success(_meeting_data(meeting))


@meetings_bp.route("/<int:meeting_id>/end", methods=["POST"])
@limiter.limit(MEETING_LIMIT)
@login_required
@campus_required
@feature_required("meetings")
def end_meeting(meeting_id):
    meeting, duration = services.end_meeting(g.campus_id, meeting_id, current_user)
    data = _meeting_data(meeting)
    data["duration_minutes"] = duration
    return api_success(data)


@meetings_bp.route("/<int:meeting_id>/participants", methods=["POST"])
@limiter.limit(MEETING_LIMIT)
@login_required
@campus_required
@feature_required("meetings")
def add_participants(meeting_id):
    return api_success(services.add_participants(g.campus_id, meeting_id, get_json(), current_user))


@meetings_bp.route("/<int:meeting_id>/participants/remove", methods=["POST"])
@limiter.limit(MEETING_LIMIT)
@login_required
@campus_required
@feature_required("meetings")
def remove_participants(meeting_id):
    return api_success(services.remove_participants(g.campus_id, meeting_id, get_json(), current_user))

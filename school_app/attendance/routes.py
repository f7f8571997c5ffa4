from flask import request, g
from flask_login import login_required, current_user
from . import attendance_bp
from . import services
from ..api_utils import api_success, api_error, get_json, parse_date, parse_int
from ..decorators import role_required, campus_required
from ..errors import ForbiddenError, ValidationError
from ..exports import tabular_response
from ..users.services import children_of

STAFF = ("Super Admin", "Admin", "Teacher")


def _batch_response(result):
    if not result["successful_count"]:
        return api_error("attendance_not_marked", "No attendance records were saved", 400, extra={"data": result})
    return api_success(result, status=201)


@attendance_bp.route("/mark", methods=["POST"])
@login_required
@role_required(*STAFF)
@campus_required
def mark():
    result = services.mark_attendance(g.campus_id, get_json(), current_user.user_id)
    return _batch_response(result)


@attendance_bp.route("/bulk", methods=["POST"])
@login_required
@role_required(*STAFF)
@campus_required
def mark_bulk():
    result = services.mark_bulk_attendance(g.campus_id, get_json(), current_user.user_id)
    return _batch_response(result)


@attendance_bp.route("/<int:attendance_id>", methods=["PUT", "PATCH"])
@login_required
@role_required(*STAFF)
@campus_required
def update(attendance_id):
    record = services.update_attendance(g.campus_id, attendance_id, get_json(), current_user.user_id)
    return api_success(record.to_dict())


@attendance_bp.route("/<int:attendance_id>", methods=["DELETE"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def delete(attendance_id):
    services.delete_attendance(g.campus_id, attendance_id)
    return api_success({"deleted": True, "attendance_id": attendance_id})


@attendance_bp.route("/date/<day>", methods=["GET"])
@login_required
@role_required(*STAFF)
@campus_required
def by_date(day):
    records = services.by_date(
        g.campus_id,
        parse_date(day),
        user_type=request.args.get("user_type"),
        class_id=parse_int(request.args.get("class_id"), "class_id"),
    )
    return api_success({"items": [r.to_dict() for r in records], "date": day})


@attendance_bp.route("/class/<int:class_id>/date/<day>", methods=["GET"])
@login_required
@role_required(*STAFF)
@campus_required
def by_class_date(class_id, day):
    records = services.by_date(g.campus_id, parse_date(day), class_id=class_id)
    return api_success({"items": [r.to_dict() for r in records], "class_id": class_id, "date": day})


@attendance_bp.route("/user/<int:user_id>", methods=["GET"])
@login_required
@role_required(*STAFF)
@campus_required
def by_user(user_id):
    records = services.by_user(
        g.campus_id, user_id,
        parse_date(request.args.get("start_date"), "start_date"),
        parse_date(request.args.get("end_date"), "end_date"),
    )
    return api_success({"items": [r.to_dict() for r in records], "summary": services.summarize(records)})


@attendance_bp.route("/class/<int:class_id>/report", methods=["GET"])
@login_required
@role_required(*STAFF)
@campus_required
def class_report(class_id):
    report = services.class_report(
        g.campus_id, class_id,
        parse_date(request.args.get("start_date"), "start_date"),
        parse_date(request.args.get("end_date"), "end_date"),
    )
    fmt = (request.args.get("format") or "json").lower()
    if fmt == "json":
        return api_success(report)
    headers = ["Student ID", "Student", "Days", "Present", "Late", "Absent", "Leave", "Attendance %", "Band"]
    rows = [
        [r["student_id"], r["student_name"], r["total_days"], r["present"], r["late"],
         r["absent"], r["leave"], r["percentage"], r["band"]]
        for r in report["students"]
    ]
    return tabular_response(headers, rows, f"attendance_class_{class_id}", fmt, sheet_title="Attendance")


@attendance_bp.route("/student/<int:student_id>", methods=["GET"])
@login_required
@campus_required
def student_view(student_id):
    allowed = current_user.user_type in STAFF
    if current_user.user_type == "Student":
        allowed = current_user.user_id == student_id
    elif current_user.user_type == "Parent":
        allowed = student_id in [c.user_id for c in children_of(current_user)]
    if not allowed:
        raise ForbiddenError("You cannot view this student's attendance")
    return api_success(services.student_view(
        g.campus_id, student_id,
        parse_date(request.args.get("start_date"), "start_date"),
        parse_date(request.args.get("end_date"), "end_date"),
    ))


@attendance_bp.route("/me", methods=["GET"])
@login_required
@campus_required
def my_attendance():
    if current_user.user_type == "Parent":
        children = children_of(current_user)
        if not children:
            raise ValidationError("No student is linked to this parent account")
        student_id = children[0].user_id
    else:
        student_id = current_user.user_id
    return api_success(services.student_view(
        g.campus_id, student_id,
        parse_date(request.args.get("start_date"), "start_date"),
        parse_date(request.args.get("end_date"), "end_date"),
    ))

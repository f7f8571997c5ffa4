from flask import request, g
from flask_login import login_required, current_user
from . import classes_bp
from . import services
from ..api_utils import api_success, get_json, require_fields, parse_bool, parse_int
from ..decorators import role_required, campus_required
from ..errors import ForbiddenError
from ..users.services import children_of

STAFF = ("Super Admin", "Admin", "Teacher")


# ==========================================
# CLASSES
# ==========================================

@classes_bp.route("/classes", methods=["POST"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def create_class():
    cls = services.create_class(g.campus_id, get_json())
    return api_success(cls.to_dict(), status=201)


@classes_bp.route("/classes", methods=["GET"])
@login_required
@campus_required
def list_classes():
    q = services.list_classes(
        g.campus_id,
        academic_year=request.args.get("academic_year"),
        include_inactive=parse_bool(request.args.get("include_inactive")),
    )
    return api_success({"items": [c.to_dict() for c in q.all()]})


@classes_bp.route("/classes/academic-years", methods=["GET"])
@login_required
@campus_required
def academic_years():
    return api_success({"items": services.academic_years(g.campus_id)})


@classes_bp.route("/classes/<int:class_id>", methods=["GET"])
@login_required
@campus_required
def get_class(class_id):
    return api_success(services.get_class(g.campus_id, class_id).to_dict())


@classes_bp.route("/classes/<int:class_id>", methods=["PUT", "PATCH"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def update_class(class_id):
    cls = services.update_class(g.campus_id, class_id, get_json())
    return api_success(cls.to_dict())


@classes_bp.route("/classes/<int:class_id>", methods=["DELETE"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def delete_class(class_id):
    services.delete_class(g.campus_id, class_id)
    return api_success({"deleted": True, "class_id": class_id})


@classes_bp.route("/classes/<int:class_id>/students", methods=["GET"])
@login_required
@role_required(*STAFF)
@campus_required
def class_students(class_id):
    students = services.class_students(g.campus_id, class_id)
    return api_success({"items": [s.to_dict() for s in students]})


@classes_bp.route("/classes/<int:class_id>/students", methods=["POST"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def assign_students(class_id):
    payload = get_json()
    require_fields(payload, "student_ids")
    return api_success(services.assign_students(g.campus_id, class_id, payload["student_ids"]))


@classes_bp.route("/classes/<int:class_id>/students/remove", methods=["POST"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def remove_students(class_id):
    payload = get_json()
    require_fields(payload, "student_ids")
    return api_success(services.remove_students(g.campus_id, class_id, payload["student_ids"]))


@classes_bp.route("/classes/<int:class_id>/teachers", methods=["POST"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def assign_teachers(class_id):
    payload = get_json()
    require_fields(payload, "teacher_ids")
    return api_success(services.assign_teachers(g.campus_id, class_id, payload["teacher_ids"]))


@classes_bp.route("/classes/<int:class_id>/teachers/remove", methods=["POST"])
@login_required
@role_required("Super Admin", "Admin")
@campus_required
def remove_teachers(class_id):
    payload = get_json()
    require_fields(payload, "teacher_ids")
    return api_success(services.remove_teachers(g.campus_id, class_id, payload["teacher_ids"]))


@classes_bp.route("/students/<int:student_id>/classes", methods=["GET"])
@login_required
@campus_required
def student_classes(student_id):
    _check_student_access(student_id)
    classes = services.classes_for_student(g.campus_id, student_id)
    return api_success({"items": [c.to_dict() for c in classes]})


# ==========================================
# ASSIGNMENTS
# ==========================================

@classes_bp.route("/assignments", methods=["POST"])
@login_required
@role_required(*STAFF)
@campus_required
def create_assignment():
    assignment = services.create_assignment(g.campus_id, get_json(), current_user)
    return api_success(assignment.to_dict(), status=201)


@classes_bp.route("/assignments", methods=["GET"])
@login_required
@role_required(*STAFF)
@campus_required
def list_assignments():
    q = services.list_assignments(
        g.campus_id,
        class_id=parse_int(request.args.get("class_id"), "class_id"),
        created_by=parse_int(request.args.get("created_by"), "created_by"),
        status=request.args.get("status"),
    )
    return api_success({"items": [a.to_dict() for a in q.all()]})


@classes_bp.route("/assignments/stats", methods=["GET"])
@login_required
@role_required(*STAFF)
@campus_required
def assignment_campus_stats():
    class_id = parse_int(request.args.get("class_id"), "class_id")
    return api_success(services.campus_assignment_stats(g.campus_id, class_id))


@classes_bp.route("/assignments/<int:assignment_id>", methods=["GET"])
@login_required
@campus_required
def get_assignment(assignment_id):
    assignment = services.get_assignment(g.campus_id, assignment_id)
    data = assignment.to_dict()
    if current_user.user_type in STAFF:
        data["stats"] = services.assignment_stats(assignment)
    return api_success(data)


@classes_bp.route("/assignments/<int:assignment_id>", methods=["PUT", "PATCH"])
@login_required
@role_required(*STAFF)
@campus_required
def update_assignment(assignment_id):
    assignment = services.update_assignment(g.campus_id, assignment_id, get_json(), current_user)
    return api_success(assignment.to_dict())


@classes_bp.route("/assignments/<int:assignment_id>", methods=["DELETE"])
@login_required
@role_required(*STAFF)
@campus_required
def delete_assignment(assignment_id):
    services.delete_assignment(g.campus_id, assignment_id, current_user)
    return api_success({"deleted": True, "assignment_id": assignment_id})


@classes_bp.route("/assignments/<int:assignment_id>/submissions", methods=["POST"])
@login_required
@role_required("Student")
@campus_required
def submit_assignment(assignment_id):
    submission = services.submit_assignment(g.campus_id, assignment_id, current_user, get_json())
    return api_success(submission.to_dict(), status=201)


@classes_bp.route("/assignments/<int:assignment_id>/submissions", methods=["GET"])
@login_required
@role_required(*STAFF)
@campus_required
def list_submissions(assignment_id):
    submissions = services.list_submissions(g.campus_id, assignment_id)
    return api_success({"items": [s.to_dict() for s in submissions]})


@classes_bp.route("/submissions/<int:submission_id>/grade", methods=["POST"])
@login_required
@role_required(*STAFF)
@campus_required
def grade_submission(submission_id):
    payload = get_json()
    require_fields(payload, "grade")
    submission = services.grade_submission(
        g.campus_id, submission_id, payload["grade"], payload.get("feedback"), current_user
    )
    return api_success(submission.to_dict())


@classes_bp.route("/students/<int:student_id>/assignments", methods=["GET"])
@login_required
@campus_required
def student_assignments(student_id):
    _check_student_access(student_id)
    return api_success({"items": services.student_assignments(g.campus_id, student_id)})


def _check_student_access(student_id):
    if current_user.user_type in STAFF:
        return
    if current_user.user_type == "Student" and current_user.user_id == student_id:
        return
    if current_user.user_type == "Parent" and student_id in [c.user_id for c in children_of(current_user)]:
        return
    raise ForbiddenError("You cannot view this student's records")

from flask import request, g
from flask_login import login_required, current_user
from . import quizzes_bp
from . import services
from ..api_utils import api_success, get_json, require_fields, parse_bool, parse_int
from ..decorators import role_required, campus_required

STAFF = ("Super Admin", "Admin", "Teacher")


@quizzes_bp.route("/quizzes", methods=["POST"])
@login_required
@role_required(*STAFF)
@campus_required
def create_quiz():
    quiz = services.create_quiz(g.campus_id, get_json(), current_user)
    return api_success(quiz.to_dict(), status=201)


@quizzes_bp.route("/quizzes", methods=["GET"])
@login_required
@campus_required
def list_quizzes():
    include_inactive = parse_bool(request.args.get("include_inactive")) and current_user.user_type in STAFF
    quizzes = services.list_quizzes(
        g.campus_id,
        class_id=parse_int(request.args.get("class_id"), "class_id"),
        include_inactive=include_inactive,
    )
    return api_success({"items": [q.to_dict() for q in quizzes]})


@quizzes_bp.route("/quizzes/<int:quiz_id>", methods=["GET"])
@login_required
@campus_required
def get_quiz(quiz_id):
    quiz = services.get_quiz(g.campus_id, quiz_id)
    data = quiz.to_dict()
    if current_user.user_type in STAFF:
        data["questions"] = [q.to_dict() for q in services.active_questions(quiz)]
    return api_success(data)


@quizzes_bp.route("/quizzes/<int:quiz_id>", methods=["PUT", "PATCH"])
@login_required
@role_required(*STAFF)
@campus_required
def update_quiz(quiz_id):
    return api_success(services.update_quiz(g.campus_id, quiz_id, get_json(), current_user).to_dict())


@quizzes_bp.route("/quizzes/<int:quiz_id>", methods=["DELETE"])
@login_required
@role_required(*STAFF)
@campus_required
def delete_quiz(quiz_id):
    services.delete_quiz(g.campus_id, quiz_id, current_user)
    return api_success({"deleted": True, "quiz_id": quiz_id})


@quizzes_bp.route("/quizzes/<int:quiz_id>/questions", methods=["POST"])
@login_required
@role_required(*STAFF)
@campus_required
def add_question(quiz_id):
    question = services.add_question(g.campus_id, quiz_id, get_json(), current_user)
    return api_success(question.to_dict(), status=201)


@quizzes_bp.route("/quizzes/<int:quiz_id>/questions/<int:question_id>", methods=["PUT", "PATCH"])
@login_required
@role_required(*STAFF)
@campus_required
def update_question(quiz_id, question_id):
    question = services.update_question(g.campus_id, quiz_id, question_id, get_json(), current_user)
    return api_success(question.to_dict())


@quizzes_bp.route("/quizzes/<int:quiz_id>/questions/<int:question_id>", methods=["DELETE"])
@login_required
@role_required(*STAFF)
@campus_required
def delete_question(quiz_id, question_id):
    services.delete_question(g.campus_id, quiz_id, question_id, current_user)
    return api_success({"deleted": True, "question_id": question_id})


@quizzes_bp.route("/quizzes/<int:quiz_id>/statistics", methods=["GET"])
@login_required
@role_required(*STAFF)
@campus_required
def quiz_statistics(quiz_id):
    return api_success(services.quiz_statistics(g.campus_id, quiz_id))


# ==========================================
# SESSIONS
# ==========================================

@quizzes_bp.route("/quizzes/<int:quiz_id>/start", methods=["POST"])
@login_required
@role_required("Student")
@campus_required
def start_session(quiz_id):
    session, resumed = services.start_quiz_session(g.campus_id, quiz_id, current_user)
    data = services.session_view(session)
    data["resumed"] = resumed
    return api_success(data, status=200 if resumed else 201)


@quizzes_bp.route("/sessions/<token>", methods=["GET"])
@login_required
def get_session(token):
    session = services.get_session_by_token(token, current_user)
    return api_success(services.session_view(session))


@quizzes_bp.route("/sessions/<token>/answer", methods=["POST"])
@login_required
def submit_answer(token):
    payload = get_json()
    require_fields(payload, "question_id", "answer")
    session = services.get_session_by_token(token, current_user)
    services.submit_answer(
        session,
        parse_int(payload["question_id"], "question_id"),
        payload["answer"],
        question_index=payload.get("question_index"),
    )
    return api_success({"saved": True, "time_remaining_seconds": services.time_remaining_seconds(session)})


@quizzes_bp.route("/sessions/<token>/complete", methods=["POST"])
@login_required
def complete(token):
    session = services.get_session_by_token(token, current_user)
    return api_success(services.complete_quiz(session))


@quizzes_bp.route("/sessions/<token>/abandon", methods=["POST"])
@login_required
def abandon(token):
    session = services.get_session_by_token(token, current_user)
    services.abandon_session(session)
    return api_success({"status": session.status})


@quizzes_bp.route("/sessions/<token>/extend", methods=["POST"])
@login_required
@role_required(*STAFF)
def extend(token):
    payload = get_json()
    require_fields(payload, "minutes")
    session = services.get_session_by_token(token)
    services.extend_session(session, payload["minutes"], current_user)
    return api_success({"expires_at": session.expires_at.isoformat()})


@quizzes_bp.route("/history", methods=["GET"])
@login_required
@campus_required
def history():
    user_id = current_user.user_id
    if current_user.user_type in STAFF and request.args.get("user_id"):
        user_id = parse_int(request.args.get("user_id"), "user_id")
    quiz_id = parse_int(request.args.get("quiz_id"), "quiz_id")
    return api_success({"items": services.get_user_history(g.campus_id, user_id, quiz_id)})

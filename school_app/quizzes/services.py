"""Class quizzes: quiz authoring plus timed, resumable quiz sessions."""
import json
import random
import secrets
import logging
from datetime import timedelta
from .. import db
from ..models import (ClassQuiz, ClassQuizQuestion, ClassQuizSession, ClassQuizAttempt,
                      ClassQuizSubmission, utc_now)
from ..errors import ValidationError, NotFoundError, ForbiddenError, ConflictError
from ..api_utils import parse_datetime, parse_bool
from ..classes.services import get_class, can_manage_class

logger = logging.getLogger(__name__)

QUESTION_TYPES = ("mcq", "true_false", "short_answer")


# --- Quizzes and questions ---

def get_quiz(campus_id, quiz_id):
    quiz = db.session.get(ClassQuiz, quiz_id)
    if not quiz or quiz.is_deleted or quiz.campus_id_fk != campus_id:
        raise NotFoundError("Quiz not found")
    return quiz


def _require_manager(actor, quiz_or_class):
    cls = quiz_or_class
    if isinstance(quiz_or_class, ClassQuiz):
        cls = get_class(quiz_or_class.campus_id_fk, quiz_or_class.class_id_fk)
    if not can_manage_class(actor, cls):
        raise ForbiddenError("You are not a teacher of this class")


def _apply_quiz_fields(quiz, payload):
    if "quiz_name" in payload:
        if not (payload["quiz_name"] or "").strip():
            raise ValidationError("quiz_name cannot be empty")
        quiz.quiz_name = payload["quiz_name"].strip()
    if "quiz_description" in payload:
        quiz.quiz_description = payload["quiz_description"]
    if "time_limit_minutes" in payload:
        limit = payload["time_limit_minutes"]
        if limit is not None and (not isinstance(limit, int) or limit <= 0):
            raise ValidationError("time_limit_minutes must be a positive integer")
        quiz.time_limit_minutes = limit
    if "max_attempts" in payload:
        attempts = payload["max_attempts"]
        if not isinstance(attempts, int) or attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        quiz.max_attempts = attempts
    for flag in ("shuffle_questions", "show_results_immediately", "is_active"):
        if flag in payload:
            setattr(quiz, flag, parse_bool(payload[flag]))
    if "available_from" in payload:
        quiz.available_from = parse_datetime(payload["available_from"], "available_from")
    if "available_until" in payload:
        quiz.available_until = parse_datetime(payload["available_until"], "available_until")
    if quiz.available_from and quiz.available_until and quiz.available_from >= quiz.available_until:
        raise ValidationError("available_from must be before available_until")


def create_quiz(campus_id, payload, actor):
    if not payload.get("class_id") or not (payload.get("quiz_name") or "").strip():
        raise ValidationError("class_id and quiz_name are required")
    cls = get_class(campus_id, int(payload["class_id"]))
    _require_manager(actor, cls)
    quiz = ClassQuiz(campus_id_fk=campus_id, class_id_fk=cls.class_id, created_by_fk=actor.user_id,
                     quiz_name=payload["quiz_name"].strip())
    _apply_quiz_fields(quiz, payload)
    db.session.add(quiz)
    db.session.flush()
    for idx, question in enumerate(payload.get("questions") or []):
        _build_question(quiz, question, position=idx)
    db.session.commit()
    return quiz


def list_quizzes(campus_id, class_id=None, include_inactive=False):
    q = ClassQuiz.query.filter(ClassQuiz.campus_id_fk == campus_id, ClassQuiz.is_deleted == False)  # noqa: E712
    if class_id:
        q = q.filter(ClassQuiz.class_id_fk == class_id)
    if not include_inactive:
        q = q.filter(ClassQuiz.is_active == True)  # noqa: E712
    return q.order_by(ClassQuiz.created_at.desc()).all()


def update_quiz(campus_id, quiz_id, payload, actor):
    quiz = get_quiz(campus_id, quiz_id)
    _require_manager(actor, quiz)
    _apply_quiz_fields(quiz, payload)
    db.session.commit()
    return quiz


def delete_quiz(campus_id, quiz_id, actor):
    quiz = get_quiz(campus_id, quiz_id)
    _require_manager(actor, quiz)
    quiz.is_deleted = True
    quiz.is_active = False
    db.session.commit()


def _question_fields(payload):
    text = (payload.get("question_text") or "").strip()
    qtype = payload.get("question_type", "mcq")
    answer = payload.get("correct_answer")
    options = payload.get("options") or []
    if not text:
        raise ValidationError("question_text is required")
    if qtype not in QUESTION_TYPES:
        raise ValidationError(f"question_type must be one of: {', '.join(QUESTION_TYPES)}")
    if answer in (None, ""):
        raise ValidationError("correct_answer is required")
    answer = str(answer)
    if qtype == "true_false":
        options = ["true", "false"]
        answer = answer.strip().lower()
    if qtype in ("mcq", "true_false"):
        if len(options) < 2:
            raise ValidationError("Multiple choice questions need at least two options")
        if answer not in [str(o) for o in options]:
            raise ValidationError("correct_answer must be one of the options")
    return {
        "question_text": text,
        "question_type": qtype,
        "options_json": json.dumps([str(o) for o in options]) if options else None,
        "correct_answer": answer,
    }


def _build_question(quiz, payload, position=None):
    if position is None:
        position = len(active_questions(quiz))
    question = ClassQuizQuestion(quiz_id_fk=quiz.quiz_id, position=position, **_question_fields(payload))
    db.session.add(question)
    return question


def add_question(campus_id, quiz_id, payload, actor):
    quiz = get_quiz(campus_id, quiz_id)
    _require_manager(actor, quiz)
    question = _build_question(quiz, payload)
    db.session.commit()
    return question


def _get_question(quiz, question_id):
    question = db.session.get(ClassQuizQuestion, question_id)
    if not question or question.is_deleted or question.quiz_id_fk != quiz.quiz_id:
        raise NotFoundError("Question not found in this quiz")
    return question


def update_question(campus_id, quiz_id, question_id, payload, actor):
    quiz = get_quiz(campus_id, quiz_id)
    _require_manager(actor, quiz)
    question = _get_question(quiz, question_id)
    merged = question.to_dict()
    merged.update(payload)
    for field, value in _question_fields(merged).items():
        setattr(question, field, value)
    db.session.commit()
    return question


def delete_question(campus_id, quiz_id, question_id, actor):
    quiz = get_quiz(campus_id, quiz_id)
    _require_manager(actor, quiz)
    question = _get_question(quiz, question_id)
    question.is_deleted = True
    db.session.commit()


def active_questions(quiz):
    return [q for q in quiz.questions if not q.is_deleted]


# --- Sessions ---

def _completed_count(quiz_id, user_id):
    return ClassQuizSubmission.query.filter_by(quiz_id_fk=quiz_id, user_id_fk=user_id).count()


def _is_expired(session, now=None):
    return session.expires_at is not None and (now or utc_now()) >= session.expires_at


def start_quiz_session(campus_id, quiz_id, user):
    quiz = get_quiz(campus_id, quiz_id)
    if not quiz.is_active:
        raise ValidationError("Quiz is not active")
    cls = get_class(campus_id, quiz.class_id_fk)
    if user.user_id not in cls.student_ids:
        raise ForbiddenError("You are not enrolled in this class")
    now = utc_now()
    if quiz.available_from and now < quiz.available_from:
        raise ValidationError("Quiz is not yet available")
    if quiz.available_until and now > quiz.available_until:
        raise ValidationError("Quiz is no longer available")

    existing = ClassQuizSession.query.filter_by(
        quiz_id_fk=quiz.quiz_id, user_id_fk=user.user_id, status="in_progress"
    ).first()
    if existing:
        if not _is_expired(existing, now):
            existing.last_activity_at = now
            db.session.commit()
            return existing, True
        handle_quiz_timeout(existing)

    completed = _completed_count(quiz.quiz_id, user.user_id)
    if completed >= (quiz.max_attempts or 1):
        if (quiz.max_attempts or 1) == 1:
            raise ConflictError("Quiz already completed")
        raise ConflictError("Maximum attempts reached")

    questions = active_questions(quiz)
    if not questions:
        raise ValidationError("Quiz has no questions")
    order = [q.question_id for q in questions]
    if quiz.shuffle_questions:
        random.shuffle(order)

    session = ClassQuizSession(
        quiz_id_fk=quiz.quiz_id,
        user_id_fk=user.user_id,
        campus_id_fk=campus_id,
        session_token=secrets.token_hex(32),
        status="in_progress",
        question_order_json=json.dumps(order),
        started_at=now,
        last_activity_at=now,
        expires_at=now + timedelta(minutes=quiz.time_limit_minutes) if quiz.time_limit_minutes else None,
    )
    db.session.add(session)
    db.session.commit()
    logger.info("Quiz session %s started for user %s on quiz %s", session.session_id, user.user_id, quiz.quiz_id)
    return session, False


def get_session_by_token(token, user=None):
    session = ClassQuizSession.query.filter_by(session_token=token).first()
    if not session or (user is not None and session.user_id_fk != user.user_id):
        raise NotFoundError("Quiz session not found")
    return session


def time_remaining_seconds(session):
    if session.expires_at is None:
        return None
    return max(0, int((session.expires_at - utc_now()).total_seconds()))


def session_view(session):
    quiz = session.quiz
    by_id = {q.question_id: q for q in active_questions(quiz)}
    answers = {a.question_id_fk: a.user_answer for a in session.attempts}
    questions = []
    for qid in session.question_order:
        q = by_id.get(qid)
        if q is None:
            continue
        item = q.to_dict(include_answer=False)
        item["user_answer"] = answers.get(qid)
        questions.append(item)
    data = session.to_dict()
    data["quiz"] = {"quiz_id": quiz.quiz_id, "quiz_name": quiz.quiz_name, "time_limit_minutes": quiz.time_limit_minutes}
    data["questions"] = questions
    data["time_remaining_seconds"] = time_remaining_seconds(session)
    return data


def _require_in_progress(session):
    if session.status != "in_progress":
        raise ConflictError(f"Quiz session is {session.status}")
    if _is_expired(session):
        handle_quiz_timeout(session)
        raise ConflictError("Quiz session has expired")


def submit_answer(session, question_id, answer, question_index=None):
    _require_in_progress(session)
    if question_id not in session.question_order:
        raise ValidationError("Question does not belong to this quiz")
    if answer is None:
        raise ValidationError("answer is required")
    attempt = ClassQuizAttempt.query.filter_by(session_id_fk=session.session_id, question_id_fk=question_id).first()
    if not attempt:
        attempt = ClassQuizAttempt(session_id_fk=session.session_id, question_id_fk=question_id)
        db.session.add(attempt)
    attempt.user_answer = str(answer)
    attempt.answered_at = utc_now()
    session.last_activity_at = utc_now()
    if question_index is not None:
        session.current_question_index = int(question_index)
    db.session.commit()
    return attempt


def _is_correct(question, user_answer):
    if user_answer is None:
        return False
    if question.question_type == "mcq":
        return user_answer == question.correct_answer
    return user_answer.strip().casefold() == question.correct_answer.strip().casefold()


def _finalize(session, status, auto_submitted):
    quiz = session.quiz
    by_id = {q.question_id: q for q in active_questions(quiz)}
    answers = {a.question_id_fk: a.user_answer for a in session.attempts}
    total = len([qid for qid in session.question_order if qid in by_id])
    score = sum(1 for qid in session.question_order if qid in by_id and _is_correct(by_id[qid], answers.get(qid)))
    now = utc_now()
    end = min(now, session.expires_at) if session.expires_at else now
    submission = ClassQuizSubmission(
        quiz_id_fk=quiz.quiz_id,
        user_id_fk=session.user_id_fk,
        session_id_fk=session.session_id,
        score=score,
        total_questions=total,
        percentage=round(score / total * 100, 2) if total else 0,
        time_taken_seconds=int((end - session.started_at).total_seconds()),
        auto_submitted=auto_submitted,
        submitted_at=now,
    )
    session.status = status
    session.completed_at = now
    session.auto_submitted = auto_submitted
    db.session.add(submission)
    db.session.commit()
    return submission


def complete_quiz(session):
    _require_in_progress(session)
    submission = _finalize(session, "completed", auto_submitted=False)
    return _result_payload(session.quiz, submission)


def _result_payload(quiz, submission):
    data = {"submission_id": submission.submission_id, "submitted_at": submission.submitted_at.isoformat()}
    if quiz.show_results_immediately:
        data.update(submission.to_dict())
    else:
        data["message"] = "Quiz submitted. Results will be released by your teacher."
    return data


def handle_quiz_timeout(session):
    """Auto-submit an expired in-progress session with whatever was answered."""
    if session.status != "in_progress":
        return None
    logger.info("Auto-submitting expired quiz session %s", session.session_id)
    return _finalize(session, "expired", auto_submitted=True)


def abandon_session(session):
    if session.status != "in_progress":
        raise ConflictError(f"Quiz session is {session.status}")
    session.status = "abandoned"
    session.completed_at = utc_now()
    db.session.commit()
    return session


def extend_session(session, minutes, actor):
    quiz = session.quiz
    _require_manager(actor, quiz)
    if not quiz.time_limit_minutes or session.expires_at is None:
        raise ValidationError("Quiz has no time limit to extend")
    if session.status != "in_progress":
        raise ConflictError(f"Quiz session is {session.status}")
    if not isinstance(minutes, int) or minutes <= 0:
        raise ValidationError("minutes must be a positive integer")
    base = max(session.expires_at, utc_now())
    session.expires_at = base + timedelta(minutes=minutes)
    db.session.commit()
    return session


def get_user_history(campus_id, user_id, quiz_id=None):
    q = ClassQuizSession.query.filter_by(user_id_fk=user_id, campus_id_fk=campus_id)
    if quiz_id:
        q = q.filter_by(quiz_id_fk=quiz_id)
    sessions = q.order_by(ClassQuizSession.started_at.desc()).all()
    subs = {s.session_id_fk: s for s in ClassQuizSubmission.query.filter(
        ClassQuizSubmission.session_id_fk.in_([s.session_id for s in sessions])
    ).all()} if sessions else {}
    history = []
    for session in sessions:
        item = session.to_dict()
        item.pop("session_token", None)
        item["quiz_name"] = session.quiz.quiz_name
        sub = subs.get(session.session_id)
        if sub and session.quiz.show_results_immediately:
            item["result"] = sub.to_dict()
        history.append(item)
    return history


def check_and_handle_expired_sessions():
    now = utc_now()
    expired = ClassQuizSession.query.filter(
        ClassQuizSession.status == "in_progress",
        ClassQuizSession.expires_at.isnot(None),
        ClassQuizSession.expires_at <= now,
    ).all()
    for session in expired:
        handle_quiz_timeout(session)
    if expired:
        logger.info("Auto-submitted %d expired quiz sessions", len(expired))
    return len(expired)


def quiz_statistics(campus_id, quiz_id):
    quiz = get_quiz(campus_id, quiz_id)
    subs = ClassQuizSubmission.query.filter_by(quiz_id_fk=quiz.quiz_id).all()
    percentages = [s.percentage for s in subs]
    questions = active_questions(quiz)
    per_question = []
    session_ids = [s.session_id_fk for s in subs]
    attempts = ClassQuizAttempt.query.filter(ClassQuizAttempt.session_id_fk.in_(session_ids)).all() if session_ids else []
    for question in questions:
        answered = [a for a in attempts if a.question_id_fk == question.question_id]
        correct = len([a for a in answered if _is_correct(question, a.user_answer)])
        per_question.append({
            "question_id": question.question_id,
            "question_text": question.question_text,
            "answered": len(answered),
            "correct": correct,
            "correct_rate": round(correct / len(subs) * 100, 2) if subs else 0,
        })
    return {
        "quiz_id": quiz.quiz_id,
        "total_attempts": len(subs),
        "unique_students": len({s.user_id_fk for s in subs}),
        "average_percentage": round(sum(percentages) / len(percentages), 2) if percentages else 0,
        "highest_percentage": max(percentages) if percentages else 0,
        "lowest_percentage": min(percentages) if percentages else 0,
        "auto_submitted": len([s for s in subs if s.auto_submitted]),
        "questions": per_question,
    }

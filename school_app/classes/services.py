import math
from datetime import timedelta
from sqlalchemy import func
from .. import db
from ..models import (User, SchoolClass, ClassStudent, ClassTeacher, Assignment,
                      AssignmentSubmission, utc_now)
from ..errors import ValidationError, ConflictError, NotFoundError, ForbiddenError
from ..api_utils import parse_datetime


# --- Classes ---

def get_class(campus_id, class_id):
    cls = db.session.get(SchoolClass, class_id)
    if not cls or cls.is_deleted or cls.campus_id_fk != campus_id:
        raise NotFoundError("Class not found")
    return cls


def _campus_member(campus_id, user_id, user_type):
    user = db.session.get(User, user_id)
    if not user or user.is_deleted or user.campus_id_fk != campus_id:
        return None, "not found in campus"
    if user.user_type != user_type:
        return None, f"not a {user_type.lower()}"
    return user, None


def _ensure_unique_name(campus_id, name, academic_year, exclude_id=None):
    q = SchoolClass.query.filter(
        SchoolClass.campus_id_fk == campus_id,
        func.lower(SchoolClass.name) == name.strip().lower(),
        SchoolClass.academic_year == academic_year,
        SchoolClass.is_deleted == False,  # noqa: E712
    )
    if exclude_id:
        q = q.filter(SchoolClass.class_id != exclude_id)
    if q.first():
        raise ConflictError(f"Class '{name}' already exists for {academic_year}")


def create_class(campus_id, payload):
    name = (payload.get("name") or "").strip()
    academic_year = (payload.get("academic_year") or "").strip()
    if not name or not academic_year:
        raise ValidationError("name and academic_year are required")
    _ensure_unique_name(campus_id, name, academic_year)
    cls = SchoolClass(campus_id_fk=campus_id, name=name, academic_year=academic_year)
    if payload.get("class_teacher_id"):
        teacher, reason = _campus_member(campus_id, int(payload["class_teacher_id"]), "Teacher")
        if not teacher:
            raise ValidationError(f"class_teacher_id is {reason}")
        cls.class_teacher_id_fk = teacher.user_id
        cls.teacher_links.append(ClassTeacher(teacher_id_fk=teacher.user_id))
    db.session.add(cls)
    db.session.commit()
    return cls


def list_classes(campus_id, academic_year=None, include_inactive=False):
    q = SchoolClass.query.filter(SchoolClass.campus_id_fk == campus_id, SchoolClass.is_deleted == False)  # noqa: E712
    if academic_year:
        q = q.filter(SchoolClass.academic_year == academic_year)
    if not include_inactive:
        q = q.filter(SchoolClass.is_active == True)  # noqa: E712
    return q.order_by(SchoolClass.academic_year.desc(), SchoolClass.name)


def update_class(campus_id, class_id, payload):
    cls = get_class(campus_id, class_id)
    name = payload.get("name", cls.name)
    academic_year = payload.get("academic_year", cls.academic_year)
    if name != cls.name or academic_year != cls.academic_year:
        _ensure_unique_name(campus_id, name, academic_year, exclude_id=cls.class_id)
    cls.name = name
    cls.academic_year = academic_year
    if "is_active" in payload:
        cls.is_active = bool(payload["is_active"])
    if "class_teacher_id" in payload:
        if payload["class_teacher_id"] is None:
            cls.class_teacher_id_fk = None
        else:
            teacher, reason = _campus_member(campus_id, int(payload["class_teacher_id"]), "Teacher")
            if not teacher:
                raise ValidationError(f"class_teacher_id is {reason}")
            cls.class_teacher_id_fk = teacher.user_id
    db.session.commit()
    return cls


def delete_class(campus_id, class_id):
    cls = get_class(campus_id, class_id)
    cls.is_deleted = True
    cls.is_active = False
    db.session.commit()
    return cls


def _assign(campus_id, class_id, user_ids, user_type, link_model, fk_name, links_attr):
    if not isinstance(user_ids, list) or not user_ids:
        raise ValidationError("A non-empty list of user ids is required")
    cls = get_class(campus_id, class_id)
    existing = {getattr(link, fk_name) for link in getattr(cls, links_attr)}
    added, skipped = [], []
    for raw_id in user_ids:
        try:
            uid = int(raw_id)
        except (TypeError, ValueError):
            skipped.append({"user_id": raw_id, "reason": "invalid id"})
            continue
        if uid in existing:
            skipped.append({"user_id": uid, "reason": "already assigned"})
            continue
        user, reason = _campus_member(campus_id, uid, user_type)
        if not user:
            skipped.append({"user_id": uid, "reason": reason})
            continue
        getattr(cls, links_attr).append(link_model(**{fk_name: uid}))
        existing.add(uid)
        added.append(uid)
    db.session.commit()
    return {"class": cls.to_dict(), "added": added, "skipped": skipped}


def _remove(campus_id, class_id, user_ids, fk_name, links_attr):
    if not isinstance(user_ids, list) or not user_ids:
        raise ValidationError("A non-empty list of user ids is required")
    cls = get_class(campus_id, class_id)
    wanted = set()
    for raw_id in user_ids:
        try:
            wanted.add(int(raw_id))
        except (TypeError, ValueError):
            continue
    removed = []
    for link in list(getattr(cls, links_attr)):
        if getattr(link, fk_name) in wanted:
            getattr(cls, links_attr).remove(link)
            removed.append(getattr(link, fk_name))
    db.session.commit()
    return {"class": cls.to_dict(), "removed": removed, "not_assigned": sorted(wanted - set(removed))}


def assign_students(campus_id, class_id, student_ids):
    return _assign(campus_id, class_id, student_ids, "Student", ClassStudent, "student_id_fk", "student_links")


def remove_students(campus_id, class_id, student_ids):
    return _remove(campus_id, class_id, student_ids, "student_id_fk", "student_links")


def assign_teachers(campus_id, class_id, teacher_ids):
    return _assign(campus_id, class_id, teacher_ids, "Teacher", ClassTeacher, "teacher_id_fk", "teacher_links")


def remove_teachers(campus_id, class_id, teacher_ids):
    return _remove(campus_id, class_id, teacher_ids, "teacher_id_fk", "teacher_links")


def class_students(campus_id, class_id):
    cls = get_class(campus_id, class_id)
    ids = cls.student_ids
    if not ids:
        return []
    return User.query.filter(User.user_id.in_(ids), User.is_deleted == False).order_by(User.first_name).all()  # noqa: E712


def classes_for_student(campus_id, student_id):
    return (
        SchoolClass.query.join(ClassStudent, ClassStudent.class_id_fk == SchoolClass.class_id)
        .filter(
            ClassStudent.student_id_fk == student_id,
            SchoolClass.campus_id_fk == campus_id,
            SchoolClass.is_deleted == False,  # noqa: E712
            SchoolClass.is_active == True,  # noqa: E712
        )
        .order_by(SchoolClass.academic_year.desc(), SchoolClass.name)
        .all()
    )


def academic_years(campus_id):
    rows = (
        db.session.query(SchoolClass.academic_year)
        .filter(SchoolClass.campus_id_fk == campus_id, SchoolClass.is_deleted == False)  # noqa: E712
        .distinct()
        .all()
    )
    return sorted({r[0] for r in rows}, reverse=True)


def can_manage_class(user, cls):
    if user.user_type in ("Super Admin", "Admin"):
        return True
    if user.user_type != "Teacher":
        return False
    return user.user_id == cls.class_teacher_id_fk or user.user_id in cls.teacher_ids


# --- Assignments ---

def get_assignment(campus_id, assignment_id):
    assignment = db.session.get(Assignment, assignment_id)
    if not assignment or assignment.is_deleted or assignment.campus_id_fk != campus_id:
        raise NotFoundError("Assignment not found")
    return assignment


def _max_score(value):
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError("max_score must be a number")
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("max_score must be positive")
    return value


def create_assignment(campus_id, payload, actor):
    for field in ("class_id", "title", "description", "due_date"):
        if payload.get(field) in (None, ""):
            raise ValidationError(f"{field} is required")
    cls = get_class(campus_id, int(payload["class_id"]))
    if not can_manage_class(actor, cls):
        raise ForbiddenError("You are not a teacher of this class")
    due_date = parse_datetime(payload["due_date"], "due_date")
    if due_date <= utc_now():
        raise ValidationError("Due date must be in the future")
    max_score = _max_score(payload.get("max_score", 100))
    assignment = Assignment(
        campus_id_fk=campus_id,
        class_id_fk=cls.class_id,
        created_by_fk=actor.user_id,
        subject=payload.get("subject"),
        title=payload["title"].strip(),
        description=payload["description"],
        due_date=due_date,
        is_graded=bool(payload.get("is_graded", True)),
        max_score=max_score,
    )
    db.session.add(assignment)
    db.session.commit()
    return assignment


def list_assignments(campus_id, class_id=None, created_by=None, status=None):
    q = Assignment.query.filter(Assignment.campus_id_fk == campus_id, Assignment.is_deleted == False)  # noqa: E712
    if class_id:
        q = q.filter(Assignment.class_id_fk == class_id)
    if created_by:
        q = q.filter(Assignment.created_by_fk == created_by)
    now = utc_now()
    if status == "active":
        q = q.filter(Assignment.due_date > now)
    elif status == "overdue":
        q = q.filter(Assignment.due_date <= now)
    elif status:
        raise ValidationError("status must be 'active' or 'overdue'")
    return q.order_by(Assignment.due_date.desc())


def update_assignment(campus_id, assignment_id, payload, actor):
    assignment = get_assignment(campus_id, assignment_id)
    cls = get_class(campus_id, assignment.class_id_fk)
    if not can_manage_class(actor, cls):
        raise ForbiddenError("You are not a teacher of this class")
    for field in ("title", "description", "subject"):
        if field in payload:
            setattr(assignment, field, payload[field])
    if "is_graded" in payload:
        assignment.is_graded = bool(payload["is_graded"])
    if "max_score" in payload:
        assignment.max_score = _max_score(payload["max_score"])
    if "due_date" in payload:
        assignment.due_date = parse_datetime(payload["due_date"], "due_date")
    db.session.commit()
    return assignment


def delete_assignment(campus_id, assignment_id, actor):
    assignment = get_assignment(campus_id, assignment_id)
    cls = get_class(campus_id, assignment.class_id_fk)
    if not can_manage_class(actor, cls):
        raise ForbiddenError("You are not a teacher of this class")
    assignment.is_deleted = True
    db.session.commit()
    return assignment


def assignment_stats(assignment):
    cls = db.session.get(SchoolClass, assignment.class_id_fk)
    students_count = len(cls.student_ids) if cls else 0
    subs = assignment.submissions
    graded = [s for s in subs if s.grade is not None]
    total = len(subs)
    return {
        "total_submissions": total,
        "pending_submissions": max(students_count - total, 0),
        "graded_submissions": len(graded),
        "average_grade": round(sum(s.grade for s in graded) / len(graded), 2) if graded else 0,
        "students_count": students_count,
        "submission_rate": round(total / students_count * 100, 2) if students_count else 0,
    }


def campus_assignment_stats(campus_id, class_id=None):
    assignments = list_assignments(campus_id, class_id=class_id).all()
    now = utc_now()
    ids = [a.assignment_id for a in assignments]
    submissions = AssignmentSubmission.query.filter(AssignmentSubmission.assignment_id_fk.in_(ids)).all() if ids else []
    week_ahead = now + timedelta(days=7)
    upcoming = sorted((a for a in assignments if now < a.due_date <= week_ahead), key=lambda a: a.due_date)[:5]
    recent = sorted(assignments, key=lambda a: a.created_at, reverse=True)[:5]
    rates = [assignment_stats(a)["submission_rate"] for a in assignments]
    return {
        "total_assignments": len(assignments),
        "active_assignments": len([a for a in assignments if a.due_date > now]),
        "overdue_assignments": len([a for a in assignments if a.due_date <= now]),
        "total_submissions": len(submissions),
        "pending_grading": len([s for s in submissions if s.grade is None]),
        "average_submission_rate": round(sum(rates) / len(rates), 2) if rates else 0,
        "upcoming_deadlines": [a.to_dict() for a in upcoming],
        "recent_assignments": [a.to_dict() for a in recent],
    }


# --- Submissions ---

def submit_assignment(campus_id, assignment_id, student, payload):
    assignment = get_assignment(campus_id, assignment_id)
    cls = get_class(campus_id, assignment.class_id_fk)
    if student.user_id not in cls.student_ids:
        raise ForbiddenError("You are not enrolled in this class")
    if not payload.get("content") and not payload.get("attachment_url"):
        raise ValidationError("content or attachment_url is required")
    now = utc_now()
    submission = AssignmentSubmission.query.filter_by(
        assignment_id_fk=assignment.assignment_id, student_id_fk=student.user_id
    ).first()
    if submission and submission.grade is not None:
        raise ConflictError("Submission has already been graded")
    if not submission:
        submission = AssignmentSubmission(assignment_id_fk=assignment.assignment_id, student_id_fk=student.user_id)
        db.session.add(submission)
    submission.content = payload.get("content")
    submission.attachment_url = payload.get("attachment_url")
    submission.submitted_at = now
    submission.is_late = now > assignment.due_date
    db.session.commit()
    return submission


def list_submissions(campus_id, assignment_id):
    assignment = get_assignment(campus_id, assignment_id)
    return AssignmentSubmission.query.filter_by(assignment_id_fk=assignment.assignment_id).order_by(
        AssignmentSubmission.submitted_at
    ).all()


def grade_submission(campus_id, submission_id, grade, feedback, grader):
    submission = db.session.get(AssignmentSubmission, submission_id)
    if not submission:
        raise NotFoundError("Assignment submission not found")
    assignment = get_assignment(campus_id, submission.assignment_id_fk)
    cls = get_class(campus_id, assignment.class_id_fk)
    if not can_manage_class(grader, cls):
        raise ForbiddenError("You are not a teacher of this class")
    try:
        grade = float(grade)
    except (TypeError, ValueError):
        raise ValidationError("grade must be a number")
    if not math.isfinite(grade):
        raise ValidationError("grade must be a finite number")
    if grade < 0 or grade > (assignment.max_score or 0):
        raise ValidationError(f"grade must be between 0 and {assignment.max_score}")
    submission.grade = grade
    if feedback is not None:
        submission.feedback = feedback
    submission.graded_by_fk = grader.user_id
    submission.graded_at = utc_now()
    db.session.commit()
    return submission


def student_assignments(campus_id, student_id):
    now = utc_now()
    result = []
    for cls in classes_for_student(campus_id, student_id):
        for assignment in list_assignments(campus_id, class_id=cls.class_id).all():
            submission = AssignmentSubmission.query.filter_by(
                assignment_id_fk=assignment.assignment_id, student_id_fk=student_id
            ).first()
            if submission and submission.grade is not None:
                status = "graded"
            elif submission:
                status = "submitted"
            elif assignment.due_date <= now:
                status = "overdue"
            else:
                status = "pending"
            result.append({
                "assignment": assignment.to_dict(),
                "submission": submission.to_dict() if submission else None,
                "status": status,
                "class_info": {"class_id": cls.class_id, "name": cls.name, "academic_year": cls.academic_year},
            })
    return result

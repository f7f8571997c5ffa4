import json
from datetime import datetime, timezone
from flask_login import UserMixin
from . import db


def utc_now():
    # Naive UTC; sqlite drops tzinfo on the way back so everything is stored naive
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


def _loads(text, default):
    if not text:
        return default
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return default


USER_TYPES = ("Super Admin", "Admin", "Teacher", "Student", "Parent")

# ==========================================
# TENANT / SYSTEM MODELS
# ==========================================

class Campus(db.Model):
    __tablename__ = "campuses"
    campus_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    code = db.Column(db.String(32), unique=True, nullable=False)
    address = db.Column(db.Text)
    contact_email = db.Column(db.String(128))
    contact_phone = db.Column(db.String(32))
    website = db.Column(db.String(128))
    subscription_plan = db.Column(db.String(32), default="basic")  # basic, pro, enterprise
    # "Kill switch" per tenant
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    def to_dict(self):
        return {
            "campus_id": self.campus_id,
            "name": self.name,
            "code": self.code,
            "address": self.address,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "website": self.website,
            "subscription_plan": self.subscription_plan,
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
        }


class CampusFeatures(db.Model):
    __tablename__ = "campus_features"
    features_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), unique=True, nullable=False)
    chat = db.Column(db.Boolean, default=True)
    meetings = db.Column(db.Boolean, default=True)
    payments = db.Column(db.Boolean, default=True)
    curriculum = db.Column(db.Boolean, default=True)
    subject_materials = db.Column(db.Boolean, default=True)
    student_parent_access = db.Column(db.Boolean, default=True)
    updated_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    FLAGS = ("chat", "meetings", "payments", "curriculum", "subject_materials", "student_parent_access")

    def flags(self):
        return {name: bool(getattr(self, name)) for name in self.FLAGS}

    def to_dict(self):
        data = {"campus_id": self.campus_id_fk, "features": self.flags()}
        data["updated_by"] = self.updated_by_fk
        data["updated_at"] = _iso(self.updated_at)
        return data


class User(UserMixin, db.Model):
    __tablename__ = "users"
    user_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"))  # NULL for Super Admin
    email = db.Column(db.String(128), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(64), nullable=False)
    last_name = db.Column(db.String(64))
    phone = db.Column(db.String(32))
    user_type = db.Column(db.String(32), nullable=False)
    # Parent -> Student link
    parent_of_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    meta_json = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True)
    is_deleted = db.Column(db.Boolean, default=False)
    last_login = db.Column(db.DateTime)
    last_login_ip = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    campus = db.relationship("Campus", backref="users", lazy=True)

    def get_id(self):
        return str(self.user_id)

    @property
    def is_super_admin(self):
        return self.user_type == "Super Admin"

    @property
    def full_name(self):
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    @property
    def meta(self):
        return _loads(self.meta_json, {})

    @meta.setter
    def meta(self, value):
        self.meta_json = json.dumps(value or {})

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "campus_id": self.campus_id_fk,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "phone": self.phone,
            "user_type": self.user_type,
            "parent_of_id": self.parent_of_id_fk,
            "meta": self.meta,
            "is_active": bool(self.is_active),
            "last_login": _iso(self.last_login),
            "created_at": _iso(self.created_at),
        }


class UserSession(db.Model):
    __tablename__ = "user_sessions"
    session_id = db.Column(db.String(64), primary_key=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utc_now)
    expires_at = db.Column(db.DateTime, nullable=False)
    revoked_at = db.Column(db.DateTime)


class SystemMessage(db.Model):
    """
    For broadcasting messages, offers, holiday wishes, or instructions.
    """
    __tablename__ = "system_messages"
    message_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    # Type: 'info', 'success', 'warning', 'danger', 'popup'
    message_type = db.Column(db.String(32), default="info")
    start_date = db.Column(db.DateTime, default=utc_now)
    end_date = db.Column(db.DateTime)
    is_active = db.Column(db.Boolean, default=True)
    # Optional: target specific user types (e.g. 'Admin', 'Teacher'). Null = All
    target_user_type = db.Column(db.String(32))
    created_at = db.Column(db.DateTime, default=utc_now)

    def to_dict(self):
        return {
            "message_id": self.message_id,
            "title": self.title,
            "content": self.content,
            "message_type": self.message_type,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "is_active": bool(self.is_active),
            "target_user_type": self.target_user_type,
        }


class SystemConfig(db.Model):
    """
    Key-Value store for system-wide settings like 'maintenance_mode'.
    """
    __tablename__ = "system_config"
    config_key = db.Column(db.String(64), primary_key=True)
    config_value = db.Column(db.Text)
    description = db.Column(db.String(255))
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


# ==========================================
# ACADEMICS
# ==========================================

class ClassStudent(db.Model):
    __tablename__ = "class_students"
    id = db.Column(db.Integer, primary_key=True)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    added_at = db.Column(db.DateTime, default=utc_now)
    __table_args__ = (db.UniqueConstraint("class_id_fk", "student_id_fk", name="uq_class_student"),)


class ClassTeacher(db.Model):
    __tablename__ = "class_teachers"
    id = db.Column(db.Integer, primary_key=True)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)
    teacher_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    added_at = db.Column(db.DateTime, default=utc_now)
    __table_args__ = (db.UniqueConstraint("class_id_fk", "teacher_id_fk", name="uq_class_teacher"),)


class SchoolClass(db.Model):
    __tablename__ = "classes"
    class_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    academic_year = db.Column(db.String(16), nullable=False)
    class_teacher_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    meta_json = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True)
    is_deleted = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    student_links = db.relationship("ClassStudent", backref="school_class", lazy=True, cascade="all, delete-orphan")
    teacher_links = db.relationship("ClassTeacher", backref="school_class", lazy=True, cascade="all, delete-orphan")

    @property
    def student_ids(self):
        return [link.student_id_fk for link in self.student_links]

    @property
    def teacher_ids(self):
        return [link.teacher_id_fk for link in self.teacher_links]

    def to_dict(self):
        return {
            "class_id": self.class_id,
            "campus_id": self.campus_id_fk,
            "name": self.name,
            "academic_year": self.academic_year,
            "class_teacher_id": self.class_teacher_id_fk,
            "student_ids": self.student_ids,
            "teacher_ids": self.teacher_ids,
            "meta": _loads(self.meta_json, {}),
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
        }


class Assignment(db.Model):
    __tablename__ = "assignments"
    assignment_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False, index=True)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False, index=True)
    created_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    subject = db.Column(db.String(128))
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    due_date = db.Column(db.DateTime, nullable=False)
    is_graded = db.Column(db.Boolean, default=True)
    max_score = db.Column(db.Float, default=100)
    is_deleted = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    submissions = db.relationship("AssignmentSubmission", backref="assignment", lazy=True)

    def to_dict(self):
        return {
            "assignment_id": self.assignment_id,
            "campus_id": self.campus_id_fk,
            "class_id": self.class_id_fk,
            "created_by": self.created_by_fk,
            "subject": self.subject,
            "title": self.title,
            "description": self.description,
            "due_date": _iso(self.due_date),
            "is_graded": bool(self.is_graded),
            "max_score": self.max_score,
            "created_at": _iso(self.created_at),
        }


class AssignmentSubmission(db.Model):
    __tablename__ = "assignment_submissions"
    submission_id = db.Column(db.Integer, primary_key=True)
    assignment_id_fk = db.Column(db.Integer, db.ForeignKey("assignments.assignment_id"), nullable=False)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    content = db.Column(db.Text)
    attachment_url = db.Column(db.String(512))
    submitted_at = db.Column(db.DateTime, default=utc_now)
    is_late = db.Column(db.Boolean, default=False)
    grade = db.Column(db.Float)
    feedback = db.Column(db.Text)
    graded_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    graded_at = db.Column(db.DateTime)
    __table_args__ = (db.UniqueConstraint("assignment_id_fk", "student_id_fk", name="uq_assignment_student"),)

    def to_dict(self):
        return {
            "submission_id": self.submission_id,
            "assignment_id": self.assignment_id_fk,
            "student_id": self.student_id_fk,
            "content": self.content,
            "attachment_url": self.attachment_url,
            "submitted_at": _iso(self.submitted_at),
            "is_late": bool(self.is_late),
            "grade": self.grade,
            "feedback": self.feedback,
            "graded_by": self.graded_by_fk,
            "graded_at": _iso(self.graded_at),
        }


class Attendance(db.Model):
    __tablename__ = "attendance"
    attendance_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False, index=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"))
    date = db.Column(db.Date, nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False)  # present, absent, late, leave
    user_type = db.Column(db.String(16), nullable=False)  # Student, Teacher
    remarks = db.Column(db.String(255))
    marked_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    is_deleted = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)
    __table_args__ = (db.UniqueConstraint("user_id_fk", "class_id_fk", "date", name="uq_attendance_user_class_date"),)

    def to_dict(self):
        return {
            "attendance_id": self.attendance_id,
            "campus_id": self.campus_id_fk,
            "user_id": self.user_id_fk,
            "class_id": self.class_id_fk,
            "date": self.date.isoformat() if self.date else None,
            "status": self.status,
            "user_type": self.user_type,
            "remarks": self.remarks,
            "marked_by": self.marked_by_fk,
        }


# ==========================================
# CLASS QUIZZES
# ==========================================

class ClassQuiz(db.Model):
    __tablename__ = "class_quizzes"
    quiz_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False, index=True)
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"), nullable=False)
    created_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    quiz_name = db.Column(db.String(255), nullable=False)
    quiz_description = db.Column(db.Text)
    time_limit_minutes = db.Column(db.Integer)
    shuffle_questions = db.Column(db.Boolean, default=False)
    max_attempts = db.Column(db.Integer, default=1)
    available_from = db.Column(db.DateTime)
    available_until = db.Column(db.DateTime)
    show_results_immediately = db.Column(db.Boolean, default=True)
    is_active = db.Column(db.Boolean, default=True)
    is_deleted = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    questions = db.relationship("ClassQuizQuestion", backref="quiz", lazy=True,
                                order_by="ClassQuizQuestion.position")

    def to_dict(self):
        return {
            "quiz_id": self.quiz_id,
            "campus_id": self.campus_id_fk,
            "class_id": self.class_id_fk,
            "created_by": self.created_by_fk,
            "quiz_name": self.quiz_name,
            "quiz_description": self.quiz_description,
            "time_limit_minutes": self.time_limit_minutes,
            "shuffle_questions": bool(self.shuffle_questions),
            "max_attempts": self.max_attempts,
            "available_from": _iso(self.available_from),
            "available_until": _iso(self.available_until),
            "show_results_immediately": bool(self.show_results_immediately),
            "is_active": bool(self.is_active),
            "question_count": len([q for q in self.questions if not q.is_deleted]),
        }


class ClassQuizQuestion(db.Model):
    __tablename__ = "class_quiz_questions"
    question_id = db.Column(db.Integer, primary_key=True)
    quiz_id_fk = db.Column(db.Integer, db.ForeignKey("class_quizzes.quiz_id"), nullable=False, index=True)
    question_text = db.Column(db.Text, nullable=False)
    question_type = db.Column(db.String(16), default="mcq")  # mcq, true_false, short_answer
    options_json = db.Column(db.Text)
    correct_answer = db.Column(db.String(512), nullable=False)
    position = db.Column(db.Integer, default=0)
    is_deleted = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    @property
    def options(self):
        return _loads(self.options_json, [])

    def to_dict(self, include_answer=True):
        data = {
            "question_id": self.question_id,
            "quiz_id": self.quiz_id_fk,
            "question_text": self.question_text,
            "question_type": self.question_type,
            "options": self.options,
            "position": self.position,
        }
        if include_answer:
            data["correct_answer"] = self.correct_answer
        return data


class ClassQuizSession(db.Model):
    __tablename__ = "class_quiz_sessions"
    session_id = db.Column(db.Integer, primary_key=True)
    quiz_id_fk = db.Column(db.Integer, db.ForeignKey("class_quizzes.quiz_id"), nullable=False, index=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False)
    session_token = db.Column(db.String(64), unique=True, nullable=False)
    status = db.Column(db.String(16), default="in_progress")  # in_progress, completed, expired, abandoned
    question_order_json = db.Column(db.Text)
    current_question_index = db.Column(db.Integer, default=0)
    started_at = db.Column(db.DateTime, default=utc_now)
    expires_at = db.Column(db.DateTime)
    last_activity_at = db.Column(db.DateTime, default=utc_now)
    completed_at = db.Column(db.DateTime)
    auto_submitted = db.Column(db.Boolean, default=False)

    quiz = db.relationship("ClassQuiz", lazy=True)
    attempts = db.relationship("ClassQuizAttempt", backref="session", lazy=True)

    @property
    def question_order(self):
        return _loads(self.question_order_json, [])

    def to_dict(self):
        return {
            "session_id": self.session_id,
            "quiz_id": self.quiz_id_fk,
            "user_id": self.user_id_fk,
            "session_token": self.session_token,
            "status": self.status,
            "question_order": self.question_order,
            "current_question_index": self.current_question_index,
            "answers_count": len(self.attempts),
            "started_at": _iso(self.started_at),
            "expires_at": _iso(self.expires_at),
            "completed_at": _iso(self.completed_at),
            "auto_submitted": bool(self.auto_submitted),
        }


class ClassQuizAttempt(db.Model):
    __tablename__ = "class_quiz_attempts"
    attempt_id = db.Column(db.Integer, primary_key=True)
    session_id_fk = db.Column(db.Integer, db.ForeignKey("class_quiz_sessions.session_id"), nullable=False)
    question_id_fk = db.Column(db.Integer, db.ForeignKey("class_quiz_questions.question_id"), nullable=False)
    user_answer = db.Column(db.String(512))
    answered_at = db.Column(db.DateTime, default=utc_now)
    __table_args__ = (db.UniqueConstraint("session_id_fk", "question_id_fk", name="uq_attempt_session_question"),)


class ClassQuizSubmission(db.Model):
    __tablename__ = "class_quiz_submissions"
    submission_id = db.Column(db.Integer, primary_key=True)
    quiz_id_fk = db.Column(db.Integer, db.ForeignKey("class_quizzes.quiz_id"), nullable=False, index=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    session_id_fk = db.Column(db.Integer, db.ForeignKey("class_quiz_sessions.session_id"), unique=True)
    score = db.Column(db.Integer, default=0)
    total_questions = db.Column(db.Integer, default=0)
    percentage = db.Column(db.Float, default=0)
    time_taken_seconds = db.Column(db.Integer)
    auto_submitted = db.Column(db.Boolean, default=False)
    submitted_at = db.Column(db.DateTime, default=utc_now)

    def to_dict(self):
        return {
            "submission_id": self.submission_id,
            "quiz_id": self.quiz_id_fk,
            "user_id": self.user_id_fk,
            "session_id": self.session_id_fk,
            "score": self.score,
            "total_questions": self.total_questions,
            "percentage": self.percentage,
            "time_taken_seconds": self.time_taken_seconds,
            "auto_submitted": bool(self.auto_submitted),
            "submitted_at": _iso(self.submitted_at),
        }


# ==========================================
# MEETINGS
# ==========================================

class Meeting(db.Model):
    __tablename__ = "meetings"
    meeting_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False, index=True)
    creator_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    meeting_name = db.Column(db.String(255), nullable=False)
    meeting_description = db.Column(db.Text)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime)
    location = db.Column(db.String(255))
    meeting_type = db.Column(db.String(16), default="scheduled")  # scheduled, instant, recurring
    meeting_status = db.Column(db.String(16), default="scheduled")  # scheduled, live, ended, cancelled
    meeting_room_id = db.Column(db.String(64), unique=True, nullable=False)
    max_participants = db.Column(db.Integer, default=100)
    features_json = db.Column(db.Text)
    audit_trail_json = db.Column(db.Text)
    actual_start = db.Column(db.DateTime)
    actual_end = db.Column(db.DateTime)
    is_deleted = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    participants = db.relationship("MeetingParticipant", backref="meeting", lazy=True,
                                   cascade="all, delete-orphan")

    @property
    def features(self):
        return _loads(self.features_json, {})

    @property
    def audit_trail(self):
        return _loads(self.audit_trail_json, [])

    def to_dict(self):
        return {
            "meeting_id": self.meeting_id,
            "campus_id": self.campus_id_fk,
            "creator_id": self.creator_id_fk,
            "meeting_name": self.meeting_name,
            "meeting_description": self.meeting_description,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "location": self.location,
            "meeting_type": self.meeting_type,
            "meeting_status": self.meeting_status,
            "meeting_room_id": self.meeting_room_id,
            "max_participants": self.max_participants,
            "features": self.features,
            "participants": [p.to_dict() for p in self.participants],
            "actual_start": _iso(self.actual_start),
            "actual_end": _iso(self.actual_end),
        }


class MeetingParticipant(db.Model):
    __tablename__ = "meeting_participants"
    id = db.Column(db.Integer, primary_key=True)
    meeting_id_fk = db.Column(db.Integer, db.ForeignKey("meetings.meeting_id"), nullable=False)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    role = db.Column(db.String(16), default="participant")  # host, co_host, participant
    added_at = db.Column(db.DateTime, default=utc_now)
    __table_args__ = (db.UniqueConstraint("meeting_id_fk", "user_id_fk", name="uq_meeting_participant"),)

    def to_dict(self):
        return {"user_id": self.user_id_fk, "role": self.role, "added_at": _iso(self.added_at)}


# ==========================================
# NOTIFICATIONS
# ==========================================

class Notification(db.Model):
    __tablename__ = "notifications"
    notification_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False, index=True)
    scope = db.Column(db.String(16), nullable=False)  # campus, class, user
    class_id_fk = db.Column(db.Integer, db.ForeignKey("classes.class_id"))
    target_user_types = db.Column(db.String(128))  # comma separated, NULL = all
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data_json = db.Column(db.Text)
    created_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    is_deleted = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)

    recipients = db.relationship("NotificationRecipient", backref="notification", lazy=True)

    def to_dict(self):
        return {
            "notification_id": self.notification_id,
            "campus_id": self.campus_id_fk,
            "scope": self.scope,
            "class_id": self.class_id_fk,
            "target_user_types": self.target_user_types.split(",") if self.target_user_types else [],
            "title": self.title,
            "message": self.message,
            "data": _loads(self.data_json, {}),
            "created_by": self.created_by_fk,
            "created_at": _iso(self.created_at),
        }


class NotificationRecipient(db.Model):
    __tablename__ = "notification_recipients"
    recipient_id = db.Column(db.Integer, primary_key=True)
    notification_id_fk = db.Column(db.Integer, db.ForeignKey("notifications.notification_id"), nullable=False)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    is_seen = db.Column(db.Boolean, default=False)
    seen_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    __table_args__ = (db.UniqueConstraint("notification_id_fk", "user_id_fk", name="uq_notification_recipient"),)


# ==========================================
# PAYMENTS
# ==========================================

class SchoolBankDetails(db.Model):
    __tablename__ = "school_bank_details"
    bank_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False, index=True)
    bank_name = db.Column(db.String(128), nullable=False)
    account_holder_name = db.Column(db.String(128), nullable=False)
    account_number = db.Column(db.String(64), nullable=False)
    ifsc_code = db.Column(db.String(32), nullable=False)
    branch_name = db.Column(db.String(128))
    account_type = db.Column(db.String(32), default="current")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    @property
    def masked_account_number(self):
        number = self.account_number or ""
        return "*" * max(len(number) - 4, 0) + number[-4:]

    def to_dict(self):
        return {
            "bank_id": self.bank_id,
            "campus_id": self.campus_id_fk,
            "bank_name": self.bank_name,
            "account_holder_name": self.account_holder_name,
            "account_number": self.masked_account_number,
            "ifsc_code": self.ifsc_code,
            "branch_name": self.branch_name,
            "account_type": self.account_type,
            "is_active": bool(self.is_active),
        }


class PaymentGatewayConfiguration(db.Model):
    __tablename__ = "payment_gateway_configurations"
    config_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False, index=True)
    gateway_provider = db.Column(db.String(32), nullable=False)  # razorpay, payu, cashfree
    gateway_mode = db.Column(db.String(8), default="test")  # test, live
    status = db.Column(db.String(16), default="active")  # active, inactive, suspended
    is_primary = db.Column(db.Boolean, default=False)
    settlement_schedule = db.Column(db.String(16), default="daily")  # daily, weekly, monthly, custom
    custom_settlement_days_json = db.Column(db.Text)
    minimum_settlement_amount = db.Column(db.Float, default=100.0)
    maximum_settlement_amount = db.Column(db.Float)
    transaction_fee_percentage = db.Column(db.Float, default=0.0)
    transaction_fee_fixed = db.Column(db.Float, default=0.0)
    gateway_fee_percentage = db.Column(db.Float, default=2.0)
    gateway_fee_fixed = db.Column(db.Float, default=0.0)
    fee_bearer = db.Column(db.String(16), default="school")  # school, parent, shared
    webhook_secret_encrypted = db.Column(db.String(512))  # Fernet token
    webhook_signature_verification = db.Column(db.Boolean, default=True)
    ip_whitelist_json = db.Column(db.Text)
    last_test_date = db.Column(db.DateTime)
    last_test_status = db.Column(db.String(16))
    connectivity_status = db.Column(db.String(16))
    health_check_status = db.Column(db.String(16))
    configuration_version = db.Column(db.String(32))
    configured_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    configured_at = db.Column(db.DateTime, default=utc_now)
    last_updated_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    last_updated_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)
    __table_args__ = (db.UniqueConstraint("campus_id_fk", "gateway_provider", name="uq_campus_gateway"),)

    @property
    def custom_settlement_days(self):
        return _loads(self.custom_settlement_days_json, [])

    def to_dict(self):
        return {
            "config_id": self.config_id,
            "campus_id": self.campus_id_fk,
            "gateway_provider": self.gateway_provider,
            "gateway_mode": self.gateway_mode,
            "status": self.status,
            "is_primary": bool(self.is_primary),
            "settlement_schedule": self.settlement_schedule,
            "custom_settlement_days": self.custom_settlement_days,
            "minimum_settlement_amount": self.minimum_settlement_amount,
            "maximum_settlement_amount": self.maximum_settlement_amount,
            "transaction_fee_percentage": self.transaction_fee_percentage,
            "transaction_fee_fixed": self.transaction_fee_fixed,
            "gateway_fee_percentage": self.gateway_fee_percentage,
            "gateway_fee_fixed": self.gateway_fee_fixed,
            "fee_bearer": self.fee_bearer,
            "has_webhook_secret": bool(self.webhook_secret_encrypted),
            "webhook_signature_verification": bool(self.webhook_signature_verification),
            "ip_whitelist": _loads(self.ip_whitelist_json, []),
            "last_test_date": _iso(self.last_test_date),
            "last_test_status": self.last_test_status,
            "connectivity_status": self.connectivity_status,
            "health_check_status": self.health_check_status,
            "configuration_version": self.configuration_version,
            "configured_by": self.configured_by_fk,
            "configured_at": _iso(self.configured_at),
            "last_updated_by": self.last_updated_by_fk,
            "last_updated_at": _iso(self.last_updated_at),
        }


class PaymentTransaction(db.Model):
    __tablename__ = "payment_transactions"
    transaction_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False, index=True)
    student_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(8), default="INR")
    payment_gateway = db.Column(db.String(32), nullable=False)
    gateway_order_id = db.Column(db.String(64), unique=True, nullable=False)
    gateway_payment_id = db.Column(db.String(64))
    status = db.Column(db.String(16), default="pending")  # pending, success, failed, refunded
    webhook_verified = db.Column(db.Boolean, default=False)
    description = db.Column(db.String(255))
    failure_reason = db.Column(db.String(255))
    completed_at = db.Column(db.DateTime, index=True)
    settlement_id_fk = db.Column(db.Integer, db.ForeignKey("payment_settlements.settlement_id"), index=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    def to_dict(self):
        return {
            "transaction_id": self.transaction_id,
            "campus_id": self.campus_id_fk,
            "student_id": self.student_id_fk,
            "amount": self.amount,
            "currency": self.currency,
            "payment_gateway": self.payment_gateway,
            "gateway_order_id": self.gateway_order_id,
            "gateway_payment_id": self.gateway_payment_id,
            "status": self.status,
            "webhook_verified": bool(self.webhook_verified),
            "description": self.description,
            "failure_reason": self.failure_reason,
            "completed_at": _iso(self.completed_at),
            "settlement_id": self.settlement_id_fk,
            "created_at": _iso(self.created_at),
        }


class PaymentSettlement(db.Model):
    __tablename__ = "payment_settlements"
    settlement_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), nullable=False, index=True)
    settlement_batch_id = db.Column(db.String(64), unique=True, nullable=False)
    settlement_date = db.Column(db.DateTime, nullable=False)
    period_start = db.Column(db.DateTime, nullable=False)
    period_end = db.Column(db.DateTime, nullable=False)
    settlement_status = db.Column(db.String(16), default="pending")  # pending, processing, completed, failed, cancelled
    total_amount = db.Column(db.Float, default=0)
    gateway_fees = db.Column(db.Float, default=0)
    platform_fees = db.Column(db.Float, default=0)
    taxes = db.Column(db.Float, default=0)
    net_settlement_amount = db.Column(db.Float, default=0)
    currency = db.Column(db.String(8), default="INR")
    gateway_provider = db.Column(db.String(32), nullable=False)
    gateway_settlement_id = db.Column(db.String(64), unique=True)
    gateway_settlement_reference = db.Column(db.String(64))
    bank_snapshot_json = db.Column(db.Text)
    total_transactions = db.Column(db.Integer, default=0)
    initiated_by = db.Column(db.String(64))
    initiated_at = db.Column(db.DateTime, default=utc_now)
    processed_at = db.Column(db.DateTime)
    processing_duration_ms = db.Column(db.Integer)
    completed_at = db.Column(db.DateTime)
    retry_count = db.Column(db.Integer, default=0)
    error_code = db.Column(db.String(32))
    error_message = db.Column(db.Text)
    settlement_hash = db.Column(db.String(64), unique=True, nullable=False)
    school_notified = db.Column(db.Boolean, default=False)
    email_notification_status = db.Column(db.String(16), default="pending")
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    transactions = db.relationship("PaymentTransaction", backref="settlement", lazy=True)

    def to_dict(self):
        return {
            "settlement_id": self.settlement_id,
            "campus_id": self.campus_id_fk,
            "settlement_batch_id": self.settlement_batch_id,
            "settlement_date": _iso(self.settlement_date),
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "settlement_status": self.settlement_status,
            "total_amount": self.total_amount,
            "gateway_fees": self.gateway_fees,
            "platform_fees": self.platform_fees,
            "taxes": self.taxes,
            "net_settlement_amount": self.net_settlement_amount,
            "currency": self.currency,
            "gateway_provider": self.gateway_provider,
            "gateway_settlement_id": self.gateway_settlement_id,
            "gateway_settlement_reference": self.gateway_settlement_reference,
            "bank_details": _loads(self.bank_snapshot_json, {}),
            "total_transactions": self.total_transactions,
            "initiated_by": self.initiated_by,
            "initiated_at": _iso(self.initiated_at),
            "processed_at": _iso(self.processed_at),
            "processing_duration_ms": self.processing_duration_ms,
            "completed_at": _iso(self.completed_at),
            "retry_count": self.retry_count,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "settlement_hash": self.settlement_hash,
            "school_notified": bool(self.school_notified),
            "email_notification_status": self.email_notification_status,
        }


class PaymentAuditLog(db.Model):
    __tablename__ = "payment_audit_logs"
    log_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), index=True)
    user_id_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    event_type = db.Column(db.String(64), nullable=False, index=True)
    event_category = db.Column(db.String(32), nullable=False)  # settlement, configuration, webhook, security, transaction
    severity = db.Column(db.String(16), default="low")
    gateway_provider = db.Column(db.String(32))
    settlement_id_fk = db.Column(db.Integer, db.ForeignKey("payment_settlements.settlement_id"))
    amount = db.Column(db.Float)
    operation_performed = db.Column(db.String(128))
    operation_result = db.Column(db.String(16))  # success, failure, pending
    execution_time_ms = db.Column(db.Integer)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(255))
    request_id = db.Column(db.String(64))
    error_code = db.Column(db.String(32))
    error_message = db.Column(db.Text)
    compliance_tags = db.Column(db.String(255))
    data_changes_json = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now, index=True)

    def to_dict(self):
        return {
            "log_id": self.log_id,
            "campus_id": self.campus_id_fk,
            "user_id": self.user_id_fk,
            "event_type": self.event_type,
            "event_category": self.event_category,
            "severity": self.severity,
            "gateway_provider": self.gateway_provider,
            "settlement_id": self.settlement_id_fk,
            "amount": self.amount,
            "operation_performed": self.operation_performed,
            "operation_result": self.operation_result,
            "execution_time_ms": self.execution_time_ms,
            "ip_address": self.ip_address,
            "request_id": self.request_id,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "compliance_tags": self.compliance_tags.split(",") if self.compliance_tags else [],
            "data_changes": _loads(self.data_changes_json, None),
            "created_at": _iso(self.created_at),
        }


class PaymentSecurityEvent(db.Model):
    __tablename__ = "payment_security_events"
    event_id = db.Column(db.Integer, primary_key=True)
    campus_id_fk = db.Column(db.Integer, db.ForeignKey("campuses.campus_id"), index=True)
    event_type = db.Column(db.String(64), nullable=False)
    severity = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), default="open")  # open, investigating, resolved
    gateway_provider = db.Column(db.String(32))
    attack_vector = db.Column(db.String(64))
    detection_source = db.Column(db.String(64))
    confidence_score = db.Column(db.Float)
    ip_address = db.Column(db.String(64))
    details_json = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now, index=True)
    resolved_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            "event_id": self.event_id,
            "campus_id": self.campus_id_fk,
            "event_type": self.event_type,
            "severity": self.severity,
            "status": self.status,
            "gateway_provider": self.gateway_provider,
            "attack_vector": self.attack_vector,
            "detection_source": self.detection_source,
            "confidence_score": self.confidence_score,
            "ip_address": self.ip_address,
            "details": _loads(self.details_json, {}),
            "created_at": _iso(self.created_at),
            "resolved_at": _iso(self.resolved_at),
        }


class WebhookEvent(db.Model):
    """Processed webhook deliveries, used to acknowledge retries without reprocessing."""
    __tablename__ = "webhook_events"
    webhook_id = db.Column(db.Integer, primary_key=True)
    gateway_provider = db.Column(db.String(32), nullable=False)
    event_key = db.Column(db.String(128), nullable=False)
    kind = db.Column(db.String(16), nullable=False)  # settlement, transaction
    result_json = db.Column(db.Text)
    received_at = db.Column(db.DateTime, default=utc_now)
    __table_args__ = (db.UniqueConstraint("gateway_provider", "event_key", name="uq_webhook_event"),)


# ==========================================
# BACKUPS
# ==========================================

class BackupRecord(db.Model):
    __tablename__ = "backup_records"
    backup_id = db.Column(db.String(64), primary_key=True)
    backup_type = db.Column(db.String(16), nullable=False)  # full, incremental, payment_only
    status = db.Column(db.String(16), default="in_progress")  # in_progress, completed, failed
    campus_ids_json = db.Column(db.Text)
    file_path = db.Column(db.String(512))
    file_size = db.Column(db.Integer)
    checksum = db.Column(db.String(64))
    table_counts_json = db.Column(db.Text)
    initiated_by_fk = db.Column(db.Integer, db.ForeignKey("users.user_id"))
    error_message = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)
    completed_at = db.Column(db.DateTime)
    retention_expires_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            "backup_id": self.backup_id,
            "backup_type": self.backup_type,
            "status": self.status,
            "campus_ids": _loads(self.campus_ids_json, []),
            "file_size": self.file_size,
            "checksum": self.checksum,
            "table_counts": _loads(self.table_counts_json, {}),
            "initiated_by": self.initiated_by_fk,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
            "retention_expires_at": _iso(self.retention_expires_at),
        }

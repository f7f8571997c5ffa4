from sqlalchemy import or_
from .. import db
from ..models import User, Campus, USER_TYPES
from ..errors import ValidationError, ConflictError, NotFoundError, ForbiddenError
from ..auth.services import hash_password
from ..features.services import is_feature_enabled
from ..email_utils import send_templated_email

GUARDED_TYPES = ("Student", "Parent")
EDITABLE_FIELDS = ("first_name", "last_name", "phone", "is_active")


def get_campus_user(campus_id, user_id):
    user = db.session.get(User, user_id)
    if not user or user.is_deleted or user.campus_id_fk != campus_id:
        raise NotFoundError("User not found")
    return user


def _check_parent_link(campus_id, student_id):
    if student_id is None:
        return None
    student = get_campus_user(campus_id, int(student_id))
    if student.user_type != "Student":
        raise ValidationError("parent_of_id must reference a student")
    return student.user_id


def create_user(campus_id, payload, actor):
    user_type = payload.get("user_type")
    if user_type not in USER_TYPES:
        raise ValidationError(f"user_type must be one of: {', '.join(USER_TYPES)}")
    if user_type == "Super Admin":
        if not actor.is_super_admin:
            raise ForbiddenError("Only a Super Admin can create Super Admin accounts")
        campus_id = None
    else:
        campus = db.session.get(Campus, campus_id) if campus_id else None
        if not campus:
            raise NotFoundError("Campus not found")
        if user_type in GUARDED_TYPES and not actor.is_super_admin and not is_feature_enabled(campus_id, "student_parent_access"):
            raise ForbiddenError(
                "Student and parent account creation is disabled for this campus",
                code="feature_disabled",
                extra={"feature": "student_parent_access", "campus_id": campus_id},
            )

    email = (payload.get("email") or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    if not payload.get("first_name"):
        raise ValidationError("first_name is required")
    if User.query.filter_by(email=email).first():
        raise ConflictError("A user with this email already exists")

    user = User(
        campus_id_fk=campus_id,
        email=email,
        password_hash=hash_password(payload.get("password")),
        first_name=payload["first_name"].strip(),
        last_name=(payload.get("last_name") or "").strip() or None,
        phone=payload.get("phone"),
        user_type=user_type,
    )
    if user_type == "Parent":
        user.parent_of_id_fk = _check_parent_link(campus_id, payload.get("parent_of_id"))
    user.meta = payload.get("meta") or {}
    db.session.add(user)
    db.session.commit()

    send_templated_email(
        "welcome",
        user.email,
        user_name=user.full_name,
        campus_name=user.campus.name if user.campus else "the platform",
        email=user.email,
        user_type=user.user_type,
    )
    return user


def list_users(campus_id, user_type=None, search=None, include_inactive=False):
    q = User.query.filter(User.campus_id_fk == campus_id, User.is_deleted == False)  # noqa: E712
    if user_type:
        q = q.filter(User.user_type == user_type)
    if not include_inactive:
        q = q.filter(User.is_active == True)  # noqa: E712
    if search:
        like = f"%{search.strip()}%"
        q = q.filter(or_(User.first_name.ilike(like), User.last_name.ilike(like), User.email.ilike(like)))
    return q.order_by(User.first_name, User.user_id)


def update_user(campus_id, user_id, payload):
    user = get_campus_user(campus_id, user_id)
    for field in EDITABLE_FIELDS:
        if field in payload:
            setattr(user, field, payload[field])
    if "email" in payload:
        email = (payload["email"] or "").strip().lower()
        clash = User.query.filter(User.email == email, User.user_id != user.user_id).first()
        if clash:
            raise ConflictError("A user with this email already exists")
        user.email = email
    if "meta" in payload:
        merged = user.meta
        merged.update(payload["meta"] or {})
        user.meta = merged
    if "parent_of_id" in payload and user.user_type == "Parent":
        user.parent_of_id_fk = _check_parent_link(campus_id, payload["parent_of_id"])
    if "password" in payload:
        user.password_hash = hash_password(payload["password"])
    db.session.commit()
    return user


def delete_user(campus_id, user_id, actor):
    user = get_campus_user(campus_id, user_id)
    if user.user_id == actor.user_id:
        raise ValidationError("You cannot delete your own account")
    user.is_deleted = True
    user.is_active = False
    db.session.commit()
    return user


def children_of(parent):
    if parent.parent_of_id_fk:
        child = db.session.get(User, parent.parent_of_id_fk)
        if child and not child.is_deleted:
            return [child]
    return []

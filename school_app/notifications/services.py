import json
import logging
from flask import current_app
from .. import db
from ..models import (Notification, NotificationRecipient, User, Campus, SchoolClass,
                      USER_TYPES, utc_now)
from ..errors import ValidationError, NotFoundError, ForbiddenError
from ..api_utils import parse_int
from ..email_utils import send_templated_email

logger = logging.getLogger(__name__)

SCOPES = ("campus", "class", "user")


def _active_users(campus_id):
    return User.query.filter(
        User.campus_id_fk == campus_id,
        User.is_active == True,  # noqa: E712
        User.is_deleted == False,  # noqa: E712
    )


def _target_types(raw):
    if raw in (None, "", []):
        return []
    if isinstance(raw, str):
        raw = [t.strip() for t in raw.split(",") if t.strip()]
    bad = [t for t in raw if t not in USER_TYPES]
    if bad:
        raise ValidationError(f"Unknown user types: {', '.join(bad)}")
    return list(dict.fromkeys(raw))


def resolve_recipients(campus_id, scope, class_id=None, user_ids=None, target_types=None):
    """Users who should receive a notification of the given scope."""
    if scope == "campus":
        q = _active_users(campus_id)
        if target_types:
            q = q.filter(User.user_type.in_(target_types))
        return q.all()

    if scope == "class":
        cls = db.session.get(SchoolClass, class_id) if class_id else None
        if not cls or cls.is_deleted or cls.campus_id_fk != campus_id:
            raise NotFoundError("Class not found")
        student_ids = cls.student_ids
        member_ids = set(student_ids) | set(cls.teacher_ids)
        users = _active_users(campus_id).filter(User.user_id.in_(member_ids)).all() if member_ids else []
        if student_ids:
            users += _active_users(campus_id).filter(
                User.user_type == "Parent", User.parent_of_id_fk.in_(student_ids)
            ).all()
        if target_types:
            users = [u for u in users if u.user_type in target_types]
        return users

    ids = [parse_int(uid, "user_ids") for uid in (user_ids or [])]
    if not ids:
        raise ValidationError("user_ids is required for user notifications")
    users = _active_users(campus_id).filter(User.user_id.in_(ids)).all()
    missing = sorted(set(ids) - {u.user_id for u in users})
    if missing:
        raise ValidationError("Some recipients are not active users of this campus",
                              extra={"invalid_user_ids": missing})
    return users


def create_notification(campus_id, payload, user):
    scope = payload.get("scope") or "campus"
    if scope not in SCOPES:
        raise ValidationError(f"scope must be one of: {', '.join(SCOPES)}")
    title = (payload.get("title") or "").strip()
    message = (payload.get("message") or "").strip()
    if not title or not message:
        raise ValidationError("title and message are required")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("data must be an object")

    target_types = _target_types(payload.get("target_user_types"))
    class_id = parse_int(payload.get("class_id"), "class_id")
    recipients = resolve_recipients(campus_id, scope, class_id, payload.get("user_ids"), target_types)

    notification = Notification(
        campus_id_fk=campus_id,
        scope=scope,
        class_id_fk=class_id if scope == "class" else None,
        target_user_types=",".join(target_types) or None,
        title=title,
        message=message,
        data_json=json.dumps(data),
        created_by_fk=user.user_id,
    )
    db.session.add(notification)
    seen = set()
    for r in recipients:
        if r.user_id in seen:
            continue
        seen.add(r.user_id)
        notification.recipients.append(NotificationRecipient(user_id_fk=r.user_id))
    db.session.commit()
    logger.info("notification %s sent to %d users in campus %s",
                notification.notification_id, len(seen), campus_id)

    emailed = 0
    if payload.get("send_email"):
        emailed = _email_recipients(notification, [r for r in recipients if r.user_id in seen])
    return notification, len(seen), emailed


def _email_recipients(notification, recipients):
    campus = db.session.get(Campus, notification.campus_id_fk)
    sent = 0
    for r in recipients:
        if not r.email:
            continue
        try:
            ok = send_templated_email(
                "notification", r.email,
                user_name=r.full_name,
                title=notification.title,
                message=notification.message,
                campus_name=campus.name if campus else "",
            )
        except Exception:
            current_app.logger.exception("notification email to %s failed", r.email)
            continue
        sent += 1 if ok else 0
    return sent


def _serialize(recipient):
    data = recipient.notification.to_dict()
    data["is_seen"] = bool(recipient.is_seen)
    data["seen_at"] = recipient.seen_at.isoformat() if recipient.seen_at else None
    return data


def my_notifications_query(user_id, unseen_only=False):
    q = (NotificationRecipient.query
         .join(Notification, Notification.notification_id == NotificationRecipient.notification_id_fk)
         .filter(NotificationRecipient.user_id_fk == user_id,
                 Notification.is_deleted == False))  # noqa: E712
    if unseen_only:
        q = q.filter(NotificationRecipient.is_seen == False)  # noqa: E712
    return q.order_by(Notification.created_at.desc(), Notification.notification_id.desc())


def serialize_recipients(rows):
    return [_serialize(r) for r in rows]


def unseen_count(user_id):
    return my_notifications_query(user_id, unseen_only=True).order_by(None).count()


def mark_seen(user_id, notification_id):
    row = NotificationRecipient.query.filter_by(
        user_id_fk=user_id, notification_id_fk=notification_id).first()
    if not row or row.notification.is_deleted:
        raise NotFoundError("Notification not found")
    if not row.is_seen:
        row.is_seen = True
        row.seen_at = utc_now()
        db.session.commit()
    return row


def mark_all_seen(user_id):
    rows = my_notifications_query(user_id, unseen_only=True).all()
    now = utc_now()
    for row in rows:
        row.is_seen = True
        row.seen_at = now
    db.session.commit()
    return len(rows)


def campus_notifications_query(campus_id, scope=None):
    q = Notification.query.filter(Notification.campus_id_fk == campus_id,
                                  Notification.is_deleted == False)  # noqa: E712
    if scope:
        q = q.filter(Notification.scope == scope)
    return q.order_by(Notification.created_at.desc(), Notification.notification_id.desc())


def delivery_stats(notification):
    total = len(notification.recipients)
    seen = sum(1 for r in notification.recipients if r.is_seen)
    return {"recipients": total, "seen": seen, "unseen": total - seen}


def delete_notification(campus_id, notification_id, user):
    notification = db.session.get(Notification, notification_id)
    if not notification or notification.is_deleted or notification.campus_id_fk != campus_id:
        raise NotFoundError("Notification not found")
    is_admin = user.user_type in ("Super Admin", "Admin")
    if not is_admin and notification.created_by_fk != user.user_id:
        raise ForbiddenError("Only the creator or an administrator can delete this notification")
    notification.is_deleted = True
    db.session.commit()
    return notification

from collections import OrderedDict
from .. import db
from ..models import Attendance, User, utc_now
from ..errors import ValidationError, NotFoundError
from ..api_utils import parse_date
from ..classes.services import get_class, class_students

STATUSES = ("present", "absent", "late", "leave")
USER_TYPES = ("Student", "Teacher")


def performance_band(percentage):
    if percentage >= 90:
        return "excellent"
    if percentage >= 75:
        return "good"
    if percentage >= 60:
        return "average"
    return "needs_attention"


def summarize(records):
    counts = {s: 0 for s in STATUSES}
    for rec in records:
        counts[rec.status] = counts.get(rec.status, 0) + 1
    total = len(records)
    # Late still counts as attended
    attended = counts["present"] + counts["late"]
    percentage = round(attended / total * 100, 2) if total else 0
    return {"total_days": total, **counts, "percentage": percentage, "band": performance_band(percentage)}


def _validate_common(payload):
    status = payload.get("status")
    user_type = payload.get("user_type")
    if user_type not in USER_TYPES:
        raise ValidationError(f"user_type must be one of: {', '.join(USER_TYPES)}")
    if status is not None and status not in STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
    day = parse_date(payload.get("date"), "date") or utc_now().date()
    if day > utc_now().date():
        raise ValidationError("Attendance cannot be marked for a future date")
    return day, user_type


def _upsert(campus_id, user_id, class_id, day, status, user_type, remarks, marker_id):
    user = db.session.get(User, user_id)
    if not user or user.is_deleted or user.campus_id_fk != campus_id:
        raise NotFoundError(f"User {user_id} not found")
    if user.user_type != user_type:
        raise ValidationError(f"User {user_id} is not a {user_type}")
    record = Attendance.query.filter_by(user_id_fk=user_id, class_id_fk=class_id, date=day).first()
    if not record:
        record = Attendance(campus_id_fk=campus_id, user_id_fk=user_id, class_id_fk=class_id, date=day)
        db.session.add(record)
    record.status = status
    record.user_type = user_type
    record.remarks = remarks
    record.marked_by_fk = marker_id
    record.is_deleted = False
    return record


def _run_batch(campus_id, entries, class_id, day, user_type, marker_id):
    if class_id:
        get_class(campus_id, class_id)
    errors, saved = [], []
    for entry in entries:
        uid = entry.get("user_id")
        try:
            uid = int(uid)
            status = entry.get("status")
            if status not in STATUSES:
                raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
            saved.append(_upsert(campus_id, uid, class_id, day, status, user_type, entry.get("remarks"), marker_id))
        except (ValidationError, NotFoundError) as e:
            errors.append({"user_id": uid, "error": e.message})
        except (TypeError, ValueError):
            errors.append({"user_id": uid, "error": "invalid user id"})
    db.session.commit()
    return {
        "success": len(saved) > 0,
        "records": [r.to_dict() for r in saved],
        "errors": errors,
        "total_processed": len(entries),
        "successful_count": len(saved),
        "error_count": len(errors),
    }


def mark_attendance(campus_id, payload, marker_id=None):
    """Mark one status for `user_id` or every id in `user_ids`."""
    day, user_type = _validate_common(payload)
    if payload.get("status") is None:
        raise ValidationError("status is required")
    user_ids = payload.get("user_ids")
    if user_ids is None and payload.get("user_id") is not None:
        user_ids = [payload["user_id"]]
    if not isinstance(user_ids, list) or not user_ids:
        raise ValidationError("user_id or user_ids is required")
    entries = [{"user_id": uid, "status": payload["status"], "remarks": payload.get("remarks")} for uid in user_ids]
    class_id = int(payload["class_id"]) if payload.get("class_id") else None
    return _run_batch(campus_id, entries, class_id, day, user_type, marker_id)


def mark_bulk_attendance(campus_id, payload, marker_id=None):
    """Mark per-user statuses: records=[{user_id, status, remarks}]."""
    day, user_type = _validate_common(payload)
    records = payload.get("records")
    if not isinstance(records, list) or not records:
        raise ValidationError("records must be a non-empty list")
    class_id = int(payload["class_id"]) if payload.get("class_id") else None
    return _run_batch(campus_id, records, class_id, day, user_type, marker_id)


def get_record(campus_id, attendance_id):
    record = db.session.get(Attendance, attendance_id)
    if not record or record.is_deleted or record.campus_id_fk != campus_id:
        raise NotFoundError("Attendance record not found")
    return record


def update_attendance(campus_id, attendance_id, payload, marker_id=None):
    record = get_record(campus_id, attendance_id)
    if "status" in payload:
        if payload["status"] not in STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(STATUSES)}")
        record.status = payload["status"]
    if "remarks" in payload:
        record.remarks = payload["remarks"]
    record.marked_by_fk = marker_id
    db.session.commit()
    return record


def delete_attendance(campus_id, attendance_id):
    record = get_record(campus_id, attendance_id)
    record.is_deleted = True
    db.session.commit()


def _base_query(campus_id):
    return Attendance.query.filter(Attendance.campus_id_fk == campus_id, Attendance.is_deleted == False)  # noqa: E712


def by_date(campus_id, day, user_type=None, class_id=None):
    q = _base_query(campus_id).filter(Attendance.date == day)
    if user_type:
        q = q.filter(Attendance.user_type == user_type)
    if class_id:
        q = q.filter(Attendance.class_id_fk == class_id)
    return q.order_by(Attendance.user_id_fk).all()


def by_user(campus_id, user_id, start=None, end=None):
    q = _base_query(campus_id).filter(Attendance.user_id_fk == user_id)
    if start:
        q = q.filter(Attendance.date >= start)
    if end:
        q = q.filter(Attendance.date <= end)
    return q.order_by(Attendance.date.desc()).all()


def _check_range(start, end):
    if start and end and start > end:
        raise ValidationError("start_date must be before end_date")


def class_report(campus_id, class_id, start=None, end=None):
    _check_range(start, end)
    cls = get_class(campus_id, class_id)
    students = class_students(campus_id, class_id)
    q = _base_query(campus_id).filter(Attendance.class_id_fk == class_id)
    if start:
        q = q.filter(Attendance.date >= start)
    if end:
        q = q.filter(Attendance.date <= end)
    by_student = {}
    for rec in q.all():
        by_student.setdefault(rec.user_id_fk, []).append(rec)

    rows = []
    for student in students:
        summary = summarize(by_student.get(student.user_id, []))
        rows.append({"student_id": student.user_id, "student_name": student.full_name, **summary})
    rows.sort(key=lambda r: r["percentage"], reverse=True)

    total_students = len(rows)
    average = round(sum(r["percentage"] for r in rows) / total_students, 2) if total_students else 0
    bands = {b: 0 for b in ("excellent", "good", "average", "needs_attention")}
    for r in rows:
        bands[r["band"]] += 1
    return {
        "class": {"class_id": cls.class_id, "name": cls.name, "academic_year": cls.academic_year},
        "period": {"start_date": start.isoformat() if start else None, "end_date": end.isoformat() if end else None},
        "students": rows,
        "summary": {"total_students": total_students, "average_attendance": average, **bands},
    }


def student_view(campus_id, student_id, start=None, end=None):
    _check_range(start, end)
    records = by_user(campus_id, student_id, start, end)
    months = OrderedDict()
    for rec in sorted(records, key=lambda r: r.date):
        months.setdefault(rec.date.strftime("%Y-%m"), []).append(rec)
    monthly = [{"month": month, **summarize(recs)} for month, recs in months.items()]
    return {
        "student_id": student_id,
        "overall": summarize(records),
        "monthly": monthly,
        "records": [r.to_dict() for r in records],
    }



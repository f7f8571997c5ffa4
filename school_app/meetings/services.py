import json
import logging
import uuid
from .. import db
from ..models import Meeting, MeetingParticipant, User, utc_now
from ..errors import ValidationError, NotFoundError, ForbiddenError, ConflictError
from ..api_utils import parse_datetime, parse_int

logger = logging.getLogger(__name__)

MEETING_TYPES = ("scheduled", "instant", "recurring")
PARTICIPANT_ROLES = ("host", "co_host", "participant")
DEFAULT_MAX_PARTICIPANTS = 100

DEFAULT_FEATURES = {
    "video_enabled": True,
    "audio_enabled": True,
    "screen_sharing_enabled": True,
    "chat_enabled": True,
    "recording_enabled": False,
    "breakout_rooms_enabled": False,
    "whiteboard_enabled": False,
    "hand_raise_enabled": True,
    "waiting_room_enabled": False,
}


def _audit(meeting, action, user_id, **details):
    trail = meeting.audit_trail
    trail.append({
        "action": action,
        "user_id": user_id,
        "timestamp": utc_now().isoformat(),
        "details": details,
    })
    meeting.audit_trail_json = json.dumps(trail)


def _merge_features(current, incoming):
    if incoming in (None, {}):
        return dict(current)
    if not isinstance(incoming, dict):
        raise ValidationError("features must be an object")
    unknown = sorted(set(incoming) - set(DEFAULT_FEATURES))
    if unknown:
        raise ValidationError(f"Unknown meeting features: {', '.join(unknown)}")
    merged = dict(current)
    merged.update({k: bool(v) for k, v in incoming.items()})
    return merged


def _max_participants(value):
    if value in (None, ""):
        return DEFAULT_MAX_PARTICIPANTS
    number = parse_int(value, "max_participants")
    if number < 2:
        raise ValidationError("max_participants must be at least 2")
    return number


def get_meeting(campus_id, meeting_id):
    meeting = db.session.get(Meeting, meeting_id)
    if not meeting or meeting.is_deleted or meeting.campus_id_fk != campus_id:
        raise NotFoundError("Meeting not found")
    return meeting


def _participant(meeting, user_id):
    for p in meeting.participants:
        if p.user_id_fk == user_id:
            return p
    return None


def can_manage(meeting, user):
    """Host, co-host, campus admin or super admin."""
    if user.is_super_admin or user.user_type == "Admin":
        return True
    p = _participant(meeting, user.user_id)
    return bool(p and p.role in ("host", "co_host"))


def _require_manager(meeting, user):
    if not can_manage(meeting, user):
        raise ForbiddenError("Only the meeting host or an administrator can do this")


def _campus_users(campus_id, user_ids):
    users = User.query.filter(
        User.user_id.in_(user_ids),
        User.campus_id_fk == campus_id,
        User.is_deleted == False,  # noqa: E712
        User.is_active == True,  # noqa: E712
    ).all()
    found = {u.user_id for u in users}
    missing = [uid for uid in user_ids if uid not in found]
    if missing:
        raise ValidationError(
            "Some participants are not active users of this campus",
            extra={"invalid_user_ids": missing},
        )
    return users


def _participant_ids(raw):
    if raw in (None, ""):
        return []
    if not isinstance(raw, list):
        raise ValidationError("participants must be a list of user ids")
    ids = []
    for value in raw:
        uid = parse_int(value.get("user_id") if isinstance(value, dict) else value, "participant")
        if uid not in ids:
            ids.append(uid)
    return ids


def create_meeting(campus_id, payload, user):
    name = (payload.get("meeting_name") or "").strip()
    if not name:
        raise ValidationError("meeting_name is required")
    meeting_type = payload.get("meeting_type") or "scheduled"
    if meeting_type not in MEETING_TYPES:
        raise ValidationError(f"meeting_type must be one of: {', '.join(MEETING_TYPES)}")

    now = utc_now()
    start_time = parse_datetime(payload.get("start_time"), "start_time")
    end_time = parse_datetime(payload.get("end_time"), "end_time")
    if meeting_type == "instant":
        start_time = start_time or now
    elif not start_time:
        raise ValidationError("start_time is required for scheduled meetings")
    if end_time and end_time <= start_time:
        raise ValidationError("end_time must be after start_time")

    max_participants = _max_participants(payload.get("max_participants"))
    others = [uid for uid in _participant_ids(payload.get("participants")) if uid != user.user_id]
    if len(others) + 1 > max_participants:
        raise ValidationError(f"Meeting cannot have more than {max_participants} participants")
    invitees = _campus_users(campus_id, others) if others else []

    meeting = Meeting(
        campus_id_fk=campus_id,
        creator_id_fk=user.user_id,
        meeting_name=name,
        meeting_description=payload.get("meeting_description"),
        start_time=start_time,
        end_time=end_time,
        location=payload.get("location"),
        meeting_type=meeting_type,
        meeting_status="scheduled",
        meeting_room_id=f"room_{uuid.uuid4()}",
        max_participants=max_participants,
        features_json=json.dumps(_merge_features(DEFAULT_FEATURES, payload.get("features"))),
    )
    meeting.participants.append(MeetingParticipant(user_id_fk=user.user_id, role="host"))
    for invitee in invitees:
        meeting.participants.append(MeetingParticipant(user_id_fk=invitee.user_id, role="participant"))
    _audit(meeting, "created", user.user_id, meeting_type=meeting_type, participants=len(invitees) + 1)

    if meeting_type == "instant":
        meeting.meeting_status = "live"
        meeting.actual_start = now
        _audit(meeting, "started", user.user_id)

    db.session.add(meeting)
    db.session.commit()
    logger.info("meeting %s created in campus %s by user %s", meeting.meeting_room_id, campus_id, user.user_id)
    return meeting


def _filtered(query, status=None, upcoming=False):
    if status:
        query = query.filter(Meeting.meeting_status == status)
    if upcoming:
        query = query.filter(Meeting.start_time >= utc_now(),
                             Meeting.meeting_status.in_(("scheduled", "live")))
    return query.order_by(Meeting.start_time.desc())


def list_campus_meetings(campus_id, status=None, upcoming=False):
    q = Meeting.query.filter(Meeting.campus_id_fk == campus_id, Meeting.is_deleted == False)  # noqa: E712
    return _filtered(q, status, upcoming)


def list_user_meetings(campus_id, user_id, status=None, upcoming=False):
    q = (Meeting.query.join(MeetingParticipant, MeetingParticipant.meeting_id_fk == Meeting.meeting_id)
         .filter(Meeting.campus_id_fk == campus_id,
                 Meeting.is_deleted == False,  # noqa: E712
                 MeetingParticipant.user_id_fk == user_id))
    return _filtered(q, status, upcoming)


def get_visible_meeting(campus_id, meeting_id, user):
    meeting = get_meeting(campus_id, meeting_id)
    if user.user_type in ("Super Admin", "Admin") or _participant(meeting, user.user_id):
        return meeting
    raise ForbiddenError("You are not a participant of this meeting")


def update_meeting(campus_id, meeting_id, payload, user):
    meeting = get_meeting(campus_id, meeting_id)
    _require_manager(meeting, user)
    if meeting.meeting_status in ("ended", "cancelled"):
        raise ConflictError(f"Cannot update a meeting that is {meeting.meeting_status}")

    changed = []
    if "meeting_name" in payload:
        name = (payload.get("meeting_name") or "").strip()
        if not name:
            raise ValidationError("meeting_name cannot be empty")
        meeting.meeting_name = name
        changed.append("meeting_name")
    for field in ("meeting_description", "location"):
        if field in payload:
            setattr(meeting, field, payload.get(field))
            changed.append(field)
    if "start_time" in payload:
        if meeting.meeting_status == "live":
            raise ConflictError("Cannot reschedule a live meeting")
        meeting.start_time = parse_datetime(payload["start_time"], "start_time") or meeting.start_time
        changed.append("start_time")
    if "end_time" in payload:
        meeting.end_time = parse_datetime(payload["end_time"], "end_time")
        changed.append("end_time")
    if meeting.end_time and meeting.end_time <= meeting.start_time:
        raise ValidationError("end_time must be after start_time")
    if "max_participants" in payload:
        limit = _max_participants(payload["max_participants"])
        if limit < len(meeting.participants):
            raise ValidationError("max_participants cannot be lower than the current participant count")
        meeting.max_participants = limit
        changed.append("max_participants")
    if "features" in payload:
        meeting.features_json = json.dumps(_merge_features(meeting.features, payload["features"]))
        changed.append("features")

    _audit(meeting, "updated", user.user_id, fields=changed)
    db.session.commit()
    return meeting


def cancel_meeting(campus_id, meeting_id, user):
    meeting = get_meeting(campus_id, meeting_id)
    _require_manager(meeting, user)
    if meeting.meeting_status == "live":
        raise ConflictError("End the meeting before cancelling it")
    meeting.meeting_status = "cancelled"
    meeting.is_deleted = True
    _audit(meeting, "cancelled", user.user_id)
    db.session.commit()
    return meeting


def start_meeting(campus_id, meeting_id, user):
    meeting = get_meeting(campus_id, meeting_id)
    _require_manager(meeting, user)
    if meeting.meeting_status != "scheduled":
        raise ConflictError(f"Meeting is {meeting.meeting_status} and cannot be started")
    meeting.meeting_status = "live"
    meeting.actual_start = utc_now()
    _audit(meeting, "started", user.user_id)
    db.session.commit()
    return meeting


def end_meeting(campus_id, meeting_id, user):
    meeting = get_meeting(campus_id, meeting_id)
    _require_manager(meeting, user)
    if meeting.meeting_status != "live":
        raise ConflictError("Only a live meeting can be ended")
    meeting.meeting_status = "ended"
    meeting.actual_end = utc_now()
    duration = None
    if meeting.actual_start:
        duration = int((meeting.actual_end - meeting.actual_start).total_seconds() // 60)
    _audit(meeting, "ended", user.user_id, duration_minutes=duration)
    db.session.commit()
    return meeting, duration


def add_participants(campus_id, meeting_id, payload, user):
    meeting = get_meeting(campus_id, meeting_id)
    _require_manager(meeting, user)
    if meeting.meeting_status in ("ended", "cancelled"):
        raise ConflictError(f"Cannot add participants to a meeting that is {meeting.meeting_status}")
    role = payload.get("role") or "participant"
    if role not in ("co_host", "participant"):
        raise ValidationError("role must be co_host or participant")

    requested = _participant_ids(payload.get("user_ids") or payload.get("participants"))
    if not requested:
        raise ValidationError("user_ids is required")
    existing = {p.user_id_fk for p in meeting.participants}
    new_ids = [uid for uid in requested if uid not in existing]
    if len(existing) + len(new_ids) > meeting.max_participants:
        raise ValidationError(f"Meeting cannot have more than {meeting.max_participants} participants")
    users = _campus_users(campus_id, new_ids) if new_ids else []

    for u in users:
        meeting.participants.append(MeetingParticipant(user_id_fk=u.user_id, role=role))
    _audit(meeting, "participants_added", user.user_id, user_ids=new_ids, role=role)
    db.session.commit()
    return {"added": new_ids, "already_present": [uid for uid in requested if uid in existing]}


def remove_participants(campus_id, meeting_id, payload, user):
    meeting = get_meeting(campus_id, meeting_id)
    _require_manager(meeting, user)
    requested = _participant_ids(payload.get("user_ids") or payload.get("participants"))
    if not requested:
        raise ValidationError("user_ids is required")

    removed, not_found = [], []
    for uid in requested:
        p = _participant(meeting, uid)
        if not p:
            not_found.append(uid)
            continue
        if p.role == "host":
            raise ValidationError("The meeting host cannot be removed")
        meeting.participants.remove(p)
        removed.append(uid)
    _audit(meeting, "participants_removed", user.user_id, user_ids=removed)
    db.session.commit()
    return {"removed": removed, "not_found": not_found}

import logging
from sqlalchemy.exc import SQLAlchemyError
from .. import db, cache
from ..models import Campus, CampusFeatures
from ..errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

FEATURE_NAMES = CampusFeatures.FLAGS
DEFAULT_FEATURES = {name: True for name in FEATURE_NAMES}


def _cache_key(campus_id):
    return f"campus_features:{campus_id}"


def _require_campus(campus_id):
    campus = db.session.get(Campus, campus_id)
    if not campus:
        raise NotFoundError("Campus not found")
    return campus


def _validate_flags(updates):
    if not isinstance(updates, dict) or not updates:
        raise ValidationError("features must be a non-empty object")
    unknown = sorted(set(updates) - set(FEATURE_NAMES))
    if unknown:
        raise ValidationError(f"Unknown features: {', '.join(unknown)}", extra={"allowed": list(FEATURE_NAMES)})
    for name, value in updates.items():
        if not isinstance(value, bool):
            raise ValidationError(f"Feature '{name}' must be true or false")


def initialize_campus_features(campus_id, user_id=None):
    _require_campus(campus_id)
    record = CampusFeatures.query.filter_by(campus_id_fk=campus_id).first()
    if record:
        return record
    record = CampusFeatures(campus_id_fk=campus_id, updated_by_fk=user_id, **DEFAULT_FEATURES)
    db.session.add(record)
    db.session.commit()
    cache.delete(_cache_key(campus_id))
    return record


def get_campus_features(campus_id):
    record = CampusFeatures.query.filter_by(campus_id_fk=campus_id).first()
    if record:
        return record
    return initialize_campus_features(campus_id)


def update_campus_features(campus_id, updates, user_id=None):
    _validate_flags(updates)
    record = get_campus_features(campus_id)
    for name, value in updates.items():
        setattr(record, name, value)
    record.updated_by_fk = user_id
    db.session.commit()
    cache.delete(_cache_key(campus_id))
    logger.info("Campus %s features updated by %s: %s", campus_id, user_id, updates)
    return record


def enable_feature(campus_id, feature, user_id=None):
    return update_campus_features(campus_id, {feature: True}, user_id)


def disable_feature(campus_id, feature, user_id=None):
    return update_campus_features(campus_id, {feature: False}, user_id)


def reset_to_defaults(campus_id, user_id=None):
    return update_campus_features(campus_id, dict(DEFAULT_FEATURES), user_id)


def is_feature_enabled(campus_id, feature):
    """True unless the campus has a record with `feature` switched off.

    Lookup failures fail open so a broken flag table does not lock schools out.
    """
    key = _cache_key(campus_id)
    flags = cache.get(key)
    if flags is None:
        try:
            record = CampusFeatures.query.filter_by(campus_id_fk=campus_id).first()
        except SQLAlchemyError as e:
            logger.error("Feature lookup failed for campus %s: %s", campus_id, e)
            return True
        flags = record.flags() if record else {}
        cache.set(key, flags, timeout=300)
    return bool(flags.get(feature, True))


def get_all_campus_features():
    rows = (
        db.session.query(Campus, CampusFeatures)
        .outerjoin(CampusFeatures, CampusFeatures.campus_id_fk == Campus.campus_id)
        .order_by(Campus.name)
        .all()
    )
    result = []
    for campus, record in rows:
        result.append({
            "campus_id": campus.campus_id,
            "campus_name": campus.name,
            "features": record.flags() if record else dict(DEFAULT_FEATURES),
            "configured": record is not None,
        })
    return result


def bulk_update_features(campus_ids, updates, user_id=None):
    _validate_flags(updates)
    if not isinstance(campus_ids, list) or not campus_ids:
        raise ValidationError("campus_ids must be a non-empty list")
    updated, failed = [], []
    for campus_id in campus_ids:
        try:
            update_campus_features(int(campus_id), updates, user_id)
            updated.append(int(campus_id))
        except (NotFoundError, TypeError, ValueError) as e:
            db.session.rollback()
            failed.append({"campus_id": campus_id, "error": str(e) or "invalid campus id"})
    return {"updated": updated, "failed": failed}

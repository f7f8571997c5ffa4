"""Database snapshots to gzipped JSON, with integrity checks and retention."""
import gzip
import hashlib
import json
import logging
import os
import secrets
from datetime import timedelta
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from .. import db
from ..models import BackupRecord, utc_now
from ..errors import ValidationError, NotFoundError, ConflictError

logger = logging.getLogger(__name__)

BACKUP_TYPES = ("full", "incremental", "payment_only")
PAYMENT_TABLES = (
    "school_bank_details",
    "payment_gateway_configurations",
    "payment_transactions",
    "payment_settlements",
    "payment_audit_logs",
    "payment_security_events",
    "webhook_events",
)
EXCLUDED_TABLES = ("backup_records", "user_sessions")
INTEGRITY_WARNING_DAYS = 25
SCHEDULE_HOUR_UTC = 2


def _backup_dir():
    path = current_app.config["BACKUP_DIR"]
    os.makedirs(path, exist_ok=True)
    return path


def _tables(backup_type):
    tables = [t for t in db.metadata.sorted_tables if t.name not in EXCLUDED_TABLES]
    if backup_type == "payment_only":
        tables = [t for t in tables if t.name in PAYMENT_TABLES]
    return tables


def _campus_column(table):
    if table.name == "campuses":
        return table.c.campus_id
    return table.c.get("campus_id_fk")


def _changed_since(table, since):
    cols = [c for c in (table.c.get("updated_at"), table.c.get("created_at")) if c is not None]
    if not cols:
        return None
    clause = cols[0] >= since
    for col in cols[1:]:
        clause = clause | (col >= since)
    return clause


def _snapshot(backup_type, campus_ids, since):
    data, counts, skipped = {}, {}, []
    for table in _tables(backup_type):
        stmt = table.select()
        if campus_ids:
            column = _campus_column(table)
            if column is None:
                skipped.append(table.name)
                continue
            stmt = stmt.where(column.in_(campus_ids))
        if since is not None:
            clause = _changed_since(table, since)
            if clause is None:
                skipped.append(table.name)
                continue
            stmt = stmt.where(clause)
        rows = [dict(r._mapping) for r in db.session.execute(stmt)]
        data[table.name] = rows
        counts[table.name] = len(rows)
    return data, counts, skipped


def _sha256(path):
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def last_completed_backup():
    return (BackupRecord.query.filter_by(status="completed")
            .order_by(BackupRecord.created_at.desc()).first())


def initiate_backup(backup_type="full", options=None, user_id=None):
    options = options or {}
    if backup_type not in BACKUP_TYPES:
        raise ValidationError(f"backup_type must be one of: {', '.join(BACKUP_TYPES)}")
    campus_ids = options.get("campus_ids") or []
    if not isinstance(campus_ids, list) or any(not isinstance(c, int) for c in campus_ids):
        raise ValidationError("campus_ids must be a list of integers")

    since = None
    if backup_type == "incremental":
        previous = last_completed_backup()
        if not previous:
            raise ConflictError("An incremental backup needs a completed backup to start from")
        since = previous.created_at

    now = utc_now()
    record = BackupRecord(
        backup_id=f"backup_{now.strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(4)}",
        backup_type=backup_type,
        status="in_progress",
        campus_ids_json=json.dumps(campus_ids),
        initiated_by_fk=user_id,
        created_at=now,
        retention_expires_at=now + timedelta(days=current_app.config["BACKUP_RETENTION_DAYS"]),
    )
    db.session.add(record)
    db.session.commit()

    path = os.path.join(_backup_dir(), f"{record.backup_id}.json.gz")
    try:
        data, counts, skipped = _snapshot(backup_type, campus_ids, since)
        document = {
            "backup_id": record.backup_id,
            "backup_type": backup_type,
            "created_at": now.isoformat(),
            "since": since.isoformat() if since else None,
            "campus_ids": campus_ids,
            "skipped_tables": skipped,
            "tables": data,
        }
        with gzip.open(path, "wt", encoding="utf-8") as fh:
            json.dump(document, fh, default=str)
        record.file_path = path
        record.file_size = os.path.getsize(path)
        record.checksum = _sha256(path)
        record.table_counts_json = json.dumps(counts)
        record.status = "completed"
        record.completed_at = utc_now()
        db.session.commit()
    except (OSError, ValueError, SQLAlchemyError) as e:
        db.session.rollback()
        record.status = "failed"
        record.error_message = str(e)
        db.session.commit()
        logger.error("backup %s failed: %s", record.backup_id, e)
        raise

    logger.info("backup %s completed (%s, %d bytes)", record.backup_id, backup_type, record.file_size)
    return record


def _next_scheduled(now):
    run = now.replace(hour=SCHEDULE_HOUR_UTC, minute=0, second=0, microsecond=0)
    return run if run > now else run + timedelta(days=1)


def get_backup_status():
    cfg = current_app.config
    now = utc_now()
    last = last_completed_backup()
    latest = BackupRecord.query.order_by(BackupRecord.created_at.desc()).first()
    records = BackupRecord.query.all()

    if not last:
        health = "critical"
    elif latest.status == "failed" or now - last.created_at > timedelta(hours=48):
        health = "warning"
    else:
        health = "healthy"
    return {
        "last_backup": last.to_dict() if last else None,
        "next_scheduled_backup": _next_scheduled(now).isoformat(),
        "retention_policy": {
            "retention_days": cfg["BACKUP_RETENTION_DAYS"],
            "max_backups": cfg["BACKUP_MAX_COUNT"],
            "auto_cleanup": True,
        },
        "totals": {
            "total": len(records),
            "completed": sum(1 for r in records if r.status == "completed"),
            "failed": sum(1 for r in records if r.status == "failed"),
            "total_size_bytes": sum(r.file_size or 0 for r in records),
        },
        "health": health,
    }


def list_available_backups(backup_type=None):
    q = BackupRecord.query.filter_by(status="completed")
    if backup_type:
        q = q.filter_by(backup_type=backup_type)
    return q.order_by(BackupRecord.created_at.desc()).all()


def get_backup(backup_id):
    record = db.session.get(BackupRecord, backup_id)
    if not record:
        raise NotFoundError("Backup not found")
    return record


def validate_backup_integrity(backup_id):
    record = get_backup(backup_id)
    checks = {"completed": record.status == "completed", "file_exists": False, "checksum_match": False}
    warnings = []
    if record.file_path and os.path.exists(record.file_path):
        checks["file_exists"] = True
        checks["checksum_match"] = _sha256(record.file_path) == record.checksum
    age = utc_now() - record.created_at
    if age > timedelta(days=INTEGRITY_WARNING_DAYS):
        warnings.append(f"Backup is {age.days} days old and close to its retention limit")
    return {
        "backup_id": backup_id,
        "valid": all(checks.values()),
        "checks": checks,
        "warnings": warnings,
        "validated_at": utc_now().isoformat(),
    }


def initiate_restore(backup_id, options=None):
    """Validate a backup and describe what restoring it would do.

    Live data is never overwritten here.
    """
    options = options or {}
    record = get_backup(backup_id)
    if record.status != "completed":
        raise ConflictError(f"Backup {backup_id} is {record.status} and cannot be restored")
    integrity = validate_backup_integrity(backup_id)
    if not integrity["valid"]:
        raise ConflictError("Backup failed integrity validation", extra={"integrity": integrity})

    counts = json.loads(record.table_counts_json or "{}")
    tables = options.get("tables") or list(counts)
    unknown = [t for t in tables if t not in counts]
    if unknown:
        raise ValidationError(f"Tables not in backup: {', '.join(unknown)}")

    restore_type = "full" if set(tables) == set(counts) else "partial"
    warnings = list(integrity["warnings"])
    if restore_type == "full":
        warnings.append("A full restore replaces all current data in the restored tables")
    if not options.get("create_restore_point", True):
        warnings.append("No restore point will be created; current data cannot be recovered afterwards")
    rows = sum(counts[t] for t in tables)
    return {
        "restore_id": f"restore_{utc_now().strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(4)}",
        "backup_id": backup_id,
        "restore_type": restore_type,
        "tables": {t: counts[t] for t in tables},
        "total_rows": rows,
        "estimated_duration_minutes": max(1, rows // 50000 + 1),
        "create_restore_point": bool(options.get("create_restore_point", True)),
        "warnings": warnings,
        "status": "planned",
    }


def cleanup_old_backups():
    now = utc_now()
    max_count = current_app.config["BACKUP_MAX_COUNT"]
    records = BackupRecord.query.order_by(BackupRecord.created_at.desc()).all()
    doomed = [r for r in records if r.retention_expires_at and r.retention_expires_at < now]
    completed = [r for r in records if r.status == "completed" and r not in doomed]
    doomed += completed[max_count:]

    freed = 0
    for record in doomed:
        if record.file_path and os.path.exists(record.file_path):
            freed += os.path.getsize(record.file_path)
            os.remove(record.file_path)
        db.session.delete(record)
    db.session.commit()
    logger.info("removed %d backups (%d bytes)", len(doomed), freed)
    return {"deleted": [r.backup_id for r in doomed], "freed_bytes": freed}


def get_disaster_recovery_plan():
    return {
        "rto_hours": 4,
        "rpo_hours": 1,
        "backup_schedule": f"Daily full backup at {SCHEDULE_HOUR_UTC:02d}:00 UTC",
        "procedures": [
            {"step": 1, "action": "Declare the incident and enable maintenance mode"},
            {"step": 2, "action": "Identify the latest backup that passes integrity validation"},
            {"step": 3, "action": "Create a restore point of the current database"},
            {"step": 4, "action": "Restore the selected backup into a staging database and verify counts"},
            {"step": 5, "action": "Promote the restored database and reconcile payment settlements with gateways"},
            {"step": 6, "action": "Disable maintenance mode and notify campus administrators"},
        ],
        "contacts": [
            {"role": "Platform on-call engineer", "channel": "pager"},
            {"role": "Database administrator", "channel": "email"},
            {"role": "Payments operations", "channel": "email"},
        ],
        "last_reviewed": utc_now().date().isoformat(),
    }

import logging
from datetime import timedelta
from sqlalchemy import func
from .. import db, cache
from ..models import (Campus, User, SystemMessage, SystemConfig, PaymentTransaction, PaymentSettlement,
                      PaymentSecurityEvent, PaymentGatewayConfiguration, USER_TYPES, utc_now)
from ..errors import AppError, ValidationError, ConflictError, NotFoundError
from ..api_utils import parse_datetime
from ..features import services as features
from ..users.services import create_user
from ..payments import settlement as payments
from ..payments.error_handler import PaymentError

logger = logging.getLogger(__name__)

DASHBOARD_CACHE_KEY = "super_admin_dashboard"
MESSAGE_TYPES = ("info", "success", "warning", "danger", "popup")
PLANS = ("basic", "pro", "enterprise")
CAMPUS_FIELDS = ("name", "address", "contact_email", "contact_phone", "website", "subscription_plan")


def _invalidate_dashboard():
    cache.delete(DASHBOARD_CACHE_KEY)


# ==========================================
# DASHBOARD
# ==========================================

def is_maintenance_mode():
    conf = db.session.get(SystemConfig, "maintenance_mode")
    return bool(conf and conf.config_value == "true")


def set_maintenance_mode(enabled):
    conf = db.session.get(SystemConfig, "maintenance_mode")
    value = "true" if enabled else "false"
    if not conf:
        conf = SystemConfig(config_key="maintenance_mode", config_value=value,
                            description="Blocks non Super Admin traffic with 503")
        db.session.add(conf)
    else:
        conf.config_value = value
    db.session.commit()
    _invalidate_dashboard()
    logger.warning("maintenance mode %s", "enabled" if enabled else "disabled")
    return enabled


@cache.cached(timeout=60, key_prefix=DASHBOARD_CACHE_KEY)
def dashboard_stats():
    campuses_active = Campus.query.filter_by(is_active=True).count()
    campuses_total = Campus.query.count()
    users_by_type = dict(
        db.session.query(User.user_type, func.count())
        .filter(User.is_deleted == False)  # noqa: E712
        .group_by(User.user_type).all())
    settlements_by_status = dict(
        db.session.query(PaymentSettlement.settlement_status, func.count())
        .group_by(PaymentSettlement.settlement_status).all())
    return {
        "campuses": {"total": campuses_total, "active": campuses_active,
                     "inactive": campuses_total - campuses_active},
        "users_by_type": {t: users_by_type.get(t, 0) for t in USER_TYPES},
        "total_users": sum(users_by_type.values()),
        "active_system_messages": SystemMessage.query.filter_by(is_active=True).count(),
        "maintenance_mode": is_maintenance_mode(),
        "settlements_by_status": settlements_by_status,
        "open_security_events": PaymentSecurityEvent.query.filter_by(status="open").count(),
        "generated_at": utc_now().isoformat(),
    }


# ==========================================
# CAMPUSES
# ==========================================

def get_campus(campus_id):
    campus = db.session.get(Campus, campus_id)
    if not campus:
        raise NotFoundError("Campus not found")
    return campus


def _apply_campus_fields(campus, payload):
    for field in CAMPUS_FIELDS:
        if field in payload:
            setattr(campus, field, (payload[field] or "").strip() or None)
    if not campus.name:
        raise ValidationError("name is required")
    if campus.subscription_plan and campus.subscription_plan not in PLANS:
        raise ValidationError(f"subscription_plan must be one of: {', '.join(PLANS)}")


def create_campus(payload):
    code = (payload.get("code") or "").strip().upper()
    if not code:
        raise ValidationError("code is required")
    if Campus.query.filter_by(code=code).first():
        raise ConflictError(f"Campus code '{code}' is already in use")
    campus = Campus(code=code, subscription_plan="basic")
    _apply_campus_fields(campus, payload)
    db.session.add(campus)
    db.session.commit()
    _invalidate_dashboard()
    logger.info("campus %s (%s) created", campus.campus_id, code)
    return campus


def list_campuses(search=None, is_active=None):
    q = Campus.query
    if search:
        like = f"%{search.strip()}%"
        q = q.filter((Campus.name.ilike(like)) | (Campus.code.ilike(like)))
    if is_active is not None:
        q = q.filter(Campus.is_active == is_active)
    return q.order_by(Campus.name)


def update_campus(campus_id, payload):
    campus = get_campus(campus_id)
    if "code" in payload:
        code = (payload.get("code") or "").strip().upper()
        if not code:
            raise ValidationError("code cannot be empty")
        clash = Campus.query.filter(Campus.code == code, Campus.campus_id != campus_id).first()
        if clash:
            raise ConflictError(f"Campus code '{code}' is already in use")
        campus.code = code
    _apply_campus_fields(campus, payload)
    db.session.commit()
    return campus


def toggle_campus(campus_id):
    campus = get_campus(campus_id)
    campus.is_active = not campus.is_active
    db.session.commit()
    _invalidate_dashboard()
    logger.warning("campus %s is now %s", campus_id, "active" if campus.is_active else "suspended")
    return campus


def onboard_new_school(payload, actor):
    """Create a campus with its first admin, feature defaults and payment setup.

    Optional steps report `skipped` when no data is given and `failed` without
    undoing the earlier steps.
    """
    campus_data = payload.get("campus") or {}
    admin_data = payload.get("admin") or {}
    if not admin_data.get("email") or not admin_data.get("first_name"):
        raise ValidationError("admin.email and admin.first_name are required")

    steps = {}
    campus = create_campus(campus_data)
    steps["campus"] = {"status": "completed", "campus_id": campus.campus_id}

    try:
        features.initialize_campus_features(campus.campus_id, actor.user_id)
        steps["features"] = {"status": "completed"}
    except AppError as e:
        steps["features"] = {"status": "failed", "error": e.message}

    admin = None
    try:
        admin = create_user(campus.campus_id, dict(admin_data, user_type="Admin"), actor)
        steps["admin"] = {"status": "completed", "user_id": admin.user_id}
    except AppError as e:
        db.session.rollback()
        steps["admin"] = {"status": "failed", "error": e.message}

    bank = payload.get("bank_details")
    if bank:
        try:
            payments.upsert_bank_details(campus.campus_id, bank, actor.user_id)
            steps["bank_details"] = {"status": "completed"}
        except PaymentError as e:
            db.session.rollback()
            steps["bank_details"] = {"status": "failed", "error": e.message, "code": e.code}
    else:
        steps["bank_details"] = {"status": "skipped"}

    gateway = payload.get("payment_gateway")
    if gateway:
        try:
            config = payments.configure_payment_gateway(
                campus.campus_id, gateway.get("gateway_provider"), gateway, actor.user_id)
            steps["payment_gateway"] = {"status": "completed", "config_id": config.config_id}
        except PaymentError as e:
            db.session.rollback()
            steps["payment_gateway"] = {"status": "failed", "error": e.message, "code": e.code}
    else:
        steps["payment_gateway"] = {"status": "skipped"}

    failed = [name for name, step in steps.items() if step["status"] == "failed"]
    logger.info("onboarded campus %s; failed steps: %s", campus.campus_id, failed or "none")
    return {
        "campus": campus.to_dict(),
        "admin": admin.to_dict() if admin else None,
        "setup_status": steps,
        "onboarding_complete": not failed,
    }


# ==========================================
# MONITORING / ANALYTICS
# ==========================================

def monitor_school_health(campus_id):
    campus = get_campus(campus_id)
    since = utc_now() - timedelta(days=30)

    users = dict(
        db.session.query(User.user_type, func.count())
        .filter(User.campus_id_fk == campus_id, User.is_deleted == False)  # noqa: E712
        .group_by(User.user_type).all())
    txns = dict(
        db.session.query(PaymentTransaction.status, func.count())
        .filter(PaymentTransaction.campus_id_fk == campus_id, PaymentTransaction.created_at >= since)
        .group_by(PaymentTransaction.status).all())
    total_txns = sum(txns.values())
    success_rate = round(txns.get("success", 0) * 100.0 / total_txns, 2) if total_txns else None
    pending_settlements = PaymentSettlement.query.filter(
        PaymentSettlement.campus_id_fk == campus_id,
        PaymentSettlement.settlement_status.in_(("pending", "processing")),
    ).count()
    open_events = dict(
        db.session.query(PaymentSecurityEvent.severity, func.count())
        .filter(PaymentSecurityEvent.campus_id_fk == campus_id, PaymentSecurityEvent.status == "open")
        .group_by(PaymentSecurityEvent.severity).all())

    warnings, critical = [], []
    if not campus.is_active:
        critical.append("Campus is suspended")
    if open_events.get("critical"):
        critical.append(f"{open_events['critical']} open critical security events")
    if success_rate is not None and success_rate < 50:
        critical.append(f"Payment success rate is {success_rate}%")
    elif success_rate is not None and success_rate < 80:
        warnings.append(f"Payment success rate is {success_rate}%")
    if open_events.get("high"):
        warnings.append(f"{open_events['high']} open high severity security events")
    if pending_settlements:
        warnings.append(f"{pending_settlements} settlements awaiting completion")
    if not users.get("Admin"):
        warnings.append("No active administrator")

    status = "critical" if critical else "warning" if warnings else "healthy"
    return {
        "campus": campus.to_dict(),
        "health_status": status,
        "issues": critical + warnings,
        "users": {"by_type": users, "total": sum(users.values())},
        "transactions_30d": {"by_status": txns, "total": total_txns, "success_rate": success_rate},
        "pending_settlements": pending_settlements,
        "open_security_events": open_events,
        "features": features.get_campus_features(campus_id).flags(),
        "checked_at": utc_now().isoformat(),
    }


def get_platform_analytics():
    since = utc_now() - timedelta(days=30)
    revenue = dict(
        db.session.query(PaymentTransaction.campus_id_fk, func.coalesce(func.sum(PaymentTransaction.amount), 0))
        .filter(PaymentTransaction.status == "success")
        .group_by(PaymentTransaction.campus_id_fk).all())
    user_totals = dict(
        db.session.query(User.campus_id_fk, func.count())
        .filter(User.is_deleted == False, User.campus_id_fk.isnot(None))  # noqa: E712
        .group_by(User.campus_id_fk).all())
    new_users = dict(
        db.session.query(User.campus_id_fk, func.count())
        .filter(User.is_deleted == False, User.created_at >= since)  # noqa: E712
        .group_by(User.campus_id_fk).all())

    rows = []
    for campus in Campus.query.order_by(Campus.name).all():
        total = user_totals.get(campus.campus_id, 0)
        recent = new_users.get(campus.campus_id, 0)
        rows.append({
            "campus_id": campus.campus_id,
            "campus_name": campus.name,
            "is_active": bool(campus.is_active),
            "total_users": total,
            "new_users_30d": recent,
            "growth_rate": round(recent * 100.0 / total, 2) if total else 0.0,
            "revenue": round(float(revenue.get(campus.campus_id, 0)), 2),
        })
    return {
        "campuses": rows,
        "totals": {
            "campuses": len(rows),
            "users": sum(r["total_users"] for r in rows),
            "new_users_30d": sum(r["new_users_30d"] for r in rows),
            "revenue": round(sum(r["revenue"] for r in rows), 2),
        },
    }


def troubleshoot_school_payments(campus_id):
    get_campus(campus_id)
    issues = []
    now = utc_now()

    if not payments.active_bank_details(campus_id):
        issues.append({"type": "missing_bank_details", "severity": "high",
                       "message": "No active bank details; settlements cannot be paid out",
                       "resolution": "Add bank details under /payment/bank-details"})

    configs = PaymentGatewayConfiguration.query.filter_by(campus_id_fk=campus_id).all()
    if not configs:
        issues.append({"type": "no_gateway", "severity": "high",
                       "message": "No payment gateway is configured",
                       "resolution": "Configure a gateway under /payment/gateways/configure"})
    for c in configs:
        if not c.webhook_secret_encrypted:
            issues.append({"type": "missing_webhook_secret", "severity": "high", "gateway": c.gateway_provider,
                           "message": f"{c.gateway_provider} has no webhook secret",
                           "resolution": "Set webhook_secret on the gateway configuration"})

    failed = PaymentTransaction.query.filter(
        PaymentTransaction.campus_id_fk == campus_id,
        PaymentTransaction.status == "failed",
        PaymentTransaction.created_at >= now - timedelta(days=30),
    ).count()
    if failed:
        issues.append({"type": "failed_transactions", "severity": "medium", "count": failed,
                       "message": f"{failed} failed transactions in the last 30 days",
                       "resolution": "Review failure reasons with the gateway"})

    stuck = PaymentSettlement.query.filter(
        PaymentSettlement.campus_id_fk == campus_id,
        PaymentSettlement.settlement_status.in_(("pending", "processing")),
        PaymentSettlement.initiated_at < now - timedelta(days=3),
    ).count()
    if stuck:
        issues.append({"type": "stuck_settlements", "severity": "medium", "count": stuck,
                       "message": f"{stuck} settlements pending for more than 3 days",
                       "resolution": "Check settlement status with the gateway"})

    summary = {"total_issues": len(issues)}
    for level in ("high", "medium", "low"):
        summary[level] = sum(1 for i in issues if i["severity"] == level)
    return {"campus_id": campus_id, "issues": issues, "summary": summary, "checked_at": now.isoformat()}


def check_compliance_for_all_schools(user_id=None):
    results = []
    for campus in Campus.query.filter_by(is_active=True).all():
        report = payments.perform_security_audit(campus.campus_id, user_id)
        results.append({
            "campus_id": campus.campus_id,
            "campus_name": campus.name,
            "security_score": report["security_score"],
            "compliance_status": report["compliance_status"],
            "severity": report["severity"],
            "issues": len(report["issues"]),
        })
    results.sort(key=lambda r: r["security_score"])
    return {
        "schools": results,
        "summary": {
            "total": len(results),
            "compliant": sum(1 for r in results if r["compliance_status"] == "compliant"),
            "needs_attention": sum(1 for r in results if r["compliance_status"] == "needs_attention"),
            "non_compliant": sum(1 for r in results if r["compliance_status"] == "non_compliant"),
        },
    }


# ==========================================
# SYSTEM MESSAGES
# ==========================================

def create_system_message(payload):
    title = (payload.get("title") or "").strip()
    content = (payload.get("content") or "").strip()
    if not title or not content:
        raise ValidationError("title and content are required")
    message_type = payload.get("message_type") or "info"
    if message_type not in MESSAGE_TYPES:
        raise ValidationError(f"message_type must be one of: {', '.join(MESSAGE_TYPES)}")
    target = payload.get("target_user_type") or None
    if target and target not in USER_TYPES:
        raise ValidationError(f"target_user_type must be one of: {', '.join(USER_TYPES)}")
    start = parse_datetime(payload.get("start_date"), "start_date") or utc_now()
    end = parse_datetime(payload.get("end_date"), "end_date")
    if end and end <= start:
        raise ValidationError("end_date must be after start_date")
    msg = SystemMessage(title=title, content=content, message_type=message_type,
                        target_user_type=target, start_date=start, end_date=end, is_active=True)
    db.session.add(msg)
    db.session.commit()
    _invalidate_dashboard()
    return msg


def list_system_messages():
    return SystemMessage.query.order_by(SystemMessage.start_date.desc()).all()


def _get_message(message_id):
    msg = db.session.get(SystemMessage, message_id)
    if not msg:
        raise NotFoundError("System message not found")
    return msg


def toggle_system_message(message_id):
    msg = _get_message(message_id)
    msg.is_active = not msg.is_active
    db.session.commit()
    _invalidate_dashboard()
    return msg


def delete_system_message(message_id):
    msg = _get_message(message_id)
    db.session.delete(msg)
    db.session.commit()
    _invalidate_dashboard()


def active_messages_for(user):
    now = utc_now()
    q = SystemMessage.query.filter(
        SystemMessage.is_active == True,  # noqa: E712
        SystemMessage.start_date <= now,
        (SystemMessage.end_date == None) | (SystemMessage.end_date >= now),  # noqa: E711
    )
    if not user.is_super_admin:
        q = q.filter((SystemMessage.target_user_type == None)  # noqa: E711
                     | (SystemMessage.target_user_type == user.user_type))
    return q.order_by(SystemMessage.start_date.desc()).all()

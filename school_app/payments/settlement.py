"""Settlement processing, gateway configuration, webhooks, audit and compliance."""
import calendar
import hashlib
import json
import logging
import math
import secrets
import time
import uuid
from datetime import timedelta
from flask import current_app, has_request_context
from jinja2 import TemplateError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from .. import db
from ..models import (Campus, User, SchoolBankDetails, PaymentGatewayConfiguration, PaymentTransaction,
                      PaymentSettlement, PaymentAuditLog, PaymentSecurityEvent, WebhookEvent, utc_now)
from ..api_utils import parse_datetime, parse_int
from ..email_utils import send_templated_email
from . import gateways
from .credentials import encrypt_secret, decrypt_secret
from .error_handler import create_error, handle_payment_error, PaymentError
from .monitoring import request_context
from .security_monitor import security_monitor

logger = logging.getLogger(__name__)

SCHEDULES = ("daily", "weekly", "monthly", "custom")
GATEWAY_MODES = ("test", "live")
FEE_BEARERS = ("school", "parent", "shared")

WEBHOOK_STATUS_MAP = {
    "processed": "completed",
    "settled": "completed",
    "completed": "completed",
    "failed": "failed",
    "pending": "processing",
    "processing": "processing",
    "created": "processing",
    "cancelled": "cancelled",
    "reversed": "cancelled",
}
TERMINAL_STATUSES = ("completed", "cancelled")

TRANSACTION_STATUS_MAP = {
    "captured": "success",
    "success": "success",
    "paid": "success",
    "completed": "success",
    "failed": "failed",
    "cancelled": "failed",
}


def _millis():
    return int(time.time() * 1000)


def _money(value):
    return round(float(value or 0), 2)


# ==========================================
# AUDIT / SECURITY RECORDS
# ==========================================

def _audit(event_type, category, campus_id=None, severity="low", result="success", user_id=None,
           gateway=None, settlement_id=None, amount=None, operation=None, execution_ms=None,
           error_code=None, error_message=None, tags=(), changes=None, commit=False):
    ctx = request_context() if has_request_context() else {}
    row = PaymentAuditLog(
        campus_id_fk=campus_id,
        user_id_fk=user_id if user_id is not None else ctx.get("user_id"),
        event_type=event_type,
        event_category=category,
        severity=severity,
        gateway_provider=gateway,
        settlement_id_fk=settlement_id,
        amount=amount,
        operation_performed=operation or event_type,
        operation_result=result,
        execution_time_ms=execution_ms,
        ip_address=ctx.get("ip_address", "system"),
        user_agent=ctx.get("user_agent", "settlement-service"),
        request_id=ctx.get("request_id") or str(uuid.uuid4()),
        error_code=error_code,
        error_message=error_message,
        compliance_tags=",".join(tags) or None,
        data_changes_json=json.dumps(changes, default=str) if changes is not None else None,
    )
    db.session.add(row)
    security_monitor.log_audit_event(
        event_type, result == "success",
        campus_id=campus_id, user_id=row.user_id_fk, amount=amount, gateway_provider=gateway,
        details={"category": category, "operation": row.operation_performed, "error_code": error_code},
        request_id=row.request_id, execution_time_ms=execution_ms, error_message=error_message,
    )
    if commit:
        db.session.commit()
    return row


def record_security_event(campus_id, event_type, severity, details=None, gateway=None,
                          attack_vector=None, detection_source="payment_service", confidence=None):
    ctx = request_context() if has_request_context() else {}
    event = PaymentSecurityEvent(
        campus_id_fk=campus_id,
        event_type=event_type,
        severity=severity,
        gateway_provider=gateway,
        attack_vector=attack_vector,
        detection_source=detection_source,
        confidence_score=confidence,
        ip_address=ctx.get("ip_address"),
        details_json=json.dumps(details or {}, default=str),
    )
    db.session.add(event)
    security_monitor.log_security_event(
        event_type, severity, details, campus_id=campus_id, user_id=ctx.get("user_id"),
        ip_address=ctx.get("ip_address"), user_agent=ctx.get("user_agent"),
        request_id=ctx.get("request_id"),
    )
    return event


# ==========================================
# SETTLEMENT PROCESSING
# ==========================================

def get_gateway_configuration(campus_id, provider):
    return PaymentGatewayConfiguration.query.filter_by(
        campus_id_fk=campus_id, gateway_provider=provider).first()


def _minus_month(moment):
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def settlement_period(schedule, end, custom_days=None):
    """(start, end) of the window a settlement on `end` covers."""
    if schedule == "weekly":
        return end - timedelta(days=7), end
    if schedule == "monthly":
        return _minus_month(end), end
    if schedule == "custom":
        days = max(custom_days) if custom_days else 7
        return end - timedelta(days=days), end
    return end - timedelta(days=1), end


def eligible_transactions(campus_id, provider, start, end):
    return PaymentTransaction.query.filter(
        PaymentTransaction.campus_id_fk == campus_id,
        PaymentTransaction.payment_gateway == provider,
        PaymentTransaction.status == "success",
        PaymentTransaction.webhook_verified == True,  # noqa: E712
        PaymentTransaction.completed_at >= start,
        PaymentTransaction.completed_at <= end,
        PaymentTransaction.settlement_id_fk.is_(None),
    ).order_by(PaymentTransaction.transaction_id).all()


def calculate_amounts(transactions, config, gst_rate):
    total = gateway_fees = platform_fees = 0.0
    for t in transactions:
        amount = float(t.amount)
        total += amount
        gateway_fees += amount * (config.gateway_fee_percentage or 0) / 100 + (config.gateway_fee_fixed or 0)
        platform_fees += amount * (config.transaction_fee_percentage or 0) / 100 + (config.transaction_fee_fixed or 0)
    total = _money(total)
    gateway_fees = _money(gateway_fees)
    platform_fees = _money(platform_fees)
    taxes = _money((gateway_fees + platform_fees) * gst_rate)
    return {
        "total_amount": total,
        "gateway_fees": gateway_fees,
        "platform_fees": platform_fees,
        "taxes": taxes,
        "net_settlement_amount": _money(total - gateway_fees - platform_fees - taxes),
    }


def settlement_hash(campus_id, provider, transactions, amounts):
    canonical = json.dumps({
        "campus_id": campus_id,
        "gateway_provider": provider,
        "transaction_ids": sorted(t.transaction_id for t in transactions),
        "total_amount": amounts["total_amount"],
        "net_amount": amounts["net_settlement_amount"],
    }, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def active_bank_details(campus_id):
    return (SchoolBankDetails.query
            .filter_by(campus_id_fk=campus_id, is_active=True)
            .order_by(SchoolBankDetails.updated_at.desc())
            .first())


def _bank_snapshot(bank):
    return {
        "bank_name": bank.bank_name,
        "account_holder_name": bank.account_holder_name,
        "account_number": bank.masked_account_number,
        "ifsc_code": bank.ifsc_code,
        "branch_name": bank.branch_name,
    }


def process_automatic_settlement(campus_id, provider, settlement_date=None, initiated_by="system"):
    """Settle a campus's verified transactions for one gateway.

    Returns (settlement, duplicate). A settlement whose hash already exists is
    returned unchanged with duplicate=True.
    """
    started = time.monotonic()
    end = settlement_date or utc_now()
    _audit("settlement_initiated", "settlement", campus_id, severity="medium", result="pending",
           gateway=provider, operation="automatic_settlement_initiation",
           tags=("settlement", "automatic", "financial"), commit=True)

    digest = None
    try:
        config = get_gateway_configuration(campus_id, provider)
        if not config or config.status != "active":
            raise create_error("GATEWAY_001", {"campus_id": campus_id, "gateway": provider})

        start, end = settlement_period(config.settlement_schedule, end, config.custom_settlement_days)
        transactions = eligible_transactions(campus_id, provider, start, end)
        if not transactions:
            raise PaymentError("TRANS_001", {"period_start": start.isoformat(), "period_end": end.isoformat()},
                               message="No eligible transactions found for settlement")

        amounts = calculate_amounts(transactions, config, current_app.config.get("PAYMENT_GST_RATE", 0.18))
        if amounts["net_settlement_amount"] < (config.minimum_settlement_amount or 0):
            raise create_error("GATEWAY_004", {
                "net_settlement_amount": amounts["net_settlement_amount"],
                "minimum_settlement_amount": config.minimum_settlement_amount,
            })
        if config.maximum_settlement_amount and amounts["total_amount"] > config.maximum_settlement_amount:
            raise create_error("GATEWAY_004", {
                "total_amount": amounts["total_amount"],
                "maximum_settlement_amount": config.maximum_settlement_amount,
            })

        bank = active_bank_details(campus_id)
        if not bank:
            raise create_error("BIZ_005", {"campus_id": campus_id})

        digest = settlement_hash(campus_id, provider, transactions, amounts)
        existing = PaymentSettlement.query.filter_by(settlement_hash=digest).first()
        if existing:
            logger.info("settlement %s already exists for hash %s", existing.settlement_batch_id, digest[:12])
            return existing, True

        now = utc_now()
        settlement = PaymentSettlement(
            campus_id_fk=campus_id,
            settlement_batch_id=f"BATCH_{_millis()}_{secrets.token_hex(4).upper()}",
            settlement_date=end,
            period_start=start,
            period_end=end,
            settlement_status="pending",
            currency="INR",
            gateway_provider=provider,
            bank_snapshot_json=json.dumps(_bank_snapshot(bank)),
            total_transactions=len(transactions),
            initiated_by=initiated_by,
            initiated_at=now,
            settlement_hash=digest,
            **amounts,
        )
        db.session.add(settlement)
        for t in transactions:
            t.settlement = settlement
        db.session.flush()

        submission = gateways.submit_settlement(settlement, config)
        settlement.gateway_settlement_id = submission["gateway_settlement_id"]
        settlement.gateway_settlement_reference = submission["reference"]
        settlement.settlement_status = submission["status"]
        settlement.processed_at = utc_now()
        settlement.processing_duration_ms = int((time.monotonic() - started) * 1000)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = PaymentSettlement.query.filter_by(settlement_hash=digest).first() if digest else None
        if existing:
            return existing, True
        raise
    except Exception as exc:
        db.session.rollback()
        code = exc.code if isinstance(exc, PaymentError) else "SYS_003"
        _audit("settlement_failed", "settlement", campus_id, severity="high", result="failure",
               gateway=provider, error_code=code, error_message=str(exc),
               execution_ms=int((time.monotonic() - started) * 1000),
               tags=("settlement", "error", "financial"), commit=True)
        logger.warning("settlement failed for campus %s gateway %s: %s", campus_id, provider, exc)
        raise

    _notify_school(settlement)
    _audit("settlement_processed", "settlement", campus_id, severity="medium", gateway=provider,
           settlement_id=settlement.settlement_id, amount=settlement.net_settlement_amount,
           execution_ms=settlement.processing_duration_ms,
           tags=("settlement", "completed", "financial"), commit=True)
    logger.info("settlement %s processed for campus %s: %d transactions, net %.2f",
                settlement.settlement_batch_id, campus_id, settlement.total_transactions,
                settlement.net_settlement_amount)
    return settlement, False


def _school_contact(campus):
    if campus.contact_email:
        return campus.contact_email
    admin = User.query.filter_by(campus_id_fk=campus.campus_id, user_type="Admin",
                                 is_active=True, is_deleted=False).first()
    return admin.email if admin else None


def _notify_school(settlement):
    campus = db.session.get(Campus, settlement.campus_id_fk)
    recipient = _school_contact(campus) if campus else None
    if not recipient:
        settlement.email_notification_status = "skipped"
        db.session.commit()
        return
    bank = json.loads(settlement.bank_snapshot_json or "{}")
    try:
        sent = send_templated_email(
            "settlement_processed", recipient,
            batch_id=settlement.settlement_batch_id,
            campus_name=campus.name,
            gateway_provider=settlement.gateway_provider,
            period_start=settlement.period_start.date().isoformat(),
            period_end=settlement.period_end.date().isoformat(),
            total_transactions=settlement.total_transactions,
            currency=settlement.currency,
            total_amount=settlement.total_amount,
            gateway_fees=settlement.gateway_fees,
            platform_fees=settlement.platform_fees,
            taxes=settlement.taxes,
            net_amount=settlement.net_settlement_amount,
            account_number=bank.get("account_number", ""),
            bank_name=bank.get("bank_name", ""),
            reference=settlement.gateway_settlement_reference,
        )
    except (TemplateError, TypeError, ValueError) as exc:
        logger.error("settlement email for %s could not be rendered: %s", settlement.settlement_batch_id, exc)
        sent = False
    settlement.school_notified = bool(sent)
    settlement.email_notification_status = "sent" if sent else "failed"
    db.session.commit()


def run_scheduled_settlements(settlement_date=None):
    """Process every active gateway of every active campus."""
    results = []
    configs = (PaymentGatewayConfiguration.query
               .join(Campus, Campus.campus_id == PaymentGatewayConfiguration.campus_id_fk)
               .filter(Campus.is_active == True,  # noqa: E712
                       PaymentGatewayConfiguration.status == "active")
               .all())
    for config in configs:
        entry = {"campus_id": config.campus_id_fk, "gateway_provider": config.gateway_provider}
        try:
            settlement, duplicate = process_automatic_settlement(
                config.campus_id_fk, config.gateway_provider, settlement_date, initiated_by="scheduler")
            entry.update(status="duplicate" if duplicate else "processed",
                         settlement_batch_id=settlement.settlement_batch_id)
        except PaymentError as exc:
            entry.update(status="skipped", error_code=exc.code, message=exc.message)
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("scheduled settlement failed for campus %s", entry["campus_id"])
            entry.update(status="failed", error_code="SYS_001", message=str(exc))
        results.append(entry)
    return results


# ==========================================
# WEBHOOKS
# ==========================================

def _event_key(payload, raw_body):
    key = payload.get("event_id")
    if key:
        return str(key)
    body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
    return "body:" + hashlib.sha256(body).hexdigest()


def _signature_ok(config, raw_body, signature):
    if config and not config.webhook_signature_verification:
        return True
    if not config or not config.webhook_secret_encrypted:
        return False
    return gateways.verify_signature(decrypt_secret(config.webhook_secret_encrypted), raw_body, signature)


def _reject_signature(campus_id, provider, kind, reference):
    record_security_event(
        campus_id, "webhook_tampering", "critical",
        {"kind": kind, "reference": reference, "reason": "invalid webhook signature"},
        gateway=provider, attack_vector="webhook", detection_source="signature_verification",
        confidence=0.9,
    )
    _audit("webhook_received", "webhook", campus_id, severity="critical", result="failure",
           gateway=provider, error_code="GATEWAY_005", error_message="Invalid webhook signature",
           tags=("webhook", "security"))
    db.session.commit()
    return {"success": False, "error": "GATEWAY_005", "message": "Invalid webhook signature"}


def _webhook_error(provider, exc):
    db.session.rollback()
    err, _ = handle_payment_error(exc, security_monitor, {"endpoint": f"webhook:{provider}"})
    logger.error("webhook from %s could not be verified: %s", provider, err.code)
    return {"success": False, "error": err.code, "message": err.message}


def _seen_webhook(provider, key):
    event = WebhookEvent.query.filter_by(gateway_provider=provider, event_key=key).first()
    if not event:
        return None
    result = json.loads(event.result_json or "{}")
    result.update(success=True, duplicate=True)
    return result


def handle_settlement_webhook(provider, raw_body, payload, signature, context=None):
    """Apply a gateway settlement notification. Never raises."""
    try:
        return _apply_settlement_webhook(provider, raw_body, payload or {}, signature)
    except PaymentError as exc:
        return _webhook_error(provider, exc)
    except Exception as exc:
        db.session.rollback()
        logger.exception("settlement webhook from %s failed", provider)
        return {"success": False, "error": "SYS_003", "message": str(exc), "context": context or {}}


def _apply_settlement_webhook(provider, raw_body, payload, signature):
    reference = payload.get("settlement_id") or payload.get("id")
    if not reference:
        return {"success": False, "error": "VAL_001", "message": "settlement_id is required"}
    settlement = PaymentSettlement.query.filter_by(
        gateway_settlement_id=str(reference), gateway_provider=provider).first()
    if not settlement:
        return {"success": False, "error": "TRANS_001", "message": "Settlement not found"}

    config = get_gateway_configuration(settlement.campus_id_fk, provider)
    if not _signature_ok(config, raw_body, signature):
        return _reject_signature(settlement.campus_id_fk, provider, "settlement", reference)

    key = _event_key(payload, raw_body)
    duplicate = _seen_webhook(provider, key)
    if duplicate:
        return duplicate

    previous = settlement.settlement_status
    incoming = WEBHOOK_STATUS_MAP.get(str(payload.get("status", "")).lower())
    result = {"settlement_id": settlement.settlement_id, "previous_status": previous}
    if not incoming:
        result.update(applied=False, reason="unknown status")
    elif previous in TERMINAL_STATUSES:
        result.update(applied=False, reason=f"settlement is already {previous}")
    else:
        settlement.settlement_status = incoming
        if incoming == "completed":
            settlement.completed_at = utc_now()
        elif incoming == "failed":
            _release_transactions(settlement, payload)
        result.update(applied=True)
    result["status"] = settlement.settlement_status

    db.session.add(WebhookEvent(gateway_provider=provider, event_key=key, kind="settlement",
                                result_json=json.dumps(result)))
    _audit("webhook_received", "webhook", settlement.campus_id_fk, gateway=provider,
           settlement_id=settlement.settlement_id, amount=settlement.net_settlement_amount,
           changes={"before": previous, "after": settlement.settlement_status},
           tags=("webhook", "settlement"))
    db.session.commit()
    result["success"] = True
    return result


def _release_transactions(settlement, payload):
    for t in list(settlement.transactions):
        t.settlement = None
    settlement.retry_count = (settlement.retry_count or 0) + 1
    settlement.error_code = payload.get("error_code") or "GATEWAY_002"
    settlement.error_message = payload.get("error_message") or payload.get("failure_reason")
    # Free the hash so the same transactions can be settled again
    settlement.settlement_hash = hashlib.sha256(
        f"{settlement.settlement_hash}:released:{settlement.retry_count}".encode("utf-8")).hexdigest()


def handle_transaction_webhook(provider, raw_body, payload, signature):
    """Confirm a payment from a gateway callback. Never raises."""
    try:
        return _apply_transaction_webhook(provider, raw_body, payload or {}, signature)
    except PaymentError as exc:
        return _webhook_error(provider, exc)
    except Exception as exc:
        db.session.rollback()
        logger.exception("transaction webhook from %s failed", provider)
        return {"success": False, "error": "SYS_003", "message": str(exc)}


def _apply_transaction_webhook(provider, raw_body, payload, signature):
    order_id = payload.get("order_id")
    if not order_id:
        return {"success": False, "error": "VAL_001", "message": "order_id is required"}
    txn = PaymentTransaction.query.filter_by(gateway_order_id=str(order_id), payment_gateway=provider).first()
    if not txn:
        return {"success": False, "error": "TRANS_001", "message": "Transaction not found"}

    config = get_gateway_configuration(txn.campus_id_fk, provider)
    if not _signature_ok(config, raw_body, signature):
        return _reject_signature(txn.campus_id_fk, provider, "transaction", order_id)

    key = _event_key(payload, raw_body)
    duplicate = _seen_webhook(provider, key)
    if duplicate:
        return duplicate

    status = TRANSACTION_STATUS_MAP.get(str(payload.get("status", "")).lower())
    result = {"transaction_id": txn.transaction_id, "previous_status": txn.status}
    if not status:
        result.update(applied=False, reason="unknown status")
    elif txn.status in ("success", "refunded") and txn.webhook_verified:
        result.update(applied=False, reason=f"transaction is already {txn.status}")
    else:
        txn.status = status
        txn.webhook_verified = True
        txn.gateway_payment_id = payload.get("payment_id") or txn.gateway_payment_id
        if status == "success":
            txn.completed_at = utc_now()
        else:
            txn.failure_reason = payload.get("failure_reason") or payload.get("error_message")
        result.update(applied=True)
        _audit("payment_verified", "transaction", txn.campus_id_fk,
               result="success" if status == "success" else "failure",
               gateway=provider, amount=txn.amount, tags=("transaction", "webhook"))
    result["status"] = txn.status

    db.session.add(WebhookEvent(gateway_provider=provider, event_key=key, kind="transaction",
                                result_json=json.dumps(result)))
    db.session.commit()
    result["success"] = True
    return result


# ==========================================
# TRANSACTIONS
# ==========================================

def create_transaction(campus_id, payload, user):
    if user.user_type == "Student":
        student_id = user.user_id
    else:
        student_id = parse_int(payload.get("student_id"), "student_id")
        if user.user_type == "Parent" and student_id is None:
            student_id = user.parent_of_id_fk
    if student_id is None:
        raise create_error("VAL_001", {"fields": ["student_id"]})
    if user.user_type == "Parent" and student_id != user.parent_of_id_fk:
        raise create_error("AUTH_002", {"student_id": student_id}, status=403)

    student = db.session.get(User, student_id)
    if not student or student.is_deleted or student.campus_id_fk != campus_id or student.user_type != "Student":
        raise create_error("DATA_003", {"student_id": student_id}, status=404)

    try:
        amount = float(payload.get("amount"))
    except (TypeError, ValueError):
        raise create_error("VAL_003", {"amount": payload.get("amount")})
    if not math.isfinite(amount) or amount <= 0:
        raise create_error("VAL_003", {"amount": str(amount)})

    provider = payload.get("payment_gateway") or payload.get("gateway_provider")
    config = get_gateway_configuration(campus_id, provider) if provider else None
    if not config or config.status != "active":
        raise create_error("GATEWAY_001", {"gateway": provider})

    txn = PaymentTransaction(
        campus_id_fk=campus_id,
        student_id_fk=student.user_id,
        amount=_money(amount),
        currency=payload.get("currency") or "INR",
        payment_gateway=provider,
        gateway_order_id=f"order_{secrets.token_hex(12)}",
        description=payload.get("description"),
        status="pending",
    )
    db.session.add(txn)
    _audit("transaction_created", "transaction", campus_id, result="pending", user_id=user.user_id,
           gateway=provider, amount=txn.amount, tags=("transaction",))
    db.session.commit()
    return txn


def transactions_query(campus_id, filters, user=None):
    q = PaymentTransaction.query.filter(PaymentTransaction.campus_id_fk == campus_id)
    if user is not None and user.user_type == "Student":
        q = q.filter(PaymentTransaction.student_id_fk == user.user_id)
    elif user is not None and user.user_type == "Parent":
        q = q.filter(PaymentTransaction.student_id_fk == user.parent_of_id_fk)
    elif filters.get("student_id"):
        q = q.filter(PaymentTransaction.student_id_fk == parse_int(filters["student_id"], "student_id"))
    if filters.get("status"):
        q = q.filter(PaymentTransaction.status == filters["status"])
    if filters.get("gateway_provider"):
        q = q.filter(PaymentTransaction.payment_gateway == filters["gateway_provider"])
    return q.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.transaction_id.desc())


# ==========================================
# GATEWAY CONFIGURATION / BANK DETAILS
# ==========================================

def _number(config, field, default=None):
    if field not in config or config[field] in (None, ""):
        return default
    try:
        value = float(config[field])
    except (TypeError, ValueError):
        raise create_error("VAL_002", {"field": field, "value": config[field]})
    if not math.isfinite(value):
        raise create_error("VAL_002", {"field": field, "reason": "must be a finite number"})
    if value < 0:
        raise create_error("VAL_002", {"field": field, "reason": "must not be negative"})
    return value


def _validate_gateway_config(config, current=None):
    mode = config.get("gateway_mode", current.gateway_mode if current else "test")
    if mode not in GATEWAY_MODES:
        raise create_error("VAL_002", {"field": "gateway_mode", "allowed": GATEWAY_MODES})
    schedule = config.get("settlement_schedule", current.settlement_schedule if current else "daily")
    if schedule not in SCHEDULES:
        raise create_error("VAL_002", {"field": "settlement_schedule", "allowed": SCHEDULES})
    fee_bearer = config.get("fee_bearer", current.fee_bearer if current else "school")
    if fee_bearer not in FEE_BEARERS:
        raise create_error("VAL_002", {"field": "fee_bearer", "allowed": FEE_BEARERS})

    custom_days = config.get("custom_settlement_days", current.custom_settlement_days if current else [])
    if not isinstance(custom_days, list) or any(not isinstance(d, int) or d < 1 for d in custom_days):
        raise create_error("VAL_002", {"field": "custom_settlement_days"})

    values = {}
    for field in ("transaction_fee_percentage", "transaction_fee_fixed", "gateway_fee_percentage",
                  "gateway_fee_fixed", "minimum_settlement_amount", "maximum_settlement_amount"):
        values[field] = _number(config, field, getattr(current, field) if current else None)
    for field in ("transaction_fee_percentage", "gateway_fee_percentage"):
        if values[field] is not None and values[field] > 100:
            raise create_error("VAL_002", {"field": field, "reason": "must be at most 100"})
    low, high = values["minimum_settlement_amount"], values["maximum_settlement_amount"]
    if low is not None and high is not None and low > high:
        raise create_error("VAL_002", {"field": "minimum_settlement_amount",
                                       "reason": "must not exceed maximum_settlement_amount"})

    values.update(gateway_mode=mode, settlement_schedule=schedule, fee_bearer=fee_bearer,
                  custom_settlement_days_json=json.dumps(custom_days))
    return {k: v for k, v in values.items() if v is not None or k == "maximum_settlement_amount"}


def configure_payment_gateway(campus_id, provider, config, user_id):
    if not gateways.is_supported(provider):
        raise create_error("VAL_002", {"gateway_provider": provider, "allowed": gateways.SUPPORTED_GATEWAYS})
    if not db.session.get(Campus, campus_id):
        raise create_error("DATA_003", {"campus_id": campus_id}, status=404)

    current = get_gateway_configuration(campus_id, provider)
    values = _validate_gateway_config(config, current)
    before = current.to_dict() if current else None
    now = utc_now()

    if current is None:
        current = PaymentGatewayConfiguration(
            campus_id_fk=campus_id, gateway_provider=provider,
            configured_by_fk=user_id, configured_at=now, configuration_version="v1",
        )
        db.session.add(current)
    else:
        current.configuration_version = f"v{_millis()}"
        current.last_updated_by_fk = user_id
        current.last_updated_at = now

    for field, value in values.items():
        setattr(current, field, value)
    if "status" in config:
        if config["status"] not in ("active", "inactive", "suspended"):
            raise create_error("VAL_002", {"field": "status"})
        current.status = config["status"]
    if config.get("webhook_secret"):
        current.webhook_secret_encrypted = encrypt_secret(str(config["webhook_secret"]))
    if "webhook_signature_verification" in config:
        current.webhook_signature_verification = bool(config["webhook_signature_verification"])
    if "ip_whitelist" in config:
        current.ip_whitelist_json = json.dumps(list(config["ip_whitelist"] or []))

    test = gateways.test_connectivity(provider, current.gateway_mode)
    current.last_test_date = now
    current.last_test_status = "success" if test["success"] else "failed"
    current.connectivity_status = "connected" if test["success"] else "failed"
    current.health_check_status = "healthy" if test["success"] else "unhealthy"

    if config.get("is_primary"):
        (PaymentGatewayConfiguration.query
         .filter(PaymentGatewayConfiguration.campus_id_fk == campus_id,
                 PaymentGatewayConfiguration.gateway_provider != provider)
         .update({"is_primary": False}, synchronize_session=False))
        current.is_primary = True
    elif "is_primary" in config:
        current.is_primary = False

    db.session.flush()
    _audit("gateway_configured" if before is None else "gateway_updated", "configuration", campus_id,
           severity="medium", user_id=user_id, gateway=provider,
           changes={"before": before, "after": current.to_dict()},
           tags=("configuration", "gateway"))
    db.session.commit()
    logger.info("gateway %s configured for campus %s (version %s)", provider, campus_id,
                current.configuration_version)
    return current


def get_gateway_configurations(campus_id):
    configs = (PaymentGatewayConfiguration.query
               .filter_by(campus_id_fk=campus_id)
               .order_by(PaymentGatewayConfiguration.gateway_provider)
               .all())
    primary = next((c.gateway_provider for c in configs if c.is_primary), None)
    return {
        "configurations": [c.to_dict() for c in configs],
        "summary": {
            "total": len(configs),
            "active": sum(1 for c in configs if c.status == "active"),
            "primary": primary,
        },
    }


def upsert_bank_details(campus_id, payload, user_id):
    required = ("bank_name", "account_holder_name", "account_number", "ifsc_code")
    missing = [f for f in required if not payload.get(f)]
    if missing:
        raise create_error("VAL_001", {"fields": missing})
    bank = active_bank_details(campus_id)
    before = bank.to_dict() if bank else None
    if bank is None:
        bank = SchoolBankDetails(campus_id_fk=campus_id)
        db.session.add(bank)
    for field in required + ("branch_name", "account_type"):
        if field in payload:
            setattr(bank, field, str(payload[field]).strip())
    bank.is_active = True
    db.session.flush()
    _audit("bank_details_updated", "configuration", campus_id, severity="medium", user_id=user_id,
           changes={"before": before, "after": bank.to_dict()}, tags=("configuration", "bank"))
    db.session.commit()
    return bank


# ==========================================
# READS
# ==========================================

def _get_settlement(campus_id, settlement_id):
    settlement = db.session.get(PaymentSettlement, settlement_id)
    if not settlement or settlement.campus_id_fk != campus_id:
        raise create_error("DATA_003", {"settlement_id": settlement_id}, status=404)
    return settlement


def settlement_history_query(campus_id, filters):
    q = PaymentSettlement.query.filter(PaymentSettlement.campus_id_fk == campus_id)
    if filters.get("status"):
        q = q.filter(PaymentSettlement.settlement_status == filters["status"])
    if filters.get("gateway_provider"):
        q = q.filter(PaymentSettlement.gateway_provider == filters["gateway_provider"])
    start = parse_datetime(filters.get("start_date"), "start_date")
    end = parse_datetime(filters.get("end_date"), "end_date")
    if start and end and start > end:
        raise create_error("VAL_006", {"start_date": filters.get("start_date"), "end_date": filters.get("end_date")})
    if start:
        q = q.filter(PaymentSettlement.settlement_date >= start)
    if end:
        q = q.filter(PaymentSettlement.settlement_date <= end)
    return q


def get_settlement_history(campus_id, filters, page, limit):
    q = settlement_history_query(campus_id, filters)
    total = q.count()
    items = (q.order_by(PaymentSettlement.settlement_date.desc(), PaymentSettlement.settlement_id.desc())
             .offset((page - 1) * limit).limit(limit).all())
    sums = q.with_entities(func.coalesce(func.sum(PaymentSettlement.total_amount), 0),
                           func.coalesce(func.sum(PaymentSettlement.net_settlement_amount), 0)).one()
    by_status = dict(q.with_entities(PaymentSettlement.settlement_status, func.count())
                     .group_by(PaymentSettlement.settlement_status).all())
    return {
        "settlements": [s.to_dict() for s in items],
        "summary": {
            "total_settlements": total,
            "total_amount": _money(sums[0]),
            "total_net_amount": _money(sums[1]),
            "by_status": by_status,
        },
    }, {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit if total else 0}


def get_settlement_details(campus_id, settlement_id):
    settlement = _get_settlement(campus_id, settlement_id)
    data = settlement.to_dict()
    data["transactions"] = [t.to_dict() for t in settlement.transactions]
    return data


def perform_security_audit(campus_id, user_id=None):
    """Score a campus's payment setup out of 100 and list what to fix."""
    score = 100
    issues, recommendations = [], []

    def penalize(points, issue, recommendation):
        nonlocal score
        score -= points
        issues.append(issue)
        if recommendation not in recommendations:
            recommendations.append(recommendation)

    configs = PaymentGatewayConfiguration.query.filter_by(campus_id_fk=campus_id).all()
    for c in configs:
        if not c.webhook_secret_encrypted:
            penalize(15, {"type": "missing_webhook_secret", "severity": "high", "gateway": c.gateway_provider,
                          "description": f"{c.gateway_provider} has no webhook secret"},
                     "Configure a webhook secret for every gateway")
        if not c.webhook_signature_verification:
            penalize(15, {"type": "signature_verification_disabled", "severity": "high",
                          "gateway": c.gateway_provider,
                          "description": f"Webhook signature verification is disabled for {c.gateway_provider}"},
                     "Enable webhook signature verification")
        if c.gateway_mode == "live" and c.status != "active":
            penalize(10, {"type": "inactive_live_gateway", "severity": "medium", "gateway": c.gateway_provider,
                          "description": f"Live gateway {c.gateway_provider} is {c.status}"},
                     "Review inactive live gateway configurations")

    if not active_bank_details(campus_id):
        penalize(20, {"type": "missing_bank_details", "severity": "high",
                      "description": "No active bank details for settlements"},
                 "Add verified bank details for settlements")

    since = utc_now() - timedelta(days=30)
    open_events = PaymentSecurityEvent.query.filter(
        PaymentSecurityEvent.campus_id_fk == campus_id,
        PaymentSecurityEvent.status == "open",
        PaymentSecurityEvent.created_at >= since,
    ).all()
    for e in open_events:
        if e.severity == "critical":
            penalize(10, {"type": "open_critical_event", "severity": "critical", "event_id": e.event_id,
                          "description": f"Unresolved critical event: {e.event_type}"},
                     "Investigate and resolve open critical security events")
        elif e.severity == "high":
            penalize(5, {"type": "open_high_event", "severity": "high", "event_id": e.event_id,
                         "description": f"Unresolved high severity event: {e.event_type}"},
                     "Review open high severity security events")

    score = max(score, 0)
    severity = "high" if score < 70 else "medium" if score < 85 else "low"
    compliance = "compliant" if score >= 85 else "needs_attention" if score >= 70 else "non_compliant"
    report = {
        "security_score": score,
        "severity": severity,
        "issues": issues,
        "recommendations": recommendations,
        "compliance_status": compliance,
        "audit_report_id": f"AUDIT_{_millis()}_{secrets.token_hex(4).upper()}",
    }
    _audit("security_audit_performed", "security", campus_id, severity=severity, user_id=user_id,
           changes={"security_score": score, "issues": len(issues)}, tags=("security", "audit", "compliance"),
           commit=True)
    return report


def security_events_query(campus_id, filters):
    q = PaymentSecurityEvent.query.filter(PaymentSecurityEvent.campus_id_fk == campus_id)
    for field, column in (("severity", PaymentSecurityEvent.severity),
                          ("status", PaymentSecurityEvent.status),
                          ("event_type", PaymentSecurityEvent.event_type)):
        if filters.get(field):
            q = q.filter(column == filters[field])
    return q.order_by(PaymentSecurityEvent.created_at.desc(), PaymentSecurityEvent.event_id.desc())


def audit_logs_query(campus_id, filters):
    q = PaymentAuditLog.query.filter(PaymentAuditLog.campus_id_fk == campus_id)
    for field, column in (("event_type", PaymentAuditLog.event_type),
                          ("event_category", PaymentAuditLog.event_category),
                          ("severity", PaymentAuditLog.severity),
                          ("gateway_provider", PaymentAuditLog.gateway_provider)):
        if filters.get(field):
            q = q.filter(column == filters[field])
    start = parse_datetime(filters.get("start_date"), "start_date")
    end = parse_datetime(filters.get("end_date"), "end_date")
    if start:
        q = q.filter(PaymentAuditLog.created_at >= start)
    if end:
        q = q.filter(PaymentAuditLog.created_at <= end)
    return q.order_by(PaymentAuditLog.created_at.desc(), PaymentAuditLog.log_id.desc())


def generate_compliance_report(campus_id, start, end):
    if start > end:
        raise create_error("VAL_006", {"start_date": start.isoformat(), "end_date": end.isoformat()})
    settlements = PaymentSettlement.query.filter(
        PaymentSettlement.campus_id_fk == campus_id,
        PaymentSettlement.settlement_date >= start,
        PaymentSettlement.settlement_date <= end,
    ).all()
    by_status = {}
    for s in settlements:
        row = by_status.setdefault(s.settlement_status, {"count": 0, "total_amount": 0.0, "net_amount": 0.0})
        row["count"] += 1
        row["total_amount"] = _money(row["total_amount"] + s.total_amount)
        row["net_amount"] = _money(row["net_amount"] + s.net_settlement_amount)

    audit_counts = dict(
        db.session.query(PaymentAuditLog.event_category, func.count())
        .filter(PaymentAuditLog.campus_id_fk == campus_id,
                PaymentAuditLog.created_at >= start, PaymentAuditLog.created_at <= end)
        .group_by(PaymentAuditLog.event_category).all())
    event_counts = dict(
        db.session.query(PaymentSecurityEvent.severity, func.count())
        .filter(PaymentSecurityEvent.campus_id_fk == campus_id,
                PaymentSecurityEvent.created_at >= start, PaymentSecurityEvent.created_at <= end)
        .group_by(PaymentSecurityEvent.severity).all())
    return {
        "campus_id": campus_id,
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "generated_at": utc_now().isoformat(),
        "settlements": {
            "total": len(settlements),
            "total_amount": _money(sum(s.total_amount for s in settlements)),
            "net_amount": _money(sum(s.net_settlement_amount for s in settlements)),
            "by_status": by_status,
        },
        "audit_events_by_category": audit_counts,
        "security_events_by_severity": event_counts,
    }


def payment_health():
    active = PaymentGatewayConfiguration.query.filter_by(status="active").count()
    metrics = security_monitor.get_security_metrics()
    status = "healthy"
    if metrics["critical_events"]:
        status = "degraded"
    return {
        "status": status,
        "active_gateways": active,
        "has_active_gateway": active > 0,
        "monitor": metrics,
        "supported_gateways": list(gateways.SUPPORTED_GATEWAYS),
    }


def cleanup_security_logs(days=30):
    removed = security_monitor.clear_old_logs(days)
    cutoff = utc_now() - timedelta(days=days)
    resolved = (PaymentSecurityEvent.query
                .filter(PaymentSecurityEvent.status == "resolved", PaymentSecurityEvent.resolved_at < cutoff)
                .delete(synchronize_session=False))
    db.session.commit()
    return {"monitor_entries_removed": removed, "resolved_events_deleted": resolved}

from functools import wraps
from datetime import timedelta
from flask import request, jsonify
from flask_login import current_user
from . import payments_bp
from . import settlement as service
from . import gateways
from .error_handler import create_error
from .security_monitor import security_monitor, serialize_event
from ..api_utils import api_success, api_error, get_json, page_args, paginate, parse_datetime
from ..decorators import resolve_campus_id
from ..features.services import is_feature_enabled
from ..exports import tabular_response
from ..models import utc_now

ADMINS = ("Super Admin", "Admin")


def payment_auth(*roles):
    """Authenticate with coded payment errors (AUTH_001 / AUTH_002).

    Campus users are also turned away while the payments feature is disabled.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                raise create_error("AUTH_001")
            if roles and current_user.user_type not in roles:
                raise create_error("AUTH_002", {"required_role": list(roles),
                                                "current_role": current_user.user_type}, status=403)
            campus_id = current_user.campus_id_fk
            if not current_user.is_super_admin and not is_feature_enabled(campus_id, "payments"):
                return api_error("feature_disabled", "Payments feature is disabled for this campus", 403,
                                 extra={"feature": "payments", "campus_id": campus_id})
            return func(*args, **kwargs)
        return wrapper
    return decorator


def _campus_id():
    campus_id = resolve_campus_id()
    if not campus_id:
        raise create_error("VAL_001", {"fields": ["campus_id"]})
    return campus_id


def _filters(*names):
    return {n: request.args.get(n) for n in names if request.args.get(n)}


# ==========================================
# SETTLEMENTS
# ==========================================

@payments_bp.route("/settlements/trigger", methods=["POST"])
@payment_auth("Super Admin")
def trigger_settlement():
    payload = get_json()
    provider = payload.get("gateway_provider")
    if not provider:
        raise create_error("VAL_001", {"fields": ["gateway_provider"]})
    settlement, duplicate = service.process_automatic_settlement(
        _campus_id(), provider,
        parse_datetime(payload.get("settlement_date"), "settlement_date"),
        initiated_by=f"user:{current_user.user_id}",
    )
    data = settlement.to_dict()
    data["duplicate"] = duplicate
    return api_success(data, status=200 if duplicate else 201)


@payments_bp.route("/settlements/history", methods=["GET"])
@payment_auth(*ADMINS)
def settlement_history():
    page, limit = page_args()
    data, meta = service.get_settlement_history(
        _campus_id(), _filters("status", "gateway_provider", "start_date", "end_date"), page, limit)
    return api_success(data, meta=meta)


@payments_bp.route("/settlements/<int:settlement_id>", methods=["GET"])
@payment_auth(*ADMINS)
def settlement_details(settlement_id):
    return api_success(service.get_settlement_details(_campus_id(), settlement_id))


# ==========================================
# WEBHOOKS (public, signature verified)
# ==========================================

def _webhook_input(gateway):
    if not gateways.is_supported(gateway):
        raise create_error("VAL_006", {"gateway": gateway}, status=400)
    raw_body = request.get_data(cache=True)
    payload = request.get_json(silent=True) or {}
    signature = gateways.signature_from_headers(gateway, request.headers)
    return raw_body, payload, signature


@payments_bp.route("/webhooks/settlement/<gateway>", methods=["POST"])
def settlement_webhook(gateway):
    raw_body, payload, signature = _webhook_input(gateway)
    result = service.handle_settlement_webhook(gateway, raw_body, payload, signature, {
        "ip_address": request.headers.get("X-Forwarded-For") or request.remote_addr,
        "user_agent": request.headers.get("User-Agent"),
    })
    # Always 200 so the gateway does not keep retrying
    return jsonify({"success": bool(result.get("success")), "data": result}), 200


@payments_bp.route("/webhooks/transaction/<gateway>", methods=["POST"])
def transaction_webhook(gateway):
    raw_body, payload, signature = _webhook_input(gateway)
    result = service.handle_transaction_webhook(gateway, raw_body, payload, signature)
    return jsonify({"success": bool(result.get("success")), "data": result}), 200


# ==========================================
# TRANSACTIONS
# ==========================================

@payments_bp.route("/transactions", methods=["POST"])
@payment_auth()
def create_transaction():
    txn = service.create_transaction(_campus_id(), get_json(), current_user)
    return api_success(txn.to_dict(), status=201)


@payments_bp.route("/transactions", methods=["GET"])
@payment_auth()
def list_transactions():
    query = service.transactions_query(
        _campus_id(), _filters("status", "gateway_provider", "student_id"), current_user)
    page, limit = page_args()
    items, meta = paginate(query, page, limit)
    return api_success({"transactions": [t.to_dict() for t in items]}, meta=meta)


# ==========================================
# SECURITY / AUDIT / COMPLIANCE
# ==========================================

@payments_bp.route("/security/audit", methods=["POST"])
@payment_auth("Super Admin")
def security_audit():
    report = service.perform_security_audit(_campus_id(), current_user.user_id)
    report["audit_timestamp"] = utc_now().isoformat()
    report["next_audit_due"] = (utc_now() + timedelta(days=30)).isoformat()
    return api_success(report)


@payments_bp.route("/security/events", methods=["GET"])
@payment_auth(*ADMINS)
def security_events():
    campus_id = _campus_id()
    query = service.security_events_query(campus_id, _filters("severity", "status", "event_type"))
    page, limit = page_args()
    items, meta = paginate(query, page, limit)
    return api_success({
        "events": [e.to_dict() for e in items],
        "metrics": security_monitor.get_security_metrics(campus_id),
    }, meta=meta)


@payments_bp.route("/security/metrics", methods=["GET"])
@payment_auth(*ADMINS)
def security_metrics():
    campus_id = None if current_user.is_super_admin and not request.args.get("campus_id") else _campus_id()
    data = security_monitor.get_security_metrics(campus_id)
    if current_user.is_super_admin:
        data["recent_events"] = [serialize_event(e) for e in security_monitor.get_recent_security_events(24)][:20]
    return api_success(data)


AUDIT_HEADERS = ["Log ID", "Timestamp", "Event Type", "Category", "Severity", "Gateway",
                 "Amount", "Result", "Error Code", "Request ID"]


@payments_bp.route("/audit/logs", methods=["GET"])
@payment_auth(*ADMINS)
def audit_logs():
    query = service.audit_logs_query(
        _campus_id(),
        _filters("event_type", "event_category", "severity", "gateway_provider", "start_date", "end_date"))
    fmt = (request.args.get("format") or "json").lower()
    if fmt == "json":
        page, limit = page_args()
        items, meta = paginate(query, page, limit)
        return api_success({"logs": [log.to_dict() for log in items]}, meta=meta)
    if fmt not in ("csv", "xlsx"):
        raise create_error("VAL_002", {"format": fmt, "allowed": ["json", "csv", "xlsx"]})
    rows = [
        [log.log_id, log.created_at.isoformat() if log.created_at else "", log.event_type, log.event_category,
         log.severity, log.gateway_provider, log.amount, log.operation_result, log.error_code, log.request_id]
        for log in query.limit(10000).all()
    ]
    return tabular_response(AUDIT_HEADERS, rows, "payment_audit_logs", fmt, sheet_title="Audit Logs")


@payments_bp.route("/compliance/reports/generate", methods=["GET"])
@payment_auth(*ADMINS)
def compliance_report():
    end = parse_datetime(request.args.get("end_date"), "end_date") or utc_now()
    start = parse_datetime(request.args.get("start_date"), "start_date") or end - timedelta(days=30)
    return api_success(service.generate_compliance_report(_campus_id(), start, end))


# ==========================================
# CONFIGURATION
# ==========================================

@payments_bp.route("/gateways/configure", methods=["POST"])
@payment_auth(*ADMINS)
def configure_gateway():
    payload = get_json()
    provider = payload.get("gateway_provider")
    if not provider:
        raise create_error("VAL_001", {"fields": ["gateway_provider"]})
    config = service.configure_payment_gateway(_campus_id(), provider, payload, current_user.user_id)
    return api_success(config.to_dict())


@payments_bp.route("/gateways/configurations", methods=["GET"])
@payment_auth(*ADMINS)
def gateway_configurations():
    return api_success(service.get_gateway_configurations(_campus_id()))


@payments_bp.route("/bank-details", methods=["POST"])
@payment_auth(*ADMINS)
def bank_details():
    bank = service.upsert_bank_details(_campus_id(), get_json(), current_user.user_id)
    return api_success(bank.to_dict())


@payments_bp.route("/health", methods=["GET"])
def payment_health():
    return api_success(service.payment_health())

import logging
import threading
import uuid
from collections import deque
from datetime import timedelta
from flask import current_app, has_app_context
from ..models import utc_now
from ..email_utils import send_templated_email

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 10000

SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.INFO,
    "high": logging.WARNING,
    "critical": logging.ERROR,
}

AUTH_FAILURE_EVENTS = ("authentication_failure", "authorization_failure")


class PaymentSecurityMonitor:
    """In-process ring buffers of payment security and audit events."""

    def __init__(self, max_entries=MAX_LOG_ENTRIES):
        self._lock = threading.Lock()
        self._security = deque(maxlen=max_entries)
        self._audit = deque(maxlen=max_entries)

    def log_security_event(self, event_type, severity, details=None, campus_id=None,
                           user_id=None, ip_address=None, user_agent=None, request_id=None):
        event = {
            "request_id": request_id or str(uuid.uuid4()),
            "timestamp": utc_now(),
            "event_type": event_type,
            "severity": severity,
            "campus_id": campus_id,
            "user_id": user_id,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "details": details or {},
        }
        with self._lock:
            self._security.append(event)
        logger.log(SEVERITY_LEVELS.get(severity, logging.INFO),
                   "payment security event %s severity=%s campus=%s request=%s",
                   event_type, severity, campus_id, event["request_id"])
        if severity == "critical":
            self._alert(event)
        return event

    def log_audit_event(self, event_type, success, campus_id=None, user_id=None, amount=None,
                        gateway_provider=None, details=None, request_id=None,
                        execution_time_ms=None, error_message=None):
        entry = {
            "request_id": request_id or str(uuid.uuid4()),
            "timestamp": utc_now(),
            "event_type": event_type,
            "success": bool(success),
            "campus_id": campus_id,
            "user_id": user_id,
            "amount": amount,
            "gateway_provider": gateway_provider,
            "execution_time_ms": execution_time_ms,
            "error_message": error_message,
            "details": details or {},
        }
        with self._lock:
            self._audit.append(entry)
        logger.debug("payment audit %s success=%s campus=%s", event_type, success, campus_id)
        return entry

    def _alert(self, event):
        logger.critical("CRITICAL payment security alert: %s (campus=%s, request=%s)",
                        event["event_type"], event["campus_id"], event["request_id"])
        if not has_app_context():
            return
        recipient = current_app.config.get("SECURITY_ALERT_EMAIL")
        if not recipient:
            return
        send_templated_email(
            "security_alert", recipient,
            severity=event["severity"],
            event_type=event["event_type"],
            campus_id=event["campus_id"],
            request_id=event["request_id"],
            timestamp=event["timestamp"].isoformat(),
            details=event["details"],
        )

    def get_security_events(self, limit=100, severity=None):
        with self._lock:
            events = list(self._security)
        if severity:
            events = [e for e in events if e["severity"] == severity]
        return list(reversed(events))[:limit]

    def get_audit_logs(self, campus_id=None, limit=100):
        with self._lock:
            logs = list(self._audit)
        if campus_id is not None:
            logs = [e for e in logs if e["campus_id"] == campus_id]
        return list(reversed(logs))[:limit]

    def get_recent_security_events(self, hours=24):
        cutoff = utc_now() - timedelta(hours=hours)
        with self._lock:
            events = [e for e in self._security if e["timestamp"] >= cutoff]
        return list(reversed(events))

    def get_security_event_by_id(self, request_id):
        with self._lock:
            for event in self._security:
                if event["request_id"] == request_id:
                    return event
        return None

    def get_security_metrics(self, campus_id=None):
        with self._lock:
            events = list(self._security)
            audits = list(self._audit)
        if campus_id is not None:
            events = [e for e in events if e["campus_id"] == campus_id]
            audits = [a for a in audits if a["campus_id"] == campus_id]
        cutoff = utc_now() - timedelta(hours=24)
        verified = [a for a in audits if a["event_type"] == "payment_verified"]
        return {
            "total_events": len(events),
            "critical_events": sum(1 for e in events if e["severity"] == "critical"),
            "failed_authentications": sum(1 for e in events if e["event_type"] in AUTH_FAILURE_EVENTS),
            "successful_payments": sum(1 for a in verified if a["success"]),
            "failed_payments": sum(1 for a in verified if not a["success"]),
            "last_24h_events": sum(1 for e in events if e["timestamp"] >= cutoff),
            "campus_specific": campus_id is not None,
        }

    def clear_old_logs(self, days=30):
        cutoff = utc_now() - timedelta(days=days)
        with self._lock:
            before = len(self._security) + len(self._audit)
            kept_security = [e for e in self._security if e["timestamp"] >= cutoff]
            kept_audit = [a for a in self._audit if a["timestamp"] >= cutoff]
            self._security.clear()
            self._security.extend(kept_security)
            self._audit.clear()
            self._audit.extend(kept_audit)
            removed = before - len(self._security) - len(self._audit)
        logger.info("cleared %d payment monitor entries older than %d days", removed, days)
        return removed


def serialize_event(event):
    data = dict(event)
    data["timestamp"] = event["timestamp"].isoformat()
    return data


security_monitor = PaymentSecurityMonitor()

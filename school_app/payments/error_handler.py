"""Coded payment errors and their HTTP/severity classification."""
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from ..errors import AppError

ERROR_CODES = {
    # Authentication & authorization
    "AUTH_001": "Invalid or expired authentication token",
    "AUTH_002": "Insufficient permissions for this operation",
    "AUTH_003": "User account is disabled or suspended",
    "AUTH_004": "Session has expired, please login again",
    # Gateway
    "GATEWAY_001": "Payment gateway configuration is missing or invalid",
    "GATEWAY_002": "Payment gateway is temporarily unavailable",
    "GATEWAY_003": "Payment gateway credentials are invalid or expired",
    "GATEWAY_004": "Payment amount exceeds gateway limits",
    "GATEWAY_005": "Payment gateway signature verification failed",
    "GATEWAY_006": "Unsupported payment method for selected gateway",
    # Transactions
    "TRANS_001": "Transaction not found or invalid transaction ID",
    "TRANS_002": "Transaction has already been processed",
    "TRANS_003": "Transaction amount mismatch",
    "TRANS_004": "Transaction has expired",
    "TRANS_005": "Insufficient balance or payment failed",
    "TRANS_006": "Transaction was cancelled by user",
    "TRANS_007": "Transaction declined by bank or payment provider",
    # Credentials
    "CRED_001": "Encryption key is missing or invalid",
    "CRED_002": "Failed to encrypt or decrypt payment credentials",
    "CRED_003": "Payment credentials format is invalid",
    "CRED_004": "Credential rotation failed",
    "CRED_005": "Legacy credentials migration required",
    # Validation
    "VAL_001": "Required fields are missing from request",
    "VAL_002": "Invalid data format or type",
    "VAL_003": "Amount must be greater than zero",
    "VAL_004": "Invalid email address format",
    "VAL_005": "Invalid phone number format",
    "VAL_006": "Invalid date or date range",
    # Business rules
    "BIZ_001": "Fee has already been paid",
    "BIZ_002": "Student is not enrolled in the specified class",
    "BIZ_003": "Payment deadline has passed",
    "BIZ_004": "Discount or scholarship not applicable",
    "BIZ_005": "Campus bank details are not configured",
    "BIZ_006": "Fee category is not active or available",
    # System
    "SYS_001": "Database connection failed",
    "SYS_002": "External service is unavailable",
    "SYS_003": "Internal server error occurred",
    "SYS_004": "Service timeout exceeded",
    "SYS_005": "Memory or resource limit exceeded",
    # Rate limiting & abuse
    "RATE_001": "Too many requests, please try again later",
    "RATE_002": "Maximum transaction attempts exceeded",
    "RATE_003": "Suspicious activity detected, account temporarily locked",
    # Data integrity
    "DATA_001": "Data corruption detected",
    "DATA_002": "Concurrent modification conflict",
    "DATA_003": "Referenced entity not found",
    "DATA_004": "Data validation failed",
}

USER_MESSAGES = {
    "AUTH_001": "Please log in again to continue",
    "AUTH_002": "You don't have permission to perform this action",
    "GATEWAY_001": "Payment gateway is not configured properly",
    "GATEWAY_002": "Payment service is temporarily unavailable",
    "TRANS_001": "The payment transaction could not be found",
    "TRANS_005": "Payment was declined by your bank",
    "VAL_003": "Please enter a valid amount greater than zero",
    "BIZ_001": "This fee has already been paid",
    "BIZ_005": "Payment system is being set up for your school",
    "RATE_001": "Too many attempts, please wait a moment and try again",
    "SYS_003": "Something went wrong, please try again later",
}
DEFAULT_USER_MESSAGE = "An error occurred, please contact support if the problem persists"

SUGGESTIONS = {
    "AUTH_001": ["Log out and log back in", "Clear browser cache and cookies", "Contact support if issue persists"],
    "AUTH_002": ["Contact your administrator for access", "Verify you have the correct role assigned"],
    "GATEWAY_002": ["Try again in a few minutes", "Use a different payment method", "Contact support"],
    "TRANS_005": ["Check your bank balance", "Try a different payment method", "Contact your bank"],
    "VAL_003": ["Enter an amount greater than 1", "Check for decimal places or special characters"],
    "BIZ_001": ["Check your payment history", "Contact the fee office if payment is missing"],
    "RATE_001": ["Wait 5-10 minutes before trying again", "Clear browser cache"],
    "SYS_003": ["Refresh the page and try again", "Check your internet connection", "Contact support"],
}
DEFAULT_SUGGESTIONS = ["Try again later", "Contact support if the problem continues"]

PREFIX_STATUS = {
    "AUTH": 401, "VAL": 400, "BIZ": 422, "RATE": 429, "DATA": 409,
    "TRANS": 400, "CRED": 500, "GATEWAY": 502, "SYS": 500,
}

PREFIX_SEVERITY = {
    "AUTH": "high", "CRED": "critical", "RATE": "medium", "SYS": "high",
    "GATEWAY": "medium", "TRANS": "low", "VAL": "low", "BIZ": "low", "DATA": "high",
}

HTTP_STATUS_CODES = {400: "VAL_002", 401: "AUTH_001", 403: "AUTH_002", 404: "DATA_003",
                     405: "VAL_001", 429: "RATE_001"}


class PaymentError(Exception):
    """A coded payment failure. `status` overrides the prefix status when set."""

    def __init__(self, code, details=None, user_message=None, suggestions=None, status=None, message=None):
        self.code = code
        self.message = message or ERROR_CODES.get(code, ERROR_CODES["SYS_003"])
        self.details = details
        self.user_message = user_message or USER_MESSAGES.get(code, DEFAULT_USER_MESSAGE)
        self.suggestions = suggestions or SUGGESTIONS.get(code, DEFAULT_SUGGESTIONS)
        self.status = status
        super().__init__(self.message)

    @property
    def prefix(self):
        return self.code.split("_")[0]


def create_error(code, details=None, user_message=None, suggestions=None, status=None):
    return PaymentError(code, details=details, user_message=user_message,
                        suggestions=suggestions, status=status)


def status_for(code):
    return PREFIX_STATUS.get(code.split("_")[0], 500)


def severity_for(code):
    return PREFIX_SEVERITY.get(code.split("_")[0], "medium")


def should_log(code):
    return code.split("_")[0] not in ("VAL", "BIZ")


def _categorize(exc, context):
    details = {"original_message": str(exc), "context": context}
    if isinstance(exc, SQLAlchemyError):
        return create_error("SYS_001", details)
    message = str(exc).lower()
    if any(k in message for k in ("connection", "database", "timeout")):
        return create_error("SYS_001", details)
    if any(k in message for k in ("validation", "invalid", "required")):
        return create_error("VAL_002", details)
    if any(k in message for k in ("unauthorized", "token", "auth")):
        return create_error("AUTH_001", details)
    if any(k in message for k in ("gateway", "payment", "signature")):
        return create_error("GATEWAY_002", details)
    return create_error("SYS_003", details)


def _from_status(status, message, context):
    code = HTTP_STATUS_CODES.get(status, "SYS_003")
    return create_error(code, {"original_message": message, "context": context}, status=status)


def handle_error(exc, context=None):
    """Classify any exception into (PaymentError, http_status, should_log)."""
    if isinstance(exc, PaymentError):
        return exc, exc.status or status_for(exc.code), should_log(exc.code)
    if isinstance(exc, HTTPException):
        status = exc.code or 500
        err = _from_status(status, exc.description, context)
        return err, status, should_log(err.code)
    if isinstance(exc, AppError):
        err = _from_status(exc.status_code, exc.message, context)
        err.user_message = exc.message
        if exc.extra:
            err.details = dict(err.details or {}, **exc.extra)
        return err, exc.status_code, should_log(err.code)
    err = _categorize(exc, context)
    return err, status_for(err.code), True


def format_error_response(err, include_details=False):
    body = {"success": False, "error": {"code": err.code, "message": err.message}}
    if err.user_message:
        body["error"]["user_message"] = err.user_message
    if err.suggestions:
        body["error"]["suggestions"] = list(err.suggestions)
    if include_details and err.details:
        body["error"]["details"] = err.details
    return body


def handle_payment_error(exc, monitor, context=None):
    """Classify `exc` and record it on `monitor` when it is worth logging.

    VAL and BIZ failures are not recorded. Severity follows the code prefix,
    so CRED failures are critical and AUTH or SYS failures are high.
    """
    context = context or {}
    err, status, log_it = handle_error(exc, context)
    if log_it:
        monitor.log_security_event(
            "suspicious_activity",
            severity_for(err.code),
            {"endpoint": context.get("endpoint"), "method": context.get("method"),
             "error_code": err.code, "error_message": err.message},
            campus_id=context.get("campus_id"),
            user_id=context.get("user_id"),
            ip_address=context.get("ip_address"),
            user_agent=context.get("user_agent"),
            request_id=context.get("request_id"),
        )
    return err, status

"""Gateway adapters: webhook signatures, settlement submission, connectivity checks.

No gateway SDK is called; submission produces deterministic local identifiers.
"""
import hashlib
import hmac
import secrets
import time

SUPPORTED_GATEWAYS = ("razorpay", "payu", "cashfree")

SIGNATURE_HEADERS = {
    "razorpay": "X-Razorpay-Signature",
    "payu": "X-PayU-Signature",
    "cashfree": "X-Cashfree-Signature",
}


def is_supported(provider):
    return provider in SUPPORTED_GATEWAYS


def signature_from_headers(provider, headers):
    return headers.get("X-Webhook-Signature") or headers.get(SIGNATURE_HEADERS.get(provider, ""), "")


def sign_payload(secret, raw_body):
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret, raw_body, signature):
    if not secret or not signature:
        return False
    expected = sign_payload(secret, raw_body)
    return hmac.compare_digest(expected, signature.strip().lower())


def _millis():
    return int(time.time() * 1000)


def submit_settlement(settlement, config):
    return {
        "gateway_settlement_id": f"SETTLE_{_millis()}_{secrets.token_hex(3).upper()}",
        "reference": f"REF_{secrets.token_hex(4).upper()}",
        "status": "processing",
        "gateway_provider": config.gateway_provider,
        "amount": settlement.net_settlement_amount,
    }


def test_connectivity(provider, mode):
    if not is_supported(provider):
        return {"success": False, "message": f"Unsupported gateway: {provider}"}
    return {"success": True, "message": f"{provider} ({mode}) reachable", "latency_ms": 0}

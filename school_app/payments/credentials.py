"""Encryption at rest for gateway credentials."""
from cryptography.fernet import Fernet, InvalidToken
from flask import current_app
from .error_handler import create_error

# Fernet tokens are urlsafe base64 and always start with the version byte 0x80
TOKEN_PREFIX = "gAAAAA"


def _fernet():
    key = current_app.config.get("PAYMENT_ENCRYPTION_KEY")
    if not key:
        raise create_error("CRED_001", {"reason": "PAYMENT_ENCRYPTION_KEY is not set"})
    try:
        return Fernet(key)
    except (TypeError, ValueError):
        raise create_error("CRED_001", {"reason": "PAYMENT_ENCRYPTION_KEY is not a valid Fernet key"})


def encrypt_secret(value: str) -> str:
    return _fernet().encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str) -> str:
    """Plain text of a stored credential.

    Raises CRED_005 for a value that was never encrypted and CRED_002 when the
    configured key cannot open it.
    """
    if not token.startswith(TOKEN_PREFIX):
        raise create_error("CRED_005")
    fernet = _fernet()
    try:
        return fernet.decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError):
        raise create_error("CRED_002", {"operation": "decrypt"})

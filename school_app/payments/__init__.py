from flask import Blueprint

payments_bp = Blueprint("payments", __name__)

from .monitoring import install_monitoring  # noqa: E402

install_monitoring(payments_bp)

from . import routes  # noqa: E402,F401

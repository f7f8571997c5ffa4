from flask import Blueprint

meetings_bp = Blueprint("meetings", __name__)

from . import routes  # noqa: E402,F401

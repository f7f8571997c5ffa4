from flask import g
from flask_login import login_required, current_user
from . import features_bp
from . import services
from ..api_utils import api_success, get_json, require_fields
from ..decorators import campus_required, super_admin_required
from ..errors import ValidationError


def _check_feature_name(feature):
    if feature not in services.FEATURE_NAMES:
        raise ValidationError(f"Unknown feature '{feature}'", extra={"allowed": list(services.FEATURE_NAMES)})


@features_bp.route("", methods=["GET"])
@login_required
@campus_required
def get_features():
    record = services.get_campus_features(g.campus_id)
    return api_success(record.to_dict())


@features_bp.route("/check/<feature>", methods=["GET"])
@login_required
@campus_required
def check_feature(feature):
    _check_feature_name(feature)
    return api_success({"feature": feature, "enabled": services.is_feature_enabled(g.campus_id, feature)})


@features_bp.route("", methods=["PUT", "PATCH"])
@login_required
@super_admin_required
@campus_required
def update_features():
    payload = get_json()
    require_fields(payload, "features")
    record = services.update_campus_features(g.campus_id, payload["features"], current_user.user_id)
    return api_success(record.to_dict())


@features_bp.route("/initialize", methods=["POST"])
@login_required
@super_admin_required
@campus_required
def initialize():
    record = services.initialize_campus_features(g.campus_id, current_user.user_id)
    return api_success(record.to_dict(), status=201)


@features_bp.route("/<feature>/enable", methods=["POST"])
@login_required
@super_admin_required
@campus_required
def enable(feature):
    _check_feature_name(feature)
    return api_success(services.enable_feature(g.campus_id, feature, current_user.user_id).to_dict())


@features_bp.route("/<feature>/disable", methods=["POST"])
@login_required
@super_admin_required
@campus_required
def disable(feature):
    _check_feature_name(feature)
    return api_success(services.disable_feature(g.campus_id, feature, current_user.user_id).to_dict())


@features_bp.route("/reset", methods=["POST"])
@login_required
@super_admin_required
@campus_required
def reset():
    return api_success(services.reset_to_defaults(g.campus_id, current_user.user_id).to_dict())


@features_bp.route("/all", methods=["GET"])
@login_required
@super_admin_required
def all_features():
    return api_success({"items": services.get_all_campus_features()})


@features_bp.route("/bulk", methods=["POST"])
@login_required
@super_admin_required
def bulk_update():
    payload = get_json()
    require_fields(payload, "campus_ids", "features")
    return api_success(services.bulk_update_features(payload["campus_ids"], payload["features"], current_user.user_id))

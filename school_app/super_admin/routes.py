from flask import request
from flask_login import login_required, current_user
from . import super_admin_bp
from . import services, backup
from ..api_utils import api_success, get_json, page_args, paginate, parse_bool
from ..decorators import super_admin_required


@super_admin_bp.route("/dashboard", methods=["GET"])
@login_required
@super_admin_required
def dashboard():
    return api_success(services.dashboard_stats())


# ==========================================
# TENANT MANAGEMENT (KILL SWITCH)
# ==========================================

@super_admin_bp.route("/campuses", methods=["POST"])
@login_required
@super_admin_required
def create_campus():
    return api_success(services.create_campus(get_json()).to_dict(), status=201)


@super_admin_bp.route("/campuses", methods=["GET"])
@login_required
@super_admin_required
def list_campuses():
    active = request.args.get("is_active")
    query = services.list_campuses(request.args.get("search"),
                                   None if active in (None, "") else parse_bool(active))
    page, limit = page_args()
    items, meta = paginate(query, page, limit)
    return api_success({"items": [c.to_dict() for c in items]}, meta=meta)


@super_admin_bp.route("/campuses/<int:campus_id>", methods=["GET"])
@login_required
@super_admin_required
def get_campus(campus_id):
    return api_success(services.get_campus(campus_id).to_dict())


@super_admin_bp.route("/campuses/<int:campus_id>", methods=["PUT", "PATCH"])
@login_required
@super_admin_required
def update_campus(campus_id):
    return api_success(services.update_campus(campus_id, get_json()).to_dict())


@super_admin_bp.route("/campuses/<int:campus_id>/toggle", methods=["POST"])
@login_required
@super_admin_required
def toggle_campus(campus_id):
    campus = services.toggle_campus(campus_id)
    return api_success({"campus_id": campus.campus_id, "is_active": bool(campus.is_active)})


@super_admin_bp.route("/onboard", methods=["POST"])
@login_required
@super_admin_required
def onboard():
    result = services.onboard_new_school(get_json(), current_user)
    return api_success(result, status=201)


@super_admin_bp.route("/campuses/<int:campus_id>/health", methods=["GET"])
@login_required
@super_admin_required
def campus_health(campus_id):
    return api_success(services.monitor_school_health(campus_id))


@super_admin_bp.route("/campuses/<int:campus_id>/troubleshoot-payments", methods=["GET"])
@login_required
@super_admin_required
def troubleshoot(campus_id):
    return api_success(services.troubleshoot_school_payments(campus_id))


@super_admin_bp.route("/analytics", methods=["GET"])
@login_required
@super_admin_required
def analytics():
    return api_success(services.get_platform_analytics())


@super_admin_bp.route("/compliance", methods=["GET"])
@login_required
@super_admin_required
def compliance():
    return api_success(services.check_compliance_for_all_schools(current_user.user_id))


# ==========================================
# SYSTEM MESSAGES
# ==========================================

@super_admin_bp.route("/system-messages", methods=["POST"])
@login_required
@super_admin_required
def create_message():
    return api_success(services.create_system_message(get_json()).to_dict(), status=201)


@super_admin_bp.route("/system-messages", methods=["GET"])
@login_required
@super_admin_required
def list_messages():
    return api_success({"items": [m.to_dict() for m in services.list_system_messages()]})


@super_admin_bp.route("/system-messages/<int:message_id>/toggle", methods=["POST"])
@login_required
@super_admin_required
def toggle_message(message_id):
    msg = services.toggle_system_message(message_id)
    return api_success({"message_id": msg.message_id, "is_active": bool(msg.is_active)})


@super_admin_bp.route("/system-messages/<int:message_id>", methods=["DELETE"])
@login_required
@super_admin_required
def delete_message(message_id):
    services.delete_system_message(message_id)
    return api_success({"deleted": True, "message_id": message_id})


# ==========================================
# SYSTEM CONFIG (MAINTENANCE MODE)
# ==========================================

@super_admin_bp.route("/maintenance", methods=["GET"])
@login_required
@super_admin_required
def get_maintenance():
    return api_success({"maintenance_mode": services.is_maintenance_mode()})


@super_admin_bp.route("/maintenance", methods=["PUT", "POST"])
@login_required
@super_admin_required
def set_maintenance():
    payload = get_json()
    enabled = services.set_maintenance_mode(parse_bool(payload.get("enabled")))
    return api_success({"maintenance_mode": enabled})


# ==========================================
# BACKUPS
# ==========================================

@super_admin_bp.route("/backups", methods=["POST"])
@login_required
@super_admin_required
def create_backup():
    payload = get_json()
    record = backup.initiate_backup(payload.get("backup_type") or "full", payload, current_user.user_id)
    return api_success(record.to_dict(), status=201)


@super_admin_bp.route("/backups", methods=["GET"])
@login_required
@super_admin_required
def list_backups():
    records = backup.list_available_backups(request.args.get("backup_type"))
    return api_success({"items": [r.to_dict() for r in records]})


@super_admin_bp.route("/backups/status", methods=["GET"])
@login_required
@super_admin_required
def backup_status():
    return api_success(backup.get_backup_status())


@super_admin_bp.route("/backups/<backup_id>/validate", methods=["POST"])
@login_required
@super_admin_required
def validate_backup(backup_id):
    return api_success(backup.validate_backup_integrity(backup_id))


@super_admin_bp.route("/backups/<backup_id>/restore", methods=["POST"])
@login_required
@super_admin_required
def restore_backup(backup_id):
    return api_success(backup.initiate_restore(backup_id, get_json()))


@super_admin_bp.route("/backups/cleanup", methods=["POST"])
@login_required
@super_admin_required
def cleanup_backups():
    return api_success(backup.cleanup_old_backups())


@super_admin_bp.route("/backups/disaster-recovery-plan", methods=["GET"])
@login_required
@super_admin_required
def disaster_recovery_plan():
    return api_success(backup.get_disaster_recovery_plan())

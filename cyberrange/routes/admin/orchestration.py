#!/usr/bin/env python3
"""
Admin orchestration endpoints: inspect running instances, force lifecycle
operations, and run the environment preflight.
"""

import logging

from flask import Blueprint, jsonify, request

from cyberrange.services import get_services
from cyberrange.utils.decorators import admin_required, current_user

logger = logging.getLogger(__name__)

admin_orchestration_bp = Blueprint('admin_orchestration', __name__, url_prefix='/api/admin/orchestration')


@admin_orchestration_bp.route("/instances", methods=["GET"])
@admin_required
def list_instances():
    result = get_services().inspector.list_active(
        page=request.args.get('page', 1, type=int),
        per_page=min(request.args.get('per_page', 20, type=int), 100),
    )
    return jsonify({"ok": True, **result})


@admin_orchestration_bp.route("/instances/<instance_id>", methods=["GET"])
@admin_required
def get_instance(instance_id: str):
    services = get_services()
    instance = services.instances.find_instance_or_fail(instance_id)
    return jsonify({"ok": True, "instance": services.inspector.inspect(instance)})


@admin_orchestration_bp.route("/instances/<instance_id>/force-stop", methods=["POST"])
@admin_required
def force_stop(instance_id: str):
    instance = get_services().instances.force_stop_by_admin(instance_id, current_user().id)
    logger.info(f"Admin {current_user().username} force-stopped lab instance {instance_id}")
    return jsonify({"ok": True, "instance": instance.to_dict()})


@admin_orchestration_bp.route("/instances/<instance_id>/restart", methods=["POST"])
@admin_required
def force_restart(instance_id: str):
    instance = get_services().instances.force_restart_by_admin(instance_id, current_user().id)
    logger.info(f"Admin {current_user().username} restarted lab instance {instance_id}")
    return jsonify({"ok": True, "instance": instance.to_dict()})


@admin_orchestration_bp.route("/instances/<instance_id>/destroy", methods=["POST"])
@admin_required
def force_destroy(instance_id: str):
    instance = get_services().instances.force_destroy_by_admin(instance_id, current_user().id)
    logger.info(f"Admin {current_user().username} destroyed lab instance {instance_id}")
    return jsonify({"ok": True, "instance": instance.to_dict()})


@admin_orchestration_bp.route("/preflight", methods=["GET"])
@admin_required
def preflight():
    """Environment readiness report. 503 when any check fails."""
    report = get_services().preflight.run()
    return jsonify({"ok": report['ok'], "preflight": report}), 200 if report['ok'] else 503

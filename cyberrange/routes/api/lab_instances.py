#!/usr/bin/env python3
"""
API endpoints for a learner's own lab instances.
"""

import logging

from flask import Blueprint, jsonify, request

from cyberrange.models import LabInstanceState, UpgradeStrategy
from cyberrange.services import get_services
from cyberrange.utils.decorators import current_user, login_required

logger = logging.getLogger(__name__)

api_lab_instances_bp = Blueprint('api_lab_instances', __name__, url_prefix='/api')


@api_lab_instances_bp.route("/me/lab-instances", methods=["GET"])
@login_required
def my_lab_instances():
    state = request.args.get('state')
    if state and state not in LabInstanceState.ALL:
        return jsonify({"ok": False, "error": f"Unknown state '{state}'"}), 400

    pagination = get_services().instances.my_instances(
        current_user(),
        state=state,
        page=request.args.get('page', 1, type=int),
        per_page=min(request.args.get('per_page', 15, type=int), 100),
    )
    return jsonify({
        "ok": True,
        "instances": [instance.to_dict() for instance in pagination.items],
        "page": pagination.page,
        "per_page": pagination.per_page,
        "total": pagination.total,
    })


@api_lab_instances_bp.route("/lab-instances/<instance_id>/deactivate", methods=["POST"])
@login_required
def deactivate_instance(instance_id: str):
    instance = get_services().instances.deactivate(instance_id, current_user())
    return jsonify({"ok": True, "instance": instance.to_dict()})


@api_lab_instances_bp.route("/lab-instances/<instance_id>/restart", methods=["POST"])
@login_required
def restart_instance(instance_id: str):
    instance = get_services().instances.restart(instance_id, current_user())
    return jsonify({"ok": True, "instance": instance.to_dict()})


@api_lab_instances_bp.route("/lab-instances/<instance_id>/upgrade", methods=["POST"])
@login_required
def upgrade_instance(instance_id: str):
    """Move the instance to another version of its lab.

    Body: {"strategy": "IN_PLACE"|"RESET", "target_template_id"?: str, "to_version"?: str}
    """
    data = request.get_json(silent=True) or {}
    strategy = (data.get('strategy') or UpgradeStrategy.IN_PLACE).upper()
    if strategy not in UpgradeStrategy.ALL:
        return jsonify({"ok": False, "error": "strategy must be IN_PLACE or RESET"}), 400

    instance = get_services().instances.upgrade(
        instance_id,
        data.get('target_template_id'),
        strategy,
        current_user(),
        to_version=data.get('to_version'),
    )
    return jsonify({"ok": True, "instance": instance.to_dict()})


@api_lab_instances_bp.route("/lab-instances/<instance_id>", methods=["PATCH"])
@login_required
def update_instance(instance_id: str):
    data = request.get_json(silent=True) or {}

    progress = data.get('progress_percent')
    if progress is not None:
        try:
            progress = int(progress)
        except (TypeError, ValueError):
            return jsonify({"ok": False, "error": "progress_percent must be an integer"}), 400
    notes = data.get('notes')
    if notes is not None and not isinstance(notes, str):
        return jsonify({"ok": False, "error": "notes must be a string"}), 400

    instance = get_services().instances.update_instance(
        instance_id, current_user(), progress_percent=progress, notes=notes,
    )
    return jsonify({"ok": True, "instance": instance.to_dict()})

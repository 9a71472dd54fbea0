#!/usr/bin/env python3
"""
Admin API for authoring and publishing lab templates.
"""

import logging

from flask import Blueprint, jsonify, request

from cyberrange.services import get_services
from cyberrange.utils.decorators import admin_required, current_user

logger = logging.getLogger(__name__)

admin_labs_bp = Blueprint('admin_labs', __name__, url_prefix='/api/admin')


@admin_labs_bp.route("/labs", methods=["POST"])
@admin_required
def create_lab():
    data = request.get_json(silent=True) or {}
    if not data.get('title'):
        return jsonify({"ok": False, "error": "title is required"}), 400

    template = get_services().templates.create(data, current_user().id)
    return jsonify({"ok": True, "lab": template.to_dict()}), 201


@admin_labs_bp.route("/labs/<template_id>", methods=["PATCH"])
@admin_required
def update_lab(template_id: str):
    templates = get_services().templates
    template = templates.find_or_fail(template_id)
    template = templates.update(template, request.get_json(silent=True) or {}, current_user().id)
    return jsonify({"ok": True, "lab": template.to_dict()})


@admin_labs_bp.route("/labs/<template_id>/publish", methods=["POST"])
@admin_required
def publish_lab(template_id: str):
    """Publish a template as a new version. Body: {"version": str, "notes"?: str}"""
    data = request.get_json(silent=True) or {}
    version = (data.get('version') or '').strip()
    if not version:
        return jsonify({"ok": False, "error": "version is required"}), 400

    templates = get_services().templates
    template = templates.find_or_fail(template_id)
    published = templates.publish(template, version, data.get('notes') or '', current_user().id)
    return jsonify({"ok": True, "lab": published.to_dict()}), 201


@admin_labs_bp.route("/labs/<template_id>/archive", methods=["POST"])
@admin_required
def archive_lab(template_id: str):
    templates = get_services().templates
    template = templates.archive(templates.find_or_fail(template_id), current_user().id)
    return jsonify({"ok": True, "lab": template.to_dict()})


@admin_labs_bp.route("/labs/<template_id>/versions", methods=["GET"])
@admin_required
def list_lab_versions(template_id: str):
    templates = get_services().templates
    template = templates.find_or_fail(template_id)
    return jsonify({
        "ok": True,
        "versions": [row.to_dict() for row in templates.list_family(template.template_family)],
    })

#!/usr/bin/env python3
"""
Lab catalog API: published templates a learner can browse and activate.
"""

import logging

from flask import Blueprint, jsonify, request

from cyberrange.services import get_services
from cyberrange.utils.decorators import current_user, login_required

logger = logging.getLogger(__name__)

api_labs_bp = Blueprint('api_labs', __name__, url_prefix='/api')


@api_labs_bp.route("/labs", methods=["GET"])
@login_required
def list_labs():
    """Catalog of the latest published version of every lab."""
    pagination = get_services().templates.list_published(
        page=request.args.get('page', 1, type=int),
        per_page=min(request.args.get('per_page', 15, type=int), 100),
        search=request.args.get('search'),
        category=request.args.get('category'),
        difficulty=request.args.get('difficulty'),
        sort=request.args.get('sort', 'newest'),
    )
    return jsonify({
        "ok": True,
        "labs": [template.to_dict() for template in pagination.items],
        "page": pagination.page,
        "per_page": pagination.per_page,
        "total": pagination.total,
    })


@api_labs_bp.route("/labs/<template_ref>", methods=["GET"])
@login_required
def get_lab(template_ref: str):
    """Lab detail, including the caller's instance of this lab if any."""
    services = get_services()
    template = services.templates.find_published_for_catalog_or_fail(template_ref)
    instance = services.instances.find_for_family(current_user(), template.template_family)

    return jsonify({
        "ok": True,
        "lab": template.to_dict(),
        "instance": instance.to_dict() if instance else None,
    })


@api_labs_bp.route("/labs/<template_ref>/activate", methods=["POST"])
@login_required
def activate_lab(template_ref: str):
    """Start (or resume) the caller's instance of a lab."""
    data = request.get_json(silent=True) or {}
    instance = get_services().instances.activate(
        template_ref,
        current_user(),
        pin_version=data.get('pin_version'),
    )
    return jsonify({"ok": True, "instance": instance.to_dict()})

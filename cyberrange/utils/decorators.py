#!/usr/bin/env python3
"""
Authentication and authorization decorators.

Identity comes from the platform's auth layer through ``session["user_id"]``.
The ``X-User-Id`` header is honoured only when CYBERRANGE_TRUST_USER_HEADER
is set, for deployments behind a gateway that sets it.
"""

from functools import wraps

from flask import current_app, jsonify, request, session


def current_user():
    """Returns the authenticated User row, or None."""
    from cyberrange.models import User, db

    user_id = session.get("user_id")
    if not user_id and current_app.extensions['cyberrange'].config.trust_user_header:
        user_id = request.headers.get("X-User-Id")
    if not user_id:
        return None
    return db.session.get(User, user_id)


def login_required(f):
    """Decorator that ensures the caller is authenticated."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        if current_user() is None:
            return jsonify({"ok": False, "error": "Authentication required", "code": "UNAUTHENTICATED"}), 401
        return f(*args, **kwargs)
    return wrapper


def admin_required(f):
    """Decorator that ensures the caller is authenticated and is an admin."""
    @wraps(f)
    @login_required
    def wrapper(*args, **kwargs):
        if not current_user().is_admin:
            return jsonify({"ok": False, "error": "Admin access required", "code": "FORBIDDEN"}), 403
        return f(*args, **kwargs)
    return wrapper

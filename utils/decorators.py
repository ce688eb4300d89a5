"""Authorization decorators for administrator endpoints."""
from functools import wraps

from flask import abort, jsonify, request
from flask_login import current_user, login_required

from utils.audit import record_denial


def superadmin_required(view_func):
    @wraps(view_func)
    @login_required
    def wrapped(*args, **kwargs):
        if current_user.is_superadmin:
            return view_func(*args, **kwargs)
        record_denial(current_user, request.endpoint or request.path, "Other", None)
        abort(403)

    return wrapped


def password_change_required(view_func):
    """Accounts provisioned with a temporary password may only change it until they do."""

    @wraps(view_func)
    @login_required
    def wrapped(*args, **kwargs):
        if not current_user.password_changed:
            return jsonify({"ok": False, "error": "Password change required"}), 403
        return view_func(*args, **kwargs)

    return wrapped

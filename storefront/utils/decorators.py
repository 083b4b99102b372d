# storefront/utils/decorators.py
import uuid
from functools import wraps

from flask import g, jsonify, request
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request

from ..context import ADMIN, RequestContext
from ..extensions import db
from ..model.user import User
from .api import api_error


def _current_user():
    verify_jwt_in_request()
    uid = get_jwt_identity()
    try:
        uid = int(uid)
    except (TypeError, ValueError):
        uid = None
    return db.session.get(User, uid) if uid else None


def _request_id():
    rid = getattr(g, "request_id", None)
    if not rid:
        rid = (request.headers.get("X-Request-Id") or "").strip()[:64] or uuid.uuid4().hex
        g.request_id = rid
    return rid


def current_context() -> RequestContext:
    """The RequestContext built by login_required / role_required for this request."""
    return g.ctx


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        u = _current_user()
        if not u:
            return jsonify(api_error("Unauthorized")), 401
        g.ctx = RequestContext(user_id=u.id, role=u.role, request_id=_request_id())
        return fn(*args, **kwargs)
    return wrapper


def role_required(*roles, message: str | None = None):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            u = _current_user()
            if not u:
                return jsonify(api_error("Unauthorized")), 401
            if u.role not in roles:
                return jsonify(api_error(message or "Forbidden")), 403
            g.ctx = RequestContext(user_id=u.id, role=u.role, request_id=_request_id())
            return fn(*args, **kwargs)
        return wrapper
    return decorator


admin_required = role_required(ADMIN, message="Admin access required")

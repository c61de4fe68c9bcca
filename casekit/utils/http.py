"""
Small helpers shared by the JSON blueprints
"""
from typing import Optional

from flask import abort, current_app, jsonify, make_response
from sqlalchemy.exc import SQLAlchemyError

from casekit import db


def json_error(message: str, status: int = 400, **extra):
    return jsonify({"ok": False, "error": message, **extra}), status


def load_or_404(model, obj_id, label: str):
    obj = db.session.get(model, obj_id)
    if obj is None:
        abort(make_response(jsonify({"ok": False, "error": f"{label} not found"}), 404))
    return obj


def commit_or_error(action: str):
    """Commit the session; on failure roll back and return an error response."""
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Could not %s", action)
        return json_error(f"Could not {action}", 500)
    return None


def parse_enum(enum_cls, raw, field: str, default=None):
    """Map a request value onto ``enum_cls``; ValueError names the field."""
    if raw is None or str(raw).strip() == "":
        if default is not None:
            return default
        raise ValueError(f"Missing {field}")
    value = str(raw).strip().lower()
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValueError(f"Invalid {field}: {raw} (expected one of: {allowed})")


def parse_int(raw, field: str, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {field}: {raw}")
    if minimum is not None and value < minimum:
        raise ValueError(f"{field} must be at least {minimum}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{field} must be at most {maximum}")
    return value

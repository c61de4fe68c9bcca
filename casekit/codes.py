"""
Activation codes - batch generation, listing and CSV export
"""
import csv
import io
import random
from datetime import datetime, timezone

from flask import Blueprint, Response, current_app, jsonify, request
from flask_login import login_required
from sqlalchemy import or_

from casekit import db
from casekit.auth import log_audit_event
from casekit.models import Case, Code, CodeStatus
from casekit.utils.http import commit_or_error, json_error, load_or_404, parse_enum, parse_int

codes_bp = Blueprint('codes', __name__)

MAX_BATCH = 500
CSV_HEADER = ["ID", "Code", "Case", "Status", "Created at", "Used at"]
LETTERS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def make_code(prefix: str, rng=random) -> str:
    return f"{prefix}-{rng.randint(1000, 9999)}-{rng.choice(LETTERS)}"


def generate_unique_codes(prefix: str, quantity: int, rng=random) -> list:
    """Draw ``quantity`` codes unique within the batch and against the table."""
    codes = []
    seen = set()
    # 9000 numbers x 26 letters per prefix
    if quantity > 9000 * 26 - Code.query.filter(Code.code.like(f"{prefix}-%")).count():
        raise ValueError("Code space exhausted for this prefix")
    while len(codes) < quantity:
        candidates = []
        while len(candidates) < quantity - len(codes):
            code = make_code(prefix, rng)
            if code not in seen:
                seen.add(code)
                candidates.append(code)
        taken = {
            row.code for row in Code.query.with_entities(Code.code).filter(Code.code.in_(candidates)).all()
        }
        codes.extend(c for c in candidates if c not in taken)
    return codes


def filtered_codes():
    search = (request.args.get("search") or "").strip()
    status = (request.args.get("status") or "all").strip().lower()

    query = Code.query
    if search:
        like = f"%{search}%"
        query = query.filter(or_(Code.code.ilike(like), Code.case_name.ilike(like)))
    if status and status != "all":
        query = query.filter(Code.status == parse_enum(CodeStatus, status, "status"))
    return query.order_by(Code.created_at.desc(), Code.id.desc()).all()


def codes_csv(codes) -> str:
    """CSV of ``codes``; text fields, the case name included, are quoted."""
    output = io.StringIO()
    csv.writer(output, lineterminator="\n").writerow(CSV_HEADER)
    writer = csv.writer(output, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    writer.writerows(code.csv_row() for code in codes)
    return output.getvalue()


@codes_bp.route("/codes", methods=["GET"])
@login_required
def list_codes():
    try:
        codes = filtered_codes()
    except ValueError as e:
        return json_error(str(e), 400)
    return jsonify({"ok": True, "codes": [c.to_dict() for c in codes]}), 200


@codes_bp.route("/codes/generate", methods=["POST"])
@login_required
def generate_codes():
    payload = request.get_json(silent=True) or {}
    try:
        quantity = parse_int(payload.get("quantity"), "quantity", minimum=1, maximum=MAX_BATCH)
    except ValueError as e:
        return json_error(str(e), 400)
    if payload.get("case_id") in (None, ""):
        return json_error("Select a case", 400)
    try:
        case_id = int(payload.get("case_id"))
    except (TypeError, ValueError):
        return json_error(f"Invalid case_id: {payload.get('case_id')}", 400)
    case = load_or_404(Case, case_id, "Case")

    prefix = (current_app.config.get("CODE_PREFIX") or "NEW").strip().upper()
    try:
        values = generate_unique_codes(prefix, quantity)
    except ValueError as e:
        return json_error(str(e), 409)

    codes = [Code(code=value, case_id=case.id, case_name=case.title, status=CodeStatus.ACTIVE) for value in values]
    db.session.add_all(codes)
    err = commit_or_error("generate codes")
    if err:
        return err

    current_app.logger.info("Generated %d codes for case_id=%s", len(codes), case.id)
    log_audit_event("codes_generated", f"{len(codes)} codes generated for case {case.id} ({case.title})")
    return jsonify({
        "ok": True,
        "message": f"{len(codes)} codes generated successfully!",
        "codes": [c.to_dict() for c in codes],
    }), 201


@codes_bp.route("/codes/export", methods=["GET"])
@login_required
def export_codes():
    try:
        codes = filtered_codes()
    except ValueError as e:
        return json_error(str(e), 400)
    if not codes:
        return json_error("No codes to export", 400)

    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return Response(
        codes_csv(codes),
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="codes_{day}.csv"'},
    )


@codes_bp.route("/codes/<int:code_id>/status", methods=["POST", "PUT"])
@login_required
def update_code_status(code_id):
    code = load_or_404(Code, code_id, "Code")
    payload = request.get_json(silent=True) or {}
    try:
        status = parse_enum(CodeStatus, payload.get("status"), "status")
    except ValueError as e:
        return json_error(str(e), 400)

    code.status = status
    if status == CodeStatus.USED:
        code.used_at = datetime.now(timezone.utc)
    err = commit_or_error("update code")
    if err:
        return err
    return jsonify({"ok": True, "code": code.to_dict()}), 200

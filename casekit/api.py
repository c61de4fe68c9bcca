"""
API Blueprint - cases, documents (modules), preview, PDF export and text extraction

Every JSON response carries ``ok``; failures add an ``error`` message the
screens show as a toast.
"""
import io
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Any, Optional

from flask import Blueprint, current_app, jsonify, render_template, request, send_file
from flask_login import current_user, login_required
from sqlalchemy import or_

from casekit import db
from casekit.auth import log_audit_event
from casekit.content import ContentEnvelope, is_http_url
from casekit.models import (
    Case,
    CaseStatus,
    Code,
    ExtractionJob,
    JobStatus,
    Module,
    ModuleStatus,
    ModuleType,
    User,
)
from casekit.services.aws_service import StorageError, UnsupportedFileError, upload_case_file
from casekit.services.openai_service import AIServiceError, generate_case_documents
from casekit.services.pdf_service import (
    ExtractionError,
    export_filename,
    extract_text_from_url,
    image_to_pdf,
)
from casekit.services.render_service import RenderError, preview_context, render_raster
from casekit.utils.http import commit_or_error, json_error, load_or_404, parse_enum

api_bp = Blueprint('api', __name__)

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLE = "New Document"
UPLOAD_FIELDS = ("body", "logo")


# ============ Helper Functions ============

def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def envelope_from_payload(base: ContentEnvelope, value: Any) -> ContentEnvelope:
    """Apply editor state (dict of fields or a serialized envelope) over ``base``."""
    if value is None:
        return base
    if isinstance(value, dict):
        return base.merged(value)
    return ContentEnvelope.loads(str(value))


def apply_module_fields(module: Module, data: dict) -> None:
    if "title" in data:
        module.title = str(data.get("title") or "")
    if "type" in data:
        module.type = parse_enum(ModuleType, data.get("type"), "type")
    if "status" in data:
        module.status = parse_enum(ModuleStatus, data.get("status"), "status")
    if "description" in data:
        module.description = str(data.get("description") or "")
    if "content" in data:
        module.envelope = envelope_from_payload(module.envelope, data.get("content"))


def apply_case_fields(case: Case, data: dict) -> None:
    if "title" in data:
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValueError("Case title is required.")
        case.title = title
    if "theme" in data:
        case.theme = str(data.get("theme") or "").strip()
    if "status" in data:
        case.status = parse_enum(CaseStatus, data.get("status"), "status")
    if "age_rating" in data:
        case.age_rating = str(data.get("age_rating") or "").strip()
    if "complexity" in data:
        complexity = str(data.get("complexity") or "").strip().lower()
        if complexity not in ("easy", "medium", "hard"):
            raise ValueError(f"Invalid complexity: {data.get('complexity')}")
        case.complexity = complexity


# ============ Cases ============

@api_bp.route("/cases", methods=["GET"])
@login_required
def list_cases():
    search = (request.args.get("search") or "").strip()
    status = (request.args.get("status") or "all").strip().lower()

    query = Case.query
    if search:
        like = f"%{search}%"
        query = query.filter(or_(Case.title.ilike(like), Case.theme.ilike(like)))
    if status and status != "all":
        try:
            query = query.filter(Case.status == parse_enum(CaseStatus, status, "status"))
        except ValueError as e:
            return json_error(str(e), 400)
    cases = query.order_by(Case.created_at.desc(), Case.id.desc()).all()
    return jsonify({"ok": True, "cases": [c.to_dict() for c in cases]}), 200


@api_bp.route("/cases", methods=["POST"])
@login_required
def create_case():
    payload = request.get_json(silent=True) or {}
    if not str(payload.get("title") or "").strip():
        return json_error("Case title is required.", 400)

    case = Case()
    try:
        apply_case_fields(case, payload)
    except ValueError as e:
        return json_error(str(e), 400)
    db.session.add(case)
    err = commit_or_error("create case")
    if err:
        return err
    return jsonify({"ok": True, "message": "Case saved successfully!", "case": case.to_dict(with_modules=True)}), 201


@api_bp.route("/cases/<int:case_id>", methods=["GET"])
@login_required
def get_case(case_id):
    case = load_or_404(Case, case_id, "Case")
    return jsonify({"ok": True, "case": case.to_dict(with_modules=True)}), 200


@api_bp.route("/cases/<int:case_id>", methods=["PUT", "PATCH"])
@login_required
def update_case(case_id):
    case = load_or_404(Case, case_id, "Case")
    payload = request.get_json(silent=True) or {}
    try:
        apply_case_fields(case, payload)
    except ValueError as e:
        return json_error(str(e), 400)
    err = commit_or_error("save case")
    if err:
        return err
    return jsonify({"ok": True, "message": "Case saved successfully!", "case": case.to_dict()}), 200


@api_bp.route("/cases/<int:case_id>", methods=["DELETE"])
@login_required
def delete_case(case_id):
    case = load_or_404(Case, case_id, "Case")
    title = case.title
    module_ids = [m.id for m in case.modules]

    Code.query.filter_by(case_id=case.id).update({"case_id": None}, synchronize_session=False)
    if module_ids:
        ExtractionJob.query.filter(ExtractionJob.module_id.in_(module_ids)).update(
            {"module_id": None}, synchronize_session=False
        )
    db.session.delete(case)
    err = commit_or_error("archive case")
    if err:
        return err
    log_audit_event("case_deleted", f"Case {case_id} ({title}) deleted")
    return jsonify({"ok": True, "message": "Case archived successfully"}), 200


@api_bp.route("/cases/<int:case_id>/modules", methods=["POST"])
@login_required
def add_module(case_id):
    case = load_or_404(Case, case_id, "Case")
    payload = request.get_json(silent=True) or {}

    module = Module(
        case=case,
        title=PLACEHOLDER_TITLE,
        type=ModuleType.DOCUMENT,
        status=ModuleStatus.DRAFT,
        description="",
        position=case.next_position(),
    )
    module.envelope = ContentEnvelope()
    try:
        apply_module_fields(module, payload)
    except ValueError as e:
        return json_error(str(e), 400)
    db.session.add(module)
    err = commit_or_error("add document")
    if err:
        return err
    return jsonify({"ok": True, "module": module.to_dict()}), 201


@api_bp.route("/cases/<int:case_id>/generate", methods=["POST"])
@login_required
def generate_case(case_id):
    """Draft the case's documents with the model, replacing the current ones."""
    case = load_or_404(Case, case_id, "Case")
    if not (case.title or "").strip():
        return json_error("Set a case title before generating.", 400)
    payload = request.get_json(silent=True) or {}

    try:
        docs = generate_case_documents(case, payload.get("prompt") or "")
    except AIServiceError as e:
        current_app.logger.warning("Case draft failed case_id=%s: %s", case_id, e)
        return json_error(str(e), 502)

    replaced = [m.id for m in case.modules]
    if replaced:
        ExtractionJob.query.filter(ExtractionJob.module_id.in_(replaced)).update(
            {"module_id": None}, synchronize_session=False
        )
    case.modules.clear()
    for position, doc in enumerate(docs):
        module = Module(
            title=doc["title"],
            type=ModuleType.DOCUMENT,
            status=ModuleStatus.DRAFT,
            description=doc["summary"],
            position=position,
        )
        module.envelope = ContentEnvelope(body=doc["content"])
        case.modules.append(module)
    err = commit_or_error("save generated documents")
    if err:
        return err
    return jsonify({
        "ok": True,
        "message": "Story generated and split into documents!",
        "case": case.to_dict(with_modules=True),
        "categories": [d["category"] for d in docs],
    }), 200


# ============ Modules ============

@api_bp.route("/modules/<int:module_id>", methods=["GET"])
@login_required
def get_module(module_id):
    module = load_or_404(Module, module_id, "Document")
    return jsonify({"ok": True, "module": module.to_dict()}), 200


@api_bp.route("/modules/<int:module_id>", methods=["PUT", "PATCH"])
@login_required
def save_module(module_id):
    """Save editor state. No optimistic locking: the last write wins."""
    module = load_or_404(Module, module_id, "Document")
    payload = request.get_json(silent=True) or {}
    try:
        apply_module_fields(module, payload)
    except ValueError as e:
        return json_error(str(e), 400)
    err = commit_or_error("save document")
    if err:
        return err
    return jsonify({"ok": True, "message": "Document saved successfully!", "module": module.to_dict()}), 200


@api_bp.route("/modules/<int:module_id>", methods=["DELETE"])
@login_required
def delete_module(module_id):
    module = load_or_404(Module, module_id, "Document")
    ExtractionJob.query.filter_by(module_id=module.id).update({"module_id": None}, synchronize_session=False)
    db.session.delete(module)
    err = commit_or_error("delete document")
    if err:
        return err
    return jsonify({"ok": True, "message": "Document deleted"}), 200


@api_bp.route("/modules/<int:module_id>/move", methods=["POST"])
@login_required
def move_module(module_id):
    module = load_or_404(Module, module_id, "Document")
    direction = ((request.get_json(silent=True) or {}).get("direction") or "").strip().lower()
    if direction not in ("up", "down"):
        return json_error("direction must be 'up' or 'down'", 400)

    siblings = list(module.case.modules)
    idx = siblings.index(module)
    other = idx - 1 if direction == "up" else idx + 1
    if 0 <= other < len(siblings):
        siblings[idx], siblings[other] = siblings[other], siblings[idx]
        for position, item in enumerate(siblings):
            item.position = position
        err = commit_or_error("reorder documents")
        if err:
            return err
    return jsonify({"ok": True, "modules": [m.to_dict() for m in sorted(siblings, key=lambda m: m.position)]}), 200


@api_bp.route("/modules/<int:module_id>/upload", methods=["POST"])
@login_required
def upload_module_file(module_id):
    module = load_or_404(Module, module_id, "Document")
    file = request.files.get("file")
    if not file:
        return json_error("No file uploaded", 400)
    field = (request.form.get("field") or "body").strip().lower()
    if field not in UPLOAD_FIELDS:
        return json_error(f"field must be one of: {', '.join(UPLOAD_FIELDS)}", 400)

    try:
        url = upload_case_file(module.case_id, file.filename or "upload", file.read(), file.mimetype)
    except UnsupportedFileError as e:
        return json_error(str(e), 400)
    except StorageError as e:
        current_app.logger.error("Upload failed module_id=%s: %s", module_id, e)
        return json_error(str(e), 502)

    envelope = module.envelope
    setattr(envelope, field, url)
    module.envelope = envelope
    err = commit_or_error("save document")
    if err:
        return err
    return jsonify({"ok": True, "url": url, "module": module.to_dict()}), 200


@api_bp.app_errorhandler(413)
def too_large(_e):
    limit_mb = (current_app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
    return json_error(f"File too large (max {limit_mb} MB)", 413)


# ============ Preview & export ============

@api_bp.route("/modules/<int:module_id>/preview", methods=["GET"])
@login_required
def preview_module(module_id):
    module = load_or_404(Module, module_id, "Document")
    ctx = preview_context(module.title, module.type.value, module.envelope, module.status.value)
    return render_template("preview/module.html", **ctx)


@api_bp.route("/preview", methods=["POST"])
@login_required
def preview_draft():
    """Render unsaved editor state; called on every field change."""
    payload = request.get_json(silent=True) or {}
    envelope = envelope_from_payload(ContentEnvelope(), payload.get("content"))
    ctx = preview_context(
        str(payload.get("title") or ""),
        str(payload.get("type") or ModuleType.DOCUMENT.value),
        envelope,
        str(payload.get("status") or ""),
    )
    return render_template("preview/module.html", **ctx)


@api_bp.route("/modules/<int:module_id>/export_pdf", methods=["POST"])
@login_required
def export_module_pdf(module_id):
    module = load_or_404(Module, module_id, "Document")
    payload = request.get_json(silent=True) or {}

    title = str((payload["title"] if "title" in payload else module.title) or "")
    module_type = str(payload.get("type") or module.type.value)
    envelope = envelope_from_payload(module.envelope, payload.get("content"))

    cfg = current_app.config
    try:
        image = render_raster(
            title,
            module_type,
            envelope,
            scale=cfg.get("EXPORT_SCALE", 2),
            timeout=cfg.get("DOWNLOAD_TIMEOUT", 30),
        )
        pdf_bytes = image_to_pdf(image, title=title)
    except RenderError as e:
        current_app.logger.exception("PDF export failed module_id=%s", module_id)
        return json_error(f"PDF export failed: {e}", 502)

    return send_file(
        io.BytesIO(pdf_bytes),
        as_attachment=True,
        download_name=export_filename(title),
        mimetype="application/pdf",
    )


# ============ Text extraction jobs ============

def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{os.urandom(4).hex()}"


def set_job(job_id: str, **updates: Any) -> None:
    job = db.session.get(ExtractionJob, job_id)
    if job is None:
        return
    job.update_from_dict(updates)
    db.session.commit()


def job_is_stale(job: ExtractionJob) -> bool:
    if job.status != JobStatus.PROCESSING.value:
        return False
    hb = as_utc(job.heartbeat_at or job.updated_at or job.created_at)
    if hb is None:
        return False
    limit = current_app.config.get("EXTRACTION_STALE_SECONDS", 300)
    return (now_utc() - hb).total_seconds() > limit


def expire_if_stale(job: ExtractionJob, commit: bool = True) -> ExtractionJob:
    if job_is_stale(job):
        job.update_from_dict({"status": JobStatus.ERROR.value, "error": "Extraction timed out"})
        if commit:
            db.session.commit()
    return job


def lock_user_row(user_id: int) -> None:
    """Lock the user row until commit; serializes job starts per user (no-op on SQLite)."""
    db.session.query(User.id).filter(User.id == user_id).with_for_update().first()


def active_job_for(user_id: int) -> Optional[ExtractionJob]:
    """The user's running job, if any. Stale jobs are failed but not committed."""
    running = ExtractionJob.query.filter_by(user_id=user_id, status=JobStatus.PROCESSING.value).all()
    for job in running:
        if expire_if_stale(job, commit=False).status == JobStatus.PROCESSING.value:
            return job
    return None


def run_extraction_job(app, job_id: str, url: str) -> None:
    with app.app_context():
        cfg = app.config
        last = {"progress": -1}

        def on_progress(value: int) -> None:
            if value == last["progress"]:
                return
            last["progress"] = value
            set_job(job_id, progress=value, stage_label="Extracting text...")

        try:
            result = extract_text_from_url(
                url,
                timeout=cfg.get("DOWNLOAD_TIMEOUT", 30),
                min_length=cfg.get("EXTRACTION_MIN_TEXT_LENGTH", 50),
                lang=cfg.get("OCR_LANGUAGE", "eng"),
                on_progress=on_progress,
            )
        except ExtractionError as e:
            logger.warning("Extraction failed job_id=%s: %s", job_id, e)
            set_job(job_id, status=JobStatus.ERROR.value, error=str(e), stage_label="Failed")
            return
        except Exception as e:
            logger.exception("Extraction crashed job_id=%s", job_id)
            set_job(job_id, status=JobStatus.ERROR.value, error=f"Extraction failed: {e}", stage_label="Failed")
            return

        logger.info("Extraction complete job_id=%s method=%s chars=%d", job_id, result.method, len(result.text))
        set_job(
            job_id,
            status=JobStatus.COMPLETE.value,
            progress=100,
            stage_label="Complete",
            method=result.method,
            text=result.text,
        )


@api_bp.route("/extract_start", methods=["POST"])
@login_required
def extract_start():
    payload = request.get_json(silent=True) or {}
    url = str(payload.get("url") or "").strip()
    module_id = payload.get("module_id")

    module = None
    if module_id is not None:
        try:
            module_id = int(module_id)
        except (TypeError, ValueError):
            return json_error(f"Invalid module_id: {module_id}", 400)
        module = load_or_404(Module, module_id, "Document")
        if not url:
            url = module.envelope.body.strip()
    if not is_http_url(url):
        return json_error("No file URL to extract text from", 400)

    lock_user_row(current_user.id)
    active = active_job_for(current_user.id)
    if active is not None:
        db.session.commit()
        return json_error("An extraction is already running", 409, job_id=active.id)

    job = ExtractionJob(
        id=new_job_id(),
        user_id=current_user.id,
        module_id=module.id if module else None,
        source_url=url,
        status=JobStatus.PROCESSING.value,
        stage_label="Downloading file...",
        progress=0,
    )
    db.session.add(job)
    err = commit_or_error("start extraction")
    if err:
        return err

    app = current_app._get_current_object()
    if app.config.get("EXTRACTION_INLINE"):
        run_extraction_job(app, job.id, url)
    else:
        t = threading.Thread(target=run_extraction_job, args=(app, job.id, url), daemon=True)
        t.start()

    return jsonify({"ok": True, "job_id": job.id}), 200


@api_bp.route("/extract_status", methods=["GET"])
@login_required
def extract_status():
    job_id = (request.args.get("job_id") or "").strip()
    if not job_id:
        return json_error("Missing job_id", 400)
    job = db.session.get(ExtractionJob, job_id)
    if job is None or job.user_id != current_user.id:
        return json_error("Unknown job_id", 404)
    db.session.refresh(job)
    expire_if_stale(job)
    return jsonify({"ok": True, **job.to_dict()}), 200

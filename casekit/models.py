"""
Database Models

Key Models:
- User: Admin account for the dashboard
- Case: One investigative game kit
- Module: Printable unit of a case (document page, envelope, map, lab report)
- Code: Activation code shipped inside a kit
- Agent: AI character players chat with
- ExtractionJob: Background text/OCR extraction with progress
- AuditLog: Admin action tracking
"""
from datetime import datetime, timezone
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
import enum
from casekit import db
from casekit.content import ContentEnvelope


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


def _day(value):
    return value.strftime("%Y-%m-%d") if value else ""


class CaseStatus(enum.Enum):
    EDITING = "editing"
    READY_TO_PRINT = "ready_to_print"
    DISTRIBUTED = "distributed"


class ModuleType(enum.Enum):
    DOCUMENT = "document"
    ENVELOPE = "envelope"
    MAP = "map"
    LAB = "lab"


class ModuleStatus(enum.Enum):
    DRAFT = "draft"
    READY = "ready"
    INCOMPLETE = "incomplete"


class CodeStatus(enum.Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class AgentType(enum.Enum):
    DETECTIVE = "detective"
    LAB = "lab"
    ARCHIVIST = "archivist"


class AgentStatus(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    LEARNING = "learning"


class JobStatus(enum.Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(200))
    password_hash = db.Column(db.String(255), nullable=False)
    active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    last_login_at = db.Column(db.DateTime(timezone=True))

    @property
    def is_active(self):
        return bool(self.active)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {'id': self.id, 'email': self.email, 'name': self.name or ''}


class Case(db.Model):
    __tablename__ = 'cases'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    theme = db.Column(db.String(100), default='mystery')
    status = db.Column(db.Enum(CaseStatus), default=CaseStatus.EDITING, nullable=False)
    age_rating = db.Column(db.String(10), default='14')
    complexity = db.Column(db.String(20), default='medium')
    copies_sold = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)

    modules = db.relationship(
        'Module',
        back_populates='case',
        order_by='Module.position',
        cascade='all, delete-orphan',
    )

    def next_position(self):
        return max((m.position or 0 for m in self.modules), default=-1) + 1

    def to_dict(self, with_modules=False):
        result = {
            'id': self.id,
            'title': self.title,
            'theme': self.theme or '',
            'status': self.status.value if self.status else CaseStatus.EDITING.value,
            'age_rating': self.age_rating or '',
            'complexity': self.complexity or '',
            'copies_sold': self.copies_sold or 0,
            'created_at': _iso(self.created_at),
            'module_count': len(self.modules),
        }
        if with_modules:
            result['modules'] = [m.to_dict() for m in self.modules]
        return result


class Module(db.Model):
    """
    One printable unit of a case kit.

    ``content`` holds the serialized content envelope (see casekit.content).
    Rows are edited in place; the last write wins.
    """
    __tablename__ = 'modules'

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.Integer, db.ForeignKey('cases.id'), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False, default='')
    type = db.Column(db.Enum(ModuleType), default=ModuleType.DOCUMENT, nullable=False)
    status = db.Column(db.Enum(ModuleStatus), default=ModuleStatus.DRAFT, nullable=False)
    description = db.Column(db.Text, default='')
    position = db.Column(db.Integer, default=0)
    content = db.Column(db.Text, default='')
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    case = db.relationship('Case', back_populates='modules')

    @property
    def envelope(self):
        return ContentEnvelope.loads(self.content)

    @envelope.setter
    def envelope(self, value):
        self.content = value.dumps()

    def to_dict(self):
        return {
            'id': self.id,
            'case_id': self.case_id,
            'title': self.title or '',
            'type': self.type.value if self.type else ModuleType.DOCUMENT.value,
            'status': self.status.value if self.status else ModuleStatus.DRAFT.value,
            'description': self.description or '',
            'position': self.position or 0,
            'content': self.envelope.to_dict(),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Code(db.Model):
    __tablename__ = 'codes'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), unique=True, nullable=False, index=True)
    case_id = db.Column(db.Integer, db.ForeignKey('cases.id', ondelete='SET NULL'), nullable=True)
    case_name = db.Column(db.String(255), default='')
    status = db.Column(db.Enum(CodeStatus), default=CodeStatus.ACTIVE, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)
    used_at = db.Column(db.DateTime(timezone=True))

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'case_id': self.case_id,
            'case_name': self.case_name or '',
            'status': self.status.value,
            'created_at': _day(self.created_at),
            'used_at': _day(self.used_at) or None,
        }

    def csv_row(self):
        return [
            self.id,
            self.code,
            self.case_name or '',
            self.status.value,
            _day(self.created_at),
            _day(self.used_at),
        ]


class Agent(db.Model):
    __tablename__ = 'agents'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    type = db.Column(db.Enum(AgentType), default=AgentType.DETECTIVE, nullable=False)
    status = db.Column(db.Enum(AgentStatus), default=AgentStatus.INACTIVE, nullable=False)
    model = db.Column(db.String(100), default='')
    system_prompt = db.Column(db.Text, default='')
    message_limit = db.Column(db.Integer, default=50)
    typing_delay_ms = db.Column(db.Integer, default=1500)
    hints = db.Column(db.JSON, default=list)
    last_interaction = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type.value,
            'status': self.status.value,
            'model': self.model or '',
            'system_prompt': self.system_prompt or '',
            'message_limit': self.message_limit,
            'typing_delay_ms': self.typing_delay_ms,
            'hints': list(self.hints or []),
            'last_interaction': _iso(self.last_interaction),
        }


class ExtractionJob(db.Model):
    """
    Text/OCR extraction for a remote file, run in a worker thread.

    The UI polls the row for progress; one processing job per user at a time.
    """
    __tablename__ = 'extraction_jobs'

    id = db.Column(db.String(100), primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    module_id = db.Column(db.Integer, db.ForeignKey('modules.id', ondelete='SET NULL'), nullable=True)
    source_url = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(20), default=JobStatus.PROCESSING.value, index=True)
    stage_label = db.Column(db.String(100))
    progress = db.Column(db.Integer, default=0)  # 0-100
    error = db.Column(db.Text)
    method = db.Column(db.String(20))  # text_layer or ocr
    text = db.Column(db.Text)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    heartbeat_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            'job_id': self.id,
            'module_id': self.module_id,
            'source_url': self.source_url,
            'status': self.status,
            'stage_label': self.stage_label or '',
            'progress': self.progress or 0,
            'error': self.error,
            'method': self.method,
            'text': self.text,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def update_from_dict(self, data):
        """Update job from dictionary (used by set_job)"""
        for key in ('status', 'stage_label', 'progress', 'error', 'method', 'text'):
            if key in data:
                setattr(self, key, data[key])
        self.heartbeat_at = _utcnow()


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    event_type = db.Column(db.String(100), nullable=False)
    event_description = db.Column(db.Text)
    ip_address = db.Column(db.String(45))
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

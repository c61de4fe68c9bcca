"""
Database Model Tests
"""
from casekit import db
from casekit.content import ContentEnvelope
from casekit.models import (
    Agent,
    AgentStatus,
    Case,
    CaseStatus,
    Code,
    CodeStatus,
    ExtractionJob,
    Module,
    ModuleType,
    User,
)


class TestUser:
    """Test User model"""

    def test_password(self, app):
        user = User(email='a@b.test')
        user.set_password('secret123')
        assert user.password_hash != 'secret123'
        assert user.check_password('secret123')
        assert not user.check_password('wrong')

    def test_inactive_user(self, app):
        assert User(email='a@b.test', active=False).is_active is False


class TestCase:
    """Test Case model"""

    def test_defaults(self, app):
        case = Case(title='Harbour Heist')
        db.session.add(case)
        db.session.commit()

        assert case.status == CaseStatus.EDITING
        assert case.copies_sold == 0
        assert case.to_dict()['module_count'] == 0

    def test_modules_are_ordered(self, app):
        case = Case(title='Harbour Heist')
        case.modules.append(Module(title='Second', position=1, content=''))
        case.modules.append(Module(title='First', position=0, content=''))
        db.session.add(case)
        db.session.commit()
        db.session.expire_all()

        case = db.session.get(Case, case.id)
        assert [m.title for m in case.modules] == ['First', 'Second']
        assert case.next_position() == 2

    def test_delete_cascades_to_modules(self, app, sample_case):
        case_id = sample_case.id
        db.session.delete(sample_case)
        db.session.commit()
        assert Module.query.filter_by(case_id=case_id).count() == 0


class TestModule:
    """Test Module model"""

    def test_envelope_round_trip(self, app, sample_case):
        module = sample_case.modules[0]
        assert module.envelope.header == 'City Police'

        module.envelope = module.envelope.merged({'signature': 'Sgt. Holt'})
        db.session.commit()
        db.session.expire_all()

        module = db.session.get(Module, module.id)
        assert module.envelope.signature == 'Sgt. Holt'
        assert module.to_dict()['content']['signature'] == 'Sgt. Holt'

    def test_legacy_text_content(self, app, sample_case):
        module = Module(case=sample_case, title='Old', type=ModuleType.MAP, content='Plain old text')
        db.session.add(module)
        db.session.commit()
        assert module.envelope == ContentEnvelope(body='Plain old text')


class TestCode:
    """Test Code model"""

    def test_csv_row(self, app):
        code = Code(code='NEW-1000-Z', case_name='Lighthouse', status=CodeStatus.USED)
        db.session.add(code)
        db.session.commit()

        row = code.csv_row()
        assert row[1:4] == ['NEW-1000-Z', 'Lighthouse', 'used']
        assert len(row[4]) == 10
        assert row[5] == ''


class TestAgent:
    """Test Agent model"""

    def test_defaults(self, app):
        agent = Agent(name='Archivist')
        db.session.add(agent)
        db.session.commit()

        data = agent.to_dict()
        assert agent.status == AgentStatus.INACTIVE
        assert data['message_limit'] == 50
        assert data['typing_delay_ms'] == 1500
        assert data['last_interaction'] is None


class TestExtractionJob:
    """Test ExtractionJob model"""

    def test_update_from_dict(self, app):
        job = ExtractionJob(id='job_1', source_url='https://x.test/a.pdf')
        db.session.add(job)
        db.session.commit()
        before = job.heartbeat_at

        job.update_from_dict({'progress': 40, 'stage_label': 'Extracting text...', 'unknown': 'ignored'})
        db.session.commit()

        data = job.to_dict()
        assert data['job_id'] == 'job_1'
        assert data['status'] == 'processing'
        assert data['progress'] == 40
        assert job.heartbeat_at >= before

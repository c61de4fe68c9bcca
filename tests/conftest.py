"""
Test Configuration and Fixtures
"""
import io

import pytest
from PIL import Image
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from casekit import create_app, db
from casekit.content import ContentEnvelope
from casekit.models import Case, Module, ModuleStatus, ModuleType, User


@pytest.fixture(scope='session')
def app():
    """Create application for testing"""
    app = create_app('testing')

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(autouse=True)
def clean_tables(app):
    """Empty every table after each test"""
    # Fresh app context per test so flask.g (e.g. Flask-Login's cached user)
    # does not leak between tests through the session-wide context.
    with app.app_context():
        yield
        db.session.rollback()
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        db.session.expunge_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture(scope='function')
def test_user(app):
    """Create admin user"""
    user = User(email='admin@casekit.test', name='Admin', active=True)
    user.set_password('testpassword123')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def authenticated_client(client, test_user):
    """Create authenticated test client"""
    client.post('/login', data={
        'email': 'admin@casekit.test',
        'password': 'testpassword123'
    })
    return client


@pytest.fixture(scope='function')
def sample_case(app):
    """Case with two documents"""
    case = Case(title='The Lighthouse Murder', theme='noir', age_rating='16', complexity='hard')
    first = Module(title='Police Report', type=ModuleType.DOCUMENT, status=ModuleStatus.READY, position=0)
    first.envelope = ContentEnvelope(body='Victim found at 23:40.', header='City Police', stamp='confidential')
    second = Module(title='Sealed Letter', type=ModuleType.ENVELOPE, status=ModuleStatus.DRAFT, position=1)
    second.envelope = ContentEnvelope(body='Open only after chapter two.')
    case.modules.extend([first, second])
    db.session.add(case)
    db.session.commit()
    return case


def make_pdf(pages):
    """PDF bytes with one text block per page; an empty string leaves the page blank"""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    for text in pages:
        if text:
            c.drawString(72, 760, text)
        c.showPage()
    c.save()
    return buf.getvalue()


def make_png(size=(40, 30), color='white'):
    buf = io.BytesIO()
    Image.new('RGB', size, color).save(buf, format='PNG')
    return buf.getvalue()


@pytest.fixture
def pdf_factory():
    return make_pdf


@pytest.fixture
def png_factory():
    return make_png

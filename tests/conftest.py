"""Shared pytest fixtures for Audit Issue Tracker tests."""
from datetime import date, timedelta

import pytest

import app as app_module
from database import AuditIssueDatabase
from notifications import MailError

AUDITOR = 'auditor@example.com'
PR = 'pr@example.com'
APPROVER = 'approver@example.com'
CXO = 'cxo@example.com'


class FakeMailer:
    """Records messages instead of sending them."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, html_body, cc=None):
        if self.fail:
            raise MailError('mail service unavailable')
        if not to:
            return False
        self.sent.append({'to': list(to), 'cc': list(cc or []), 'subject': subject, 'html': html_body})
        return True

    def subjects(self):
        return [m['subject'] for m in self.sent]


@pytest.fixture(autouse=True)
def mail_env(monkeypatch):
    """Known auditor list and default domain; Graph never configured."""
    monkeypatch.setenv('AUDITOR_EMAILS', f'{AUDITOR}; lead.auditor@example.com')
    monkeypatch.setenv('DEFAULT_EMAIL_DOMAIN', 'example.com')
    monkeypatch.setenv('APP_NAME', 'Audit Tracker')
    for name in ('GRAPH_TENANT_ID', 'GRAPH_CLIENT_ID', 'GRAPH_CLIENT_SECRET', 'GRAPH_SENDER'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app_module.app.config['TESTING'] = True
    return app_module.app


@pytest.fixture
def test_db(tmp_path):
    """Create a temporary test database with fresh schema."""
    db_path = tmp_path / "test.db"
    return AuditIssueDatabase(str(db_path))


@pytest.fixture
def fake_mailer():
    return FakeMailer()


@pytest.fixture
def client(app, test_db, fake_mailer, tmp_path):
    """Create test client with isolated database, uploads and mail."""
    uploads_dir = tmp_path / 'uploads'
    uploads_dir.mkdir(exist_ok=True)
    original_config = {k: app.config[k] for k in ('UPLOAD_FOLDER', 'FRONTEND_DIST')}
    app.config['UPLOAD_FOLDER'] = str(uploads_dir)
    app.config['FRONTEND_DIST'] = str(tmp_path / 'dist')

    original_db, original_mailer = app_module.db, app_module.mailer
    app_module.db = test_db
    app_module.mailer = fake_mailer

    with app.test_client() as client:
        yield client

    app_module.db = original_db
    app_module.mailer = original_mailer
    app.config.update(original_config)


def issue_record(**overrides):
    """A valid API-shaped issue record."""
    record = {
        'fiscalYear': 'FY2025',
        'process': 'Procure to Pay',
        'entityCovered': 'Plant A; Plant B',
        'observation': 'POs raised after invoice',
        'riskLevel': 'high',
        'recommendation': 'Enforce PO before invoice',
        'personResponsible': [PR],
        'approver': [APPROVER],
        'cxoResponsible': [CXO],
        'timeline': (date.today() + timedelta(days=10)).isoformat(),
        'currentStatus': 'To Be Received',
    }
    record.update(overrides)
    return record


@pytest.fixture
def make_issue(test_db):
    """Factory creating issues in the test database."""
    def _make(**overrides):
        issue_id = test_db.create_issue(issue_record(**overrides))
        return test_db.get_issue(issue_id)
    return _make


@pytest.fixture
def sample_issue(make_issue):
    """Create a sample issue for testing."""
    return make_issue()


@pytest.fixture
def accepted_issue(test_db, make_issue):
    """An issue whose evidence has been accepted (locked)."""
    issue = make_issue(observation='Accepted finding')
    return test_db.review_issue(issue['id'], 'Accepted', 'Verified', AUDITOR)

"""Tests for the Graph mail client and email templates."""
import json

import httpx
import pytest

from notifications import (
    GraphMailer, LogMailer, MailError, build_mailer_from_env, changed_fields,
    edit_email, evidence_email, issue_caption, new_issue_email, notify,
    reminder_email, review_email, stakeholder_emails
)


class GraphStub:
    """httpx.MockTransport handler standing in for login.microsoftonline.com and Graph."""

    def __init__(self, token_status=200, send_status=202):
        self.token_status = token_status
        self.send_status = send_status
        self.token_requests = 0
        self.sent = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == 'login.microsoftonline.com':
            self.token_requests += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={'error': 'invalid_client'})
            return httpx.Response(200, json={'access_token': 'tok-123', 'expires_in': 3600})
        self.sent.append({
            'path': request.url.path,
            'auth': request.headers.get('Authorization'),
            'body': json.loads(request.content),
        })
        return httpx.Response(self.send_status)


def make_mailer(stub):
    return GraphMailer('tenant', 'client', 'secret', 'sender@example.com',
                       transport=httpx.MockTransport(stub))


ISSUE = {
    'serialNumber': 7,
    'process': 'Payroll',
    'entityCovered': 'Plant A',
    'observation': 'Ghost <employees>',
    'riskLevel': 'high',
    'timeline': '2025-03-31',
    'currentStatus': 'To Be Received',
    'personResponsible': ['pr@example.com'],
    'approver': ['approver@example.com', 'pr@example.com'],
    'cxoResponsible': ['cxo@example.com'],
}


class TestGraphMailer:
    """Token handling and sendMail payloads."""

    def test_send_payload(self):
        stub = GraphStub()
        mailer = make_mailer(stub)
        assert mailer.send(['A@example.com'], 'Hello', '<p>hi</p>', cc=['a@example.com', 'b@example.com'])
        sent = stub.sent[0]
        assert sent['path'] == '/v1.0/users/sender@example.com/sendMail'
        assert sent['auth'] == 'Bearer tok-123'
        message = sent['body']['message']
        assert message['subject'] == 'Hello'
        assert message['body'] == {'contentType': 'HTML', 'content': '<p>hi</p>'}
        assert message['toRecipients'] == [{'emailAddress': {'address': 'a@example.com'}}]
        assert message['ccRecipients'] == [{'emailAddress': {'address': 'b@example.com'}}]
        assert sent['body']['saveToSentItems'] is True

    def test_token_cached_between_sends(self):
        stub = GraphStub()
        mailer = make_mailer(stub)
        mailer.send(['a@example.com'], 'one', 'x')
        mailer.send(['a@example.com'], 'two', 'x')
        assert stub.token_requests == 1
        assert len(stub.sent) == 2

    def test_no_recipients_sends_nothing(self):
        stub = GraphStub()
        assert make_mailer(stub).send([], 'Hello', 'x') is False
        assert stub.token_requests == 0

    def test_send_failure_raises(self):
        with pytest.raises(MailError):
            make_mailer(GraphStub(send_status=500)).send(['a@example.com'], 'Hello', 'x')

    def test_token_failure_raises(self):
        with pytest.raises(MailError):
            make_mailer(GraphStub(token_status=401)).send(['a@example.com'], 'Hello', 'x')

    def test_notify_swallows_mail_error(self):
        mailer = make_mailer(GraphStub(send_status=503))
        assert notify(mailer, ['a@example.com'], ('Hello', 'x')) is False


class TestMailerFactory:
    """Mailer selection from the environment."""

    def test_log_mailer_without_config(self):
        mailer = build_mailer_from_env()
        assert isinstance(mailer, LogMailer)
        assert mailer.send(['a@example.com'], 'Hi', 'x') is True
        assert mailer.send([], 'Hi', 'x') is False

    def test_graph_mailer_with_config(self, monkeypatch):
        for name, value in [('GRAPH_TENANT_ID', 't'), ('GRAPH_CLIENT_ID', 'c'),
                            ('GRAPH_CLIENT_SECRET', 's'), ('GRAPH_SENDER', 'mail@example.com')]:
            monkeypatch.setenv(name, value)
        mailer = build_mailer_from_env(transport=httpx.MockTransport(GraphStub()))
        assert isinstance(mailer, GraphMailer)
        assert mailer.sender == 'mail@example.com'


class TestTemplates:
    """Subjects and bodies."""

    def test_caption(self):
        assert issue_caption(ISSUE) == '7 - Payroll / Plant A'

    def test_stakeholders_deduplicated(self):
        assert stakeholder_emails(ISSUE) == ['pr@example.com', 'approver@example.com', 'cxo@example.com']

    def test_new_issue_escapes_user_text(self):
        subject, body = new_issue_email(ISSUE)
        assert subject == 'Audit Tracker, New Audit Issue Created (7)'
        assert 'Ghost &lt;employees&gt;' in body
        assert '<employees>' not in body

    def test_evidence_mentions_comment(self):
        subject, body = evidence_email(ISSUE, 'pr@example.com', 2, 'see\nattached')
        assert subject == 'Audit Tracker, Evidence Uploaded (7)'
        assert 'uploaded 2 file(s) and added a comment' in body
        assert 'see<br/>attached' in body

    @pytest.mark.parametrize('status,phrase', [
        ('Accepted', 'was accepted'),
        ('Partially Accepted', 'Part of the evidence'),
        ('Insufficient', 'not sufficient'),
    ])
    def test_review_varies_by_status(self, status, phrase):
        subject, body = review_email(ISSUE, status, 'Looks fine')
        assert subject == f'Audit Tracker, {status} (7)'
        assert phrase in body
        assert 'Looks fine' in body

    def test_edit_diff(self):
        after = dict(ISSUE, observation='Changed', approver=['new@example.com'])
        assert [f for f, _, _ in changed_fields(ISSUE, after)] == ['observation', 'approver']
        subject, body = edit_email(ISSUE, after, 'auditor@example.com')
        assert subject == 'Audit Tracker, Issue Edited by Auditor (7)'
        assert 'new@example.com' in body

    def test_edit_without_changes(self):
        assert edit_email(ISSUE, dict(ISSUE), 'auditor@example.com') is None

    @pytest.mark.parametrize('days,suffix', [(1, 'due in 1 day)'), (3, 'due in 3 days)'), (0, 'due in 0 days)')])
    def test_reminder_subject(self, days, suffix):
        subject, _ = reminder_email(ISSUE, days)
        assert subject.endswith(suffix)

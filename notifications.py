"""
Email notifications for the Audit Issue Tracker.

Mail goes out through Microsoft Graph (client-credentials token, then
POST /users/{sender}/sendMail). When Graph is not configured a LogMailer
is used instead and messages are only logged, so development and tests
never need credentials.

Notification is best-effort: ``notify`` logs a failed send and returns
False, it never raises into the request that triggered it.
"""

import html
import logging
import os
import time
from typing import Dict, Iterable, List, Optional, Tuple

import httpx

from auth import unique_emails

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Refresh the token this many seconds before it expires
TOKEN_LEEWAY = 60


class MailError(Exception):
    """Raised when Graph rejects a token request or a send."""


def get_mail_config() -> Dict[str, str]:
    """Get mail configuration from environment variables."""
    return {
        'tenant_id': os.environ.get('GRAPH_TENANT_ID', ''),
        'client_id': os.environ.get('GRAPH_CLIENT_ID', ''),
        'client_secret': os.environ.get('GRAPH_CLIENT_SECRET', ''),
        'sender': os.environ.get('GRAPH_SENDER', ''),
        'app_name': os.environ.get('APP_NAME', 'Audit Issue Tracker'),
        'app_url': os.environ.get('APP_URL', 'http://localhost:5000'),
    }


def is_mail_configured() -> bool:
    config = get_mail_config()
    return all(config[k] for k in ('tenant_id', 'client_id', 'client_secret', 'sender'))


class GraphMailer:
    """Sends HTML mail as a fixed sender through Microsoft Graph."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str, sender: str,
                 timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.sender = sender
        self._client = httpx.Client(timeout=timeout, transport=transport)
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    def _get_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at - TOKEN_LEEWAY:
            return self._access_token
        try:
            response = self._client.post(
                TOKEN_URL.format(tenant_id=self.tenant_id),
                data={
                    'grant_type': 'client_credentials',
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                    'scope': GRAPH_SCOPE,
                },
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MailError(f"Token request failed: {e}") from e

        if 'access_token' not in payload:
            raise MailError("Token response had no access_token")
        self._access_token = payload['access_token']
        self._token_expires_at = time.monotonic() + int(payload.get('expires_in', 3600))
        return self._access_token

    def send(self, to: Iterable[str], subject: str, html_body: str,
             cc: Optional[Iterable[str]] = None) -> bool:
        """Send one message. Returns False when there is nobody to send to."""
        to_list = unique_emails(to or [])
        cc_list = [email for email in unique_emails(cc or []) if email not in to_list]
        if not to_list:
            logger.info(f"[Mail] No recipients for '{subject}', skipping")
            return False

        message = {
            'subject': subject,
            'body': {'contentType': 'HTML', 'content': html_body},
            'toRecipients': [{'emailAddress': {'address': a}} for a in to_list],
            'ccRecipients': [{'emailAddress': {'address': a}} for a in cc_list],
        }
        token = self._get_token()
        try:
            response = self._client.post(
                f"{GRAPH_URL}/users/{self.sender}/sendMail",
                json={'message': message, 'saveToSentItems': True},
                headers={'Authorization': f'Bearer {token}'},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise MailError(f"sendMail failed: {e}") from e

        logger.info(f"[Mail] Sent '{subject}' to {len(to_list)} recipient(s), cc {len(cc_list)}")
        return True

    def close(self):
        self._client.close()


class LogMailer:
    """Stand-in used when Graph is not configured. Logs instead of sending."""

    def send(self, to: Iterable[str], subject: str, html_body: str,
             cc: Optional[Iterable[str]] = None) -> bool:
        to_list = unique_emails(to or [])
        if not to_list:
            return False
        logger.info(f"[DEV MODE] Email would be sent to {', '.join(to_list)}: {subject}")
        logger.debug(f"[DEV MODE] cc: {', '.join(unique_emails(cc or []))}")
        return True


def build_mailer_from_env(transport: Optional[httpx.BaseTransport] = None):
    """GraphMailer when GRAPH_* settings are present, otherwise LogMailer."""
    if not is_mail_configured():
        logger.info("[Mail] Graph not configured, emails will be logged only")
        return LogMailer()
    config = get_mail_config()
    return GraphMailer(config['tenant_id'], config['client_id'], config['client_secret'],
                       config['sender'], transport=transport)


def notify(mailer, to: Iterable[str], message: Tuple[str, str],
           cc: Optional[Iterable[str]] = None) -> bool:
    """Best-effort send of a (subject, html) pair. Never raises MailError."""
    subject, html_body = message
    try:
        return mailer.send(list(to or []), subject, html_body, list(cc or []))
    except MailError as e:
        logger.warning(f"[Mail] '{subject}' failed: {e}")
        return False


# ==================== TEMPLATES ====================

def _multiline(text) -> str:
    return html.escape(str(text or '')).replace('\n', '<br/>')


def email_template(title: str, paragraphs: List[str], highlight: str = '',
                   footer_note: str = '') -> str:
    """Wrap paragraphs in the standard notification layout.

    Paragraphs and highlight are inserted as-is; escape user text first.
    """
    app_name = html.escape(get_mail_config()['app_name'])
    body = ''.join(f'<p style="margin:0 0 12px;">{p}</p>' for p in paragraphs)
    if highlight:
        body += (
            '<div style="font-size:15px;background:#f0f4ff;border:1px dashed #b9c7ff;'
            f'border-radius:8px;padding:12px 16px;margin-top:10px;">{highlight}</div>'
        )
    if footer_note:
        body += f'<p style="margin:14px 0 0;font-size:12px;color:#666;">{footer_note}</p>'
    return f"""
<div style="font-family:Arial,sans-serif;color:#333;line-height:1.45;background:#f6f7f9;padding:24px;">
  <div style="max-width:720px;margin:0 auto;background:#fff;border:1px solid #e6e8eb;border-radius:8px;">
    <div style="background:#0b5fff;color:#fff;padding:14px 18px;font-weight:600;">{html.escape(title)}</div>
    <div style="padding:20px;">
      {body}
      <p style="margin:18px 0 0;">Regards,<br/><b>Team {app_name}</b></p>
    </div>
  </div>
  <div style="max-width:720px;margin:10px auto 0;text-align:center;color:#99a1ab;font-size:12px;">
    This is an automated message from {app_name}.
  </div>
</div>"""


def issue_caption(issue: Dict) -> str:
    return f"{issue.get('serialNumber')} - {issue.get('process') or ''} / {issue.get('entityCovered') or ''}"


def stakeholder_emails(issue: Dict) -> List[str]:
    """Person responsible, approver and CXO addresses of an issue."""
    return unique_emails(
        list(issue.get('personResponsible') or [])
        + list(issue.get('approver') or [])
        + list(issue.get('cxoResponsible') or [])
    )


def _review_link() -> str:
    url = html.escape(get_mail_config()['app_url'])
    return f'Please review in <a href="{url}">{url}</a>.'


def new_issue_email(issue: Dict) -> Tuple[str, str]:
    app_name = get_mail_config()['app_name']
    subject = f"{app_name}, New Audit Issue Created ({issue.get('serialNumber')})"
    paragraphs = [
        f"<b>Issue:</b> {html.escape(issue_caption(issue))}",
        f"<b>Risk Level:</b> {html.escape(issue.get('riskLevel') or '')}",
        f"<b>Due Date:</b> {html.escape(issue.get('timeline') or '-')}",
        _review_link(),
    ]
    highlight = f"<b>Observation:</b><br/>{_multiline(issue.get('observation'))}"
    return subject, email_template(f"{app_name} - New Audit Issue", paragraphs, highlight)


def evidence_email(issue: Dict, uploaded_by: str, file_count: int,
                   text: Optional[str] = None) -> Tuple[str, str]:
    app_name = get_mail_config()['app_name']
    subject = f"{app_name}, Evidence Uploaded ({issue.get('serialNumber')})"
    summary = f"{html.escape(uploaded_by or 'Someone')} uploaded {file_count} file(s)"
    if text:
        summary += " and added a comment"
    paragraphs = [f"{summary} for <b>{html.escape(issue_caption(issue))}</b>.", _review_link()]
    highlight = f"<b>Comment:</b><br/>{_multiline(text)}" if text else ''
    return subject, email_template(f"{app_name} - Evidence Uploaded", paragraphs, highlight)


def review_email(issue: Dict, evidence_status: str, review_comments: str = '') -> Tuple[str, str]:
    app_name = get_mail_config()['app_name']
    subject = f"{app_name}, {evidence_status} ({issue.get('serialNumber')})"
    paragraphs = [
        f"<b>Issue:</b> {html.escape(issue_caption(issue))}",
        f"<b>Status:</b> {html.escape(evidence_status)}",
    ]
    if evidence_status == 'Insufficient':
        paragraphs.append("The evidence submitted was not sufficient. Please upload further evidence.")
    elif evidence_status == 'Partially Accepted':
        paragraphs.append("Part of the evidence was accepted. Please upload the remaining evidence.")
    else:
        paragraphs.append("The evidence was accepted. No further action is needed.")
    highlight = f"<b>Auditor Comment:</b><br/>{_multiline(review_comments)}" if review_comments else ''
    return subject, email_template(f"{app_name} - {evidence_status}", paragraphs, highlight)


def comment_email(issue: Dict, actor: str, content: str) -> Tuple[str, str]:
    app_name = get_mail_config()['app_name']
    subject = f"{app_name}, New Comment ({issue.get('serialNumber')})"
    paragraphs = [
        f"<b>Issue:</b> {html.escape(issue_caption(issue))}",
        f"<b>From:</b> {html.escape(actor)}",
    ]
    return subject, email_template(f"{app_name} - New Comment", paragraphs, _multiline(content))


# Fields compared for the edit notification
EDIT_DIFF_FIELDS = [
    'fiscalYear', 'date', 'process', 'entityCovered', 'observation', 'riskLevel',
    'recommendation', 'managementComment', 'personResponsible', 'approver',
    'cxoResponsible', 'coOwner', 'timeline', 'reviewComments', 'risk',
    'actionRequired', 'startMonth', 'endMonth',
]


def _diff_text(value) -> str:
    if isinstance(value, list):
        return '; '.join(str(v) for v in value)
    return '' if value is None else str(value)


def changed_fields(before: Dict, after: Dict) -> List[Tuple[str, str, str]]:
    """(field, old, new) for every compared field whose text differs."""
    changes = []
    for field in EDIT_DIFF_FIELDS:
        old, new = _diff_text(before.get(field)), _diff_text(after.get(field))
        if old != new:
            changes.append((field, old, new))
    return changes


def edit_email(before: Dict, after: Dict, actor: str) -> Optional[Tuple[str, str]]:
    """Diff notification for an auditor edit, or None if nothing changed."""
    changes = changed_fields(before, after)
    if not changes:
        return None
    app_name = get_mail_config()['app_name']
    subject = f"{app_name}, Issue Edited by Auditor ({after.get('serialNumber')})"
    lines = '<br/>'.join(
        f"<b>{field}</b>: “{html.escape(old or '-')}” → “{html.escape(new or '-')}”"
        for field, old, new in changes
    )
    paragraphs = [
        f"<b>Issue:</b> {html.escape(issue_caption(after))}",
        f"Edited by: {html.escape(actor)}",
    ]
    return subject, email_template(f"{app_name} - Issue Edited by Auditor", paragraphs, lines)


def reminder_email(issue: Dict, days_left: int) -> Tuple[str, str]:
    app_name = get_mail_config()['app_name']
    plural = '' if days_left == 1 else 's'
    subject = f"{app_name}, Reminder ({issue.get('serialNumber')} due in {days_left} day{plural})"
    paragraphs = [
        f"<b>Issue:</b> {html.escape(issue_caption(issue))}",
        f"<b>Due Date:</b> {html.escape(issue.get('timeline') or '-')}",
        f"<b>Current Status:</b> {html.escape(issue.get('currentStatus') or 'To Be Received')}",
    ]
    return subject, email_template(f"{app_name} - Due Soon", paragraphs, f"Due in {days_left} day{plural}")

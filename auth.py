"""
Actor identity and authorization for the Audit Issue Tracker.

Callers identify themselves by email (the ``actor``/``viewer`` field); the
login flow that establishes that identity lives outside this service.

- normalize_email / split_emails: canonical lowercase addresses
- is_auditor: membership in the AUDITOR_EMAILS allow-list
- resolve_role: auditor > approver > user
- @require_actor: rejects requests that name no actor
- @require_auditor: additionally requires the actor to be an auditor
"""

import os
import re
from functools import wraps
from typing import Iterable, List, Optional

from flask import request, jsonify, g

# Role names returned by resolve_role
ROLE_AUDITOR = 'auditor'
ROLE_APPROVER = 'approver'
ROLE_USER = 'user'


def _default_domain() -> str:
    return os.environ.get('DEFAULT_EMAIL_DOMAIN', 'example.com').strip().lstrip('@')


def normalize_email(value) -> str:
    """Lowercase and trim an address; bare user names get the default domain."""
    if value is None:
        return ''
    text = str(value).strip().lower()
    if not text:
        return ''
    if '@' not in text:
        text = f"{text}@{_default_domain()}"
    return text


def split_emails(value) -> List[str]:
    """Parse a list or a comma/semicolon delimited string into unique emails.

    Order of first appearance is kept.
    """
    if value is None:
        return []
    if isinstance(value, str):
        parts = re.split(r'[;,]', value)
    else:
        parts = []
        for item in value:
            parts.extend(re.split(r'[;,]', str(item)) if item is not None else [])
    return unique_emails(parts)


def unique_emails(values: Iterable) -> List[str]:
    seen = []
    for value in values:
        email = normalize_email(value)
        if email and email not in seen:
            seen.append(email)
    return seen


def get_auditor_emails() -> List[str]:
    """Auditor allow-list from the AUDITOR_EMAILS environment variable."""
    return split_emails(os.environ.get('AUDITOR_EMAILS', ''))


def is_auditor(email: Optional[str]) -> bool:
    email = normalize_email(email)
    return bool(email) and email in get_auditor_emails()


def resolve_role(db, email: Optional[str]) -> str:
    """Resolve a login email to auditor, approver or user.

    Auditors are checked first, even if they appear on no issue. An
    approver or CXO on any issue is an approver.
    """
    email = normalize_email(email)
    if not email:
        return ROLE_USER
    if is_auditor(email):
        return ROLE_AUDITOR
    if db.has_stakeholder_role(email, ('approver', 'cxo_responsible')):
        return ROLE_APPROVER
    return ROLE_USER


def get_actor(field: str = 'actor') -> str:
    """Find the acting user's email in the JSON body, form or query string."""
    value = None
    if request.is_json:
        data = request.get_json(silent=True) or {}
        value = data.get(field)
    if not value:
        value = request.form.get(field)
    if not value:
        value = request.args.get(field)
    return normalize_email(value)


def require_actor(f):
    """Decorator that requires the request to name an actor.

    The normalised email is stored in ``g.actor``.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = get_actor()
        if not actor:
            return jsonify({'error': 'Missing actor'}), 400
        g.actor = actor
        return f(*args, **kwargs)
    return decorated_function


def require_auditor(f):
    """Decorator that requires the actor to be on the auditor allow-list.

    Returns 400 when no actor is given and 403 for a non-auditor.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = get_actor()
        if not actor:
            return jsonify({'error': 'Missing actor'}), 400
        if not is_auditor(actor):
            return jsonify({'error': 'Only auditors can perform this action'}), 403
        g.actor = actor
        return f(*args, **kwargs)
    return decorated_function

"""
Issue workflow rules.

Closed value sets for risk level, current status and evidence status, the
normalisers used by manual entry and spreadsheet import, and the single
transition table that keeps ``currentStatus`` in step with review outcomes.
"""

from typing import Optional

RISK_LEVELS = ('high', 'medium', 'low')

STATUS_TO_BE_RECEIVED = 'To Be Received'
STATUS_PARTIALLY_RECEIVED = 'Partially Received'
STATUS_RECEIVED = 'Received'
STATUS_CLOSED = 'Closed'
CURRENT_STATUSES = (STATUS_TO_BE_RECEIVED, STATUS_PARTIALLY_RECEIVED, STATUS_RECEIVED, STATUS_CLOSED)

EVIDENCE_ACCEPTED = 'Accepted'
EVIDENCE_PARTIALLY_ACCEPTED = 'Partially Accepted'
EVIDENCE_INSUFFICIENT = 'Insufficient'
EVIDENCE_STATUSES = (EVIDENCE_ACCEPTED, EVIDENCE_INSUFFICIENT, EVIDENCE_PARTIALLY_ACCEPTED)

# Review outcome -> current status
REVIEW_TRANSITIONS = {
    EVIDENCE_ACCEPTED: STATUS_RECEIVED,
    EVIDENCE_PARTIALLY_ACCEPTED: STATUS_PARTIALLY_RECEIVED,
    EVIDENCE_INSUFFICIENT: STATUS_TO_BE_RECEIVED,
}


class WorkflowError(ValueError):
    """Raised when a requested transition or value is not allowed."""


class IssueLockedError(Exception):
    """Raised when mutating an issue whose evidence has been accepted."""

    def __init__(self, issue_id: str):
        super().__init__(f"Issue {issue_id} is locked (Accepted)")
        self.issue_id = issue_id


def _text(value) -> str:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ''
    return '' if value is None else str(value).strip()


def normalize_risk_level(value) -> str:
    """Map free text to high/medium/low.

    Only an exact (case-insensitive) "high" or "low" is taken as given;
    everything else, including blanks, is medium.
    """
    text = _text(value).lower()
    if text in ('high', 'low'):
        return text
    return 'medium'


def normalize_import_status(value) -> str:
    """Map spreadsheet status text to one of the three receipt states."""
    text = _text(value).lower()
    if 'partially' in text:
        return STATUS_PARTIALLY_RECEIVED
    if 'to be' in text:
        return STATUS_TO_BE_RECEIVED
    if 'received' in text:
        return STATUS_RECEIVED
    return STATUS_TO_BE_RECEIVED


def normalize_status(value) -> str:
    """Status for manually created issues: an exact known status wins,
    otherwise fall back to the import rules."""
    text = _text(value)
    for status in CURRENT_STATUSES:
        if text.lower() == status.lower():
            return status
    return normalize_import_status(text)


def validate_evidence_status(value) -> str:
    if value not in EVIDENCE_STATUSES:
        raise WorkflowError(
            'evidenceStatus must be "Accepted", "Insufficient", or "Partially Accepted"'
        )
    return value


def status_after_review(evidence_status: str) -> str:
    """The current status an issue moves to for a review outcome."""
    return REVIEW_TRANSITIONS[validate_evidence_status(evidence_status)]


def is_locked(evidence_status: Optional[str]) -> bool:
    return (evidence_status or '') == EVIDENCE_ACCEPTED

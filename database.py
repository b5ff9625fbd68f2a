"""
Audit Issue Tracker - SQLite Database Module

Provides persistent storage for:
- Audit issues (findings) and their stakeholders
- Evidence entries and annexures attached to an issue
- The per-issue activity feed (reviews, evidence notes, comments, closures)
- Due-date reminder bookkeeping

Records are returned in the API shape (camelCase keys, stakeholder and
evidence lists already assembled) so callers can ``jsonify`` them directly.
"""

import os
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable

from migrations import MigrationRunner
from workflow import (
    STATUS_CLOSED, STATUS_TO_BE_RECEIVED, IssueLockedError, is_locked, status_after_review
)

# Default database path - can be overridden
DEFAULT_DB_PATH = os.environ.get('AUDIT_DB_PATH') or Path(__file__).parent / "audit_issues.db"

# API field -> audit_issues column
ISSUE_COLUMNS = {
    'fiscalYear': 'fiscal_year',
    'date': 'date',
    'process': 'process',
    'entityCovered': 'entity_covered',
    'observation': 'observation',
    'riskLevel': 'risk_level',
    'recommendation': 'recommendation',
    'managementComment': 'management_comment',
    'timeline': 'timeline',
    'currentStatus': 'current_status',
    'evidenceStatus': 'evidence_status',
    'reviewComments': 'review_comments',
    'risk': 'risk',
    'actionRequired': 'action_required',
    'startMonth': 'start_month',
    'endMonth': 'end_month',
}

# API field -> issue_stakeholders.role
STAKEHOLDER_ROLES = {
    'personResponsible': 'person_responsible',
    'approver': 'approver',
    'cxoResponsible': 'cxo_responsible',
    'coOwner': 'co_owner',
}

# Workflow fields only move through review/close
EDITABLE_FIELDS = [f for f in ISSUE_COLUMNS if f not in ('currentStatus', 'evidenceStatus')]

# Columns that may hold NULL; every other text column defaults to ''
NULLABLE_COLUMNS = {'timeline', 'evidence_status'}

VIEWER_ROLES = ('person_responsible', 'approver', 'cxo_responsible')


def _now() -> str:
    return datetime.now().isoformat(timespec='microseconds')


def _as_email_list(value) -> List[str]:
    """Lowercased, de-duplicated emails from a list or a ;/, delimited string."""
    if value is None:
        return []
    if isinstance(value, str):
        value = re.split(r'[;,]', value)
    emails = [str(v).strip().lower() for v in value if v and str(v).strip()]
    return list(dict.fromkeys(emails))


def _evidence_to_api(row: sqlite3.Row) -> Dict:
    entry = {
        'id': row['id'],
        'entryType': row['entry_type'],
        'fileName': row['file_name'],
        'fileType': row['file_type'],
        'fileSize': row['file_size'],
        'uploadedAt': row['uploaded_at'],
        'uploadedBy': row['uploaded_by'],
    }
    if row['entry_type'] == 'file':
        entry['path'] = row['path']
    else:
        entry['content'] = row['content']
    return entry


def _annexure_to_api(row: sqlite3.Row) -> Dict:
    return {
        'name': row['name'],
        'path': row['path'],
        'size': row['file_size'],
        'type': row['file_type'],
        'uploadedAt': row['uploaded_at'],
    }


def _activity_to_api(row: sqlite3.Row) -> Dict:
    return {
        'id': row['id'],
        'issueId': row['issue_id'],
        'type': row['activity_type'],
        'actor': row['actor'],
        'content': row['content'],
        'evidenceStatus': row['evidence_status'],
        'createdAt': row['created_at'],
    }


class AuditIssueDatabase:
    """SQLite store for audit issues and everything hanging off them."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(db_path or DEFAULT_DB_PATH)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _connection(self):
        """Context manager for database connections."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        """Write transaction holding the database write lock from the first statement."""
        conn = self._get_conn()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Bring the schema up to date."""
        MigrationRunner(self.db_path).run_migrations()

    def migration_status(self) -> Dict:
        return MigrationRunner(self.db_path).get_status()

    # ==================== ASSEMBLY ====================

    def _assemble(self, conn: sqlite3.Connection, rows: List[sqlite3.Row]) -> List[Dict]:
        """Attach stakeholders, evidence and annexures to issue rows."""
        if not rows:
            return []
        ids = [row['id'] for row in rows]
        marks = ', '.join('?' * len(ids))

        stakeholders: Dict[str, Dict[str, List[str]]] = {}
        for s in conn.execute(f"""
            SELECT issue_id, role, email FROM issue_stakeholders
            WHERE issue_id IN ({marks}) ORDER BY issue_id, role, position
        """, ids):
            stakeholders.setdefault(s['issue_id'], {}).setdefault(s['role'], []).append(s['email'])

        evidence: Dict[str, List[Dict]] = {}
        for e in conn.execute(f"SELECT * FROM evidence WHERE issue_id IN ({marks}) ORDER BY position", ids):
            evidence.setdefault(e['issue_id'], []).append(_evidence_to_api(e))

        annexures: Dict[str, List[Dict]] = {}
        for a in conn.execute(f"SELECT * FROM annexures WHERE issue_id IN ({marks}) ORDER BY position", ids):
            annexures.setdefault(a['issue_id'], []).append(_annexure_to_api(a))

        issues = []
        for row in rows:
            issue = {'id': row['id'], 'serialNumber': row['serial_number']}
            for field, column in ISSUE_COLUMNS.items():
                issue[field] = row[column]
            roles = stakeholders.get(row['id'], {})
            for field, role in STAKEHOLDER_ROLES.items():
                issue[field] = roles.get(role, [])
            issue['evidenceReceived'] = evidence.get(row['id'], [])
            issue['annexure'] = annexures.get(row['id'], [])
            issue['isLocked'] = is_locked(row['evidence_status'])
            issue['createdAt'] = row['created_at']
            issue['updatedAt'] = row['updated_at']
            issues.append(issue)
        return issues

    def _write_stakeholders(self, conn: sqlite3.Connection, issue_id: str,
                            values: Dict[str, Any], replace: bool = False):
        for field, role in STAKEHOLDER_ROLES.items():
            if field not in values:
                continue
            if replace:
                conn.execute("DELETE FROM issue_stakeholders WHERE issue_id = ? AND role = ?",
                             (issue_id, role))
            for position, email in enumerate(_as_email_list(values[field])):
                conn.execute("""
                    INSERT INTO issue_stakeholders (issue_id, role, email, position)
                    VALUES (?, ?, ?, ?)
                """, (issue_id, role, email, position))

    def _insert_evidence(self, conn: sqlite3.Connection, issue_id: str,
                         entries: Iterable[Dict]) -> List[str]:
        """Append evidence entries after the current last position.

        Text entries are also written to the activity feed.
        """
        start = conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM evidence WHERE issue_id = ?", (issue_id,)
        ).fetchone()[0]
        ids = []
        for offset, entry in enumerate(entries):
            entry_id = entry.get('id') or uuid.uuid4().hex
            entry_type = entry.get('entryType') or ('file' if entry.get('path') else 'text')
            uploaded_at = entry.get('uploadedAt') or _now()
            content = entry.get('content') if entry_type == 'text' else None
            conn.execute("""
                INSERT INTO evidence (id, issue_id, position, entry_type, file_name, file_type,
                                      file_size, path, content, uploaded_at, uploaded_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (entry_id, issue_id, start + offset, entry_type, entry.get('fileName') or 'Comment',
                  entry.get('fileType') or 'text/plain', entry.get('fileSize') or 0,
                  entry.get('path') if entry_type == 'file' else None, content,
                  uploaded_at, entry.get('uploadedBy')))
            if entry_type == 'text':
                conn.execute("""
                    INSERT INTO activities (issue_id, activity_type, actor, content, created_at)
                    VALUES (?, 'evidence', ?, ?, ?)
                """, (issue_id, entry.get('uploadedBy'), content or '', uploaded_at))
            ids.append(entry_id)
        return ids

    def _insert_annexures(self, conn: sqlite3.Connection, issue_id: str, annexures: Iterable[Dict]):
        for position, item in enumerate(annexures):
            conn.execute("""
                INSERT INTO annexures (issue_id, position, name, path, file_size, file_type, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (issue_id, position, item['name'], item.get('path'), item.get('size'),
                  item.get('type'), item.get('uploadedAt') or _now()))

    def _locked_row(self, conn: sqlite3.Connection, issue_id: str) -> Optional[sqlite3.Row]:
        """Fetch the issue's workflow row, refusing if it is locked."""
        row = conn.execute(
            "SELECT id, evidence_status, current_status FROM audit_issues WHERE id = ?", (issue_id,)
        ).fetchone()
        if row is not None and is_locked(row['evidence_status']):
            raise IssueLockedError(issue_id)
        return row

    # ==================== ISSUES ====================

    def create_issue(self, record: Dict[str, Any]) -> str:
        """Create an issue from an API-shaped record. Returns the new id.

        The serial number is allocated inside the INSERT, so an empty table
        starts again at 1.
        """
        issue_id = record.get('id') or str(uuid.uuid4())
        now = _now()
        columns = {}
        for field, column in ISSUE_COLUMNS.items():
            value = record.get(field)
            if value is None and column not in NULLABLE_COLUMNS:
                value = ''
            columns[column] = value
        columns['date'] = columns['date'] or date.today().isoformat()
        columns['risk_level'] = columns['risk_level'] or 'medium'
        columns['current_status'] = columns['current_status'] or STATUS_TO_BE_RECEIVED

        names = ', '.join(columns)
        marks = ', '.join('?' * len(columns))
        with self._transaction() as conn:
            conn.execute(f"""
                INSERT INTO audit_issues (id, serial_number, {names}, created_at, updated_at)
                VALUES (?, (SELECT COALESCE(MAX(serial_number), 0) + 1 FROM audit_issues), {marks}, ?, ?)
            """, (issue_id, *columns.values(), now, now))
            self._write_stakeholders(conn, issue_id, record)
            self._insert_evidence(conn, issue_id, record.get('evidenceReceived') or [])
            self._insert_annexures(conn, issue_id, record.get('annexure') or [])
        return issue_id

    def get_issue(self, issue_id: str) -> Optional[Dict]:
        """Get a single issue by id."""
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM audit_issues WHERE id = ?", (issue_id,)).fetchone()
            return self._assemble(conn, [row])[0] if row else None

    def get_all_issues(self) -> List[Dict]:
        """Get all issues, newest first."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_issues ORDER BY created_at DESC, serial_number DESC"
            ).fetchall()
            return self._assemble(conn, rows)

    def get_issues_for_viewer(self, email: str) -> List[Dict]:
        """Issues where the email is a person responsible, approver or CXO."""
        with self._connection() as conn:
            rows = conn.execute(f"""
                SELECT * FROM audit_issues
                WHERE id IN (
                    SELECT issue_id FROM issue_stakeholders
                    WHERE email = ? AND role IN ({', '.join('?' * len(VIEWER_ROLES))})
                )
                ORDER BY created_at DESC, serial_number DESC
            """, (email.strip().lower(), *VIEWER_ROLES)).fetchall()
            return self._assemble(conn, rows)

    def has_stakeholder_role(self, email: str, roles: Iterable[str]) -> bool:
        """True if the email holds any of the given roles on any issue."""
        roles = list(roles)
        with self._connection() as conn:
            row = conn.execute(f"""
                SELECT 1 FROM issue_stakeholders
                WHERE email = ? AND role IN ({', '.join('?' * len(roles))}) LIMIT 1
            """, (email.strip().lower(), *roles)).fetchone()
            return row is not None

    def update_issue(self, issue_id: str, changes: Dict[str, Any]) -> Optional[Dict]:
        """Update editable fields and stakeholder lists.

        Returns the updated issue, or None if not found. Raises
        IssueLockedError once evidence has been accepted.
        """
        updates = {ISSUE_COLUMNS[f]: changes[f] for f in EDITABLE_FIELDS if f in changes}
        for column, value in updates.items():
            if value is None and column not in NULLABLE_COLUMNS:
                updates[column] = ''
        stakeholder_changes = {f: changes[f] for f in STAKEHOLDER_ROLES if f in changes}

        with self._transaction() as conn:
            if self._locked_row(conn, issue_id) is None:
                return None
            if updates or stakeholder_changes:
                updates['updated_at'] = _now()
                set_clause = ', '.join(f"{column} = ?" for column in updates)
                conn.execute(f"UPDATE audit_issues SET {set_clause} WHERE id = ?",
                             (*updates.values(), issue_id))
                self._write_stakeholders(conn, issue_id, stakeholder_changes, replace=True)
            row = conn.execute("SELECT * FROM audit_issues WHERE id = ?", (issue_id,)).fetchone()
            return self._assemble(conn, [row])[0]

    def review_issue(self, issue_id: str, evidence_status: str, review_comments: str = '',
                     reviewed_by: Optional[str] = None) -> Optional[Dict]:
        """Record a review outcome and move currentStatus with it.

        One conditional UPDATE sets both fields together. Returns the
        updated issue, or None if no issue matched.
        """
        current_status = status_after_review(evidence_status)
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute("""
                UPDATE audit_issues
                SET evidence_status = ?, review_comments = ?, current_status = ?, updated_at = ?
                WHERE id = ?
            """, (evidence_status, review_comments or '', current_status, now, issue_id))
            if cursor.rowcount == 0:
                return None
            conn.execute("""
                INSERT INTO activities (issue_id, activity_type, actor, content, evidence_status, created_at)
                VALUES (?, 'review', ?, ?, ?, ?)
            """, (issue_id, reviewed_by, review_comments or '', evidence_status, now))
            row = conn.execute("SELECT * FROM audit_issues WHERE id = ?", (issue_id,)).fetchone()
            return self._assemble(conn, [row])[0]

    def close_issue(self, issue_id: str, closed_by: Optional[str] = None) -> bool:
        """Mark an issue Closed. Returns False if no issue matched."""
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE audit_issues SET current_status = ?, updated_at = ? WHERE id = ?",
                (STATUS_CLOSED, now, issue_id)
            )
            if cursor.rowcount == 0:
                return False
            conn.execute("""
                INSERT INTO activities (issue_id, activity_type, actor, content, created_at)
                VALUES (?, 'closure', ?, 'Issue closed', ?)
            """, (issue_id, closed_by, now))
            return True

    def count_issues(self) -> int:
        with self._connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM audit_issues").fetchone()[0]

    # ==================== EVIDENCE ====================

    def append_evidence(self, issue_id: str, entries: List[Dict]) -> Optional[List[Dict]]:
        """Append evidence entries to an issue.

        Returns the stored entries as read back, or None if the issue does
        not exist. Raises IssueLockedError on an accepted issue.
        """
        with self._transaction() as conn:
            if self._locked_row(conn, issue_id) is None:
                return None
            ids = self._insert_evidence(conn, issue_id, entries)
            conn.execute("UPDATE audit_issues SET updated_at = ? WHERE id = ?", (_now(), issue_id))
            if not ids:
                return []
            rows = conn.execute(f"""
                SELECT * FROM evidence WHERE id IN ({', '.join('?' * len(ids))}) ORDER BY position
            """, ids).fetchall()
            return [_evidence_to_api(row) for row in rows]

    def remove_evidence(self, issue_id: str, evidence_id: str) -> Optional[bool]:
        """Delete one evidence entry.

        Returns None if the issue is unknown, False if the entry is unknown.
        """
        with self._transaction() as conn:
            if self._locked_row(conn, issue_id) is None:
                return None
            cursor = conn.execute("DELETE FROM evidence WHERE id = ? AND issue_id = ?",
                                  (evidence_id, issue_id))
            if cursor.rowcount == 0:
                return False
            conn.execute("UPDATE audit_issues SET updated_at = ? WHERE id = ?", (_now(), issue_id))
            return True

    # ==================== ACTIVITY FEED ====================

    def add_comment(self, issue_id: str, actor: str, content: str) -> Optional[Dict]:
        """Add a comment to the activity feed. None if the issue is unknown."""
        now = _now()
        with self._transaction() as conn:
            if self._locked_row(conn, issue_id) is None:
                return None
            cursor = conn.execute("""
                INSERT INTO activities (issue_id, activity_type, actor, content, created_at)
                VALUES (?, 'comment', ?, ?, ?)
            """, (issue_id, actor, content, now))
            conn.execute("UPDATE audit_issues SET updated_at = ? WHERE id = ?", (now, issue_id))
            row = conn.execute("SELECT * FROM activities WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return _activity_to_api(row)

    def get_activity(self, issue_id: str) -> List[Dict]:
        """Activity feed for an issue, newest first."""
        with self._connection() as conn:
            rows = conn.execute("""
                SELECT * FROM activities WHERE issue_id = ?
                ORDER BY created_at DESC, id DESC
            """, (issue_id,)).fetchall()
            return [_activity_to_api(row) for row in rows]

    # ==================== DUE DATES ====================

    def get_issues_due_between(self, start: Optional[date], end: date,
                               exclude_closed: bool = False) -> List[Dict]:
        """Issues with start <= timeline < end, ordered by timeline.

        A start of None means no lower bound.
        """
        clauses = ["timeline IS NOT NULL", "timeline < ?"]
        params: List[Any] = [end.isoformat()]
        if start is not None:
            clauses.append("timeline >= ?")
            params.append(start.isoformat())
        if exclude_closed:
            clauses.append("current_status <> ?")
            params.append(STATUS_CLOSED)
        with self._connection() as conn:
            rows = conn.execute(f"""
                SELECT * FROM audit_issues WHERE {' AND '.join(clauses)}
                ORDER BY timeline, serial_number
            """, params).fetchall()
            return self._assemble(conn, rows)

    def record_reminder(self, issue_id: str, day: date) -> bool:
        """Mark a reminder as sent. False if one was already sent that day."""
        with self._connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO reminder_log (issue_id, sent_on) VALUES (?, ?)",
                (issue_id, day.isoformat())
            )
            return cursor.rowcount > 0

    def release_reminder(self, issue_id: str, day: date):
        """Drop a day's reminder mark so a later run can send it again."""
        with self._connection() as conn:
            conn.execute(
                "DELETE FROM reminder_log WHERE issue_id = ? AND sent_on = ?",
                (issue_id, day.isoformat())
            )

    def reminder_sent(self, issue_id: str, day: date) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM reminder_log WHERE issue_id = ? AND sent_on = ?",
                (issue_id, day.isoformat())
            ).fetchone()
            return row is not None


# Singleton instance for easy import
_db_instance = None


def get_db(db_path: Optional[str] = None) -> AuditIssueDatabase:
    """Get or create the database instance."""
    global _db_instance
    if _db_instance is None or db_path:
        _db_instance = AuditIssueDatabase(db_path)
    return _db_instance

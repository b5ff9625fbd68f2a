"""
001: Initial database schema.

Creates the audit issue table and its child tables (stakeholders,
evidence, annexures, activity feed).
"""

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    """Create initial database schema."""
    conn.executescript("""
        -- Audit issues (one row per finding)
        CREATE TABLE IF NOT EXISTS audit_issues (
            id TEXT PRIMARY KEY,
            serial_number INTEGER UNIQUE NOT NULL,
            fiscal_year TEXT NOT NULL DEFAULT '',
            date DATE NOT NULL,
            process TEXT NOT NULL DEFAULT '',
            entity_covered TEXT NOT NULL DEFAULT '',
            observation TEXT NOT NULL DEFAULT '',
            risk_level TEXT NOT NULL DEFAULT 'medium'
                CHECK (risk_level IN ('high', 'medium', 'low')),
            recommendation TEXT NOT NULL DEFAULT '',
            management_comment TEXT DEFAULT '',
            timeline DATE,
            current_status TEXT NOT NULL DEFAULT 'To Be Received'
                CHECK (current_status IN ('To Be Received', 'Partially Received', 'Received', 'Closed')),
            evidence_status TEXT
                CHECK (evidence_status IS NULL OR evidence_status IN ('Accepted', 'Partially Accepted', 'Insufficient')),
            review_comments TEXT DEFAULT '',
            risk TEXT DEFAULT '',
            action_required TEXT DEFAULT '',
            start_month TEXT DEFAULT '',
            end_month TEXT DEFAULT '',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        -- Stakeholders (person responsible, approver, CXO, co-owner)
        CREATE TABLE IF NOT EXISTS issue_stakeholders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            issue_id TEXT NOT NULL REFERENCES audit_issues(id) ON DELETE CASCADE,
            role TEXT NOT NULL
                CHECK (role IN ('person_responsible', 'approver', 'cxo_responsible', 'co_owner')),
            email TEXT NOT NULL COLLATE NOCASE,
            position INTEGER NOT NULL DEFAULT 0,
            UNIQUE(issue_id, role, email)
        );

        -- Evidence entries (uploaded files and text notes)
        CREATE TABLE IF NOT EXISTS evidence (
            id TEXT PRIMARY KEY,
            issue_id TEXT NOT NULL REFERENCES audit_issues(id) ON DELETE CASCADE,
            position INTEGER NOT NULL,
            entry_type TEXT NOT NULL CHECK (entry_type IN ('file', 'text')),
            file_name TEXT NOT NULL,
            file_type TEXT,
            file_size INTEGER DEFAULT 0,
            path TEXT,
            content TEXT,
            uploaded_at TIMESTAMP NOT NULL,
            uploaded_by TEXT
        );

        -- Annexures (reference files attached at creation/import)
        CREATE TABLE IF NOT EXISTS annexures (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            issue_id TEXT NOT NULL REFERENCES audit_issues(id) ON DELETE CASCADE,
            position INTEGER NOT NULL,
            name TEXT NOT NULL,
            path TEXT,
            file_size INTEGER,
            file_type TEXT,
            uploaded_at TIMESTAMP NOT NULL
        );

        -- Activity feed (reviews, evidence notes, comments, closures)
        CREATE TABLE IF NOT EXISTS activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            issue_id TEXT NOT NULL REFERENCES audit_issues(id) ON DELETE CASCADE,
            activity_type TEXT NOT NULL
                CHECK (activity_type IN ('review', 'evidence', 'comment', 'closure')),
            actor TEXT,
            content TEXT DEFAULT '',
            evidence_status TEXT,
            created_at TIMESTAMP NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_issues_timeline ON audit_issues(timeline);
        CREATE INDEX IF NOT EXISTS idx_issues_status ON audit_issues(current_status);
        CREATE INDEX IF NOT EXISTS idx_stakeholders_issue ON issue_stakeholders(issue_id);
        CREATE INDEX IF NOT EXISTS idx_stakeholders_email ON issue_stakeholders(email);
        CREATE INDEX IF NOT EXISTS idx_evidence_issue ON evidence(issue_id, position);
        CREATE INDEX IF NOT EXISTS idx_annexures_issue ON annexures(issue_id, position);
        CREATE INDEX IF NOT EXISTS idx_activities_issue ON activities(issue_id, created_at);
    """)
    conn.commit()

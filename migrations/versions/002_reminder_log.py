"""
002: Reminder log.

Records which issues were sent a due-date reminder on which day, so a
restart does not resend the same day's reminders.
"""

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    """Create reminder_log table."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS reminder_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            issue_id TEXT NOT NULL REFERENCES audit_issues(id) ON DELETE CASCADE,
            sent_on DATE NOT NULL,
            UNIQUE(issue_id, sent_on)
        );
        CREATE INDEX IF NOT EXISTS idx_reminder_log_day ON reminder_log(sent_on);
    """)
    conn.commit()

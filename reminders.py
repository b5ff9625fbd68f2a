"""
Daily "due soon" reminders.

Open issues due within the next three days are mailed to the auditors with
the issue's stakeholders in CC. reminder_log makes the send idempotent per
issue per day, so a restart does not resend.
"""

import logging
import os
import threading
from datetime import date, timedelta
from typing import Optional

from auth import get_auditor_emails
from notifications import notify, reminder_email, stakeholder_emails

logger = logging.getLogger(__name__)

REMINDER_WINDOW_DAYS = 3
REMINDER_INTERVAL_SECONDS = 24 * 60 * 60


def send_due_reminders(db, mailer, today: Optional[date] = None) -> int:
    """Send reminders for open issues due in [today, today + 3 days].

    Returns the number of issues reminded.
    """
    today = today or date.today()
    end = today + timedelta(days=REMINDER_WINDOW_DAYS + 1)
    issues = db.get_issues_due_between(today, end, exclude_closed=True)
    auditors = get_auditor_emails()

    sent = 0
    for issue in issues:
        # Claim before sending; a concurrent run that claimed first wins
        if not db.record_reminder(issue['id'], today):
            continue
        days_left = max(0, (date.fromisoformat(issue['timeline']) - today).days)
        if notify(mailer, auditors, reminder_email(issue, days_left), cc=stakeholder_emails(issue)):
            sent += 1
        else:
            db.release_reminder(issue['id'], today)

    logger.info(f"[Reminders] {sent} of {len(issues)} due issue(s) reminded for {today.isoformat()}")
    return sent


def start_reminder_thread(db, mailer, interval: float = REMINDER_INTERVAL_SECONDS):
    """Run send_due_reminders now and then every interval on a daemon timer.

    Does nothing unless REMINDERS_ENABLED=true. Returns the first timer.
    """
    if os.environ.get('REMINDERS_ENABLED', 'false').lower() != 'true':
        logger.info("[Reminders] Disabled (set REMINDERS_ENABLED=true to enable)")
        return None

    def run():
        try:
            send_due_reminders(db, mailer)
        except Exception:
            logger.exception("[Reminders] Reminder run failed")
        schedule(interval)

    def schedule(delay):
        timer = threading.Timer(delay, run)
        timer.daemon = True
        timer.start()
        return timer

    return schedule(0)

"""Tests for due-soon reminders."""
import threading
from datetime import date, timedelta

import reminders
from conftest import AUDITOR, PR
from reminders import send_due_reminders, start_reminder_thread

TODAY = date(2025, 5, 10)


def due_in(days):
    return (TODAY + timedelta(days=days)).isoformat()


class TestSendDueReminders:
    """Window, idempotency and recipients."""

    def test_window_is_today_to_three_days(self, make_issue, test_db, fake_mailer):
        make_issue(observation='today', timeline=due_in(0))
        make_issue(observation='three', timeline=due_in(3))
        make_issue(observation='four', timeline=due_in(4))
        make_issue(observation='yesterday', timeline=due_in(-1))
        assert send_due_reminders(test_db, fake_mailer, TODAY) == 2
        subjects = fake_mailer.subjects()
        assert any('due in 0 days' in s for s in subjects)
        assert any('due in 3 days' in s for s in subjects)

    def test_recipients(self, make_issue, test_db, fake_mailer):
        make_issue(timeline=due_in(1))
        send_due_reminders(test_db, fake_mailer, TODAY)
        message = fake_mailer.sent[0]
        assert AUDITOR in message['to']
        assert PR in message['cc']
        assert message['subject'].endswith('due in 1 day)')

    def test_once_per_day(self, make_issue, test_db, fake_mailer):
        make_issue(timeline=due_in(2))
        assert send_due_reminders(test_db, fake_mailer, TODAY) == 1
        assert send_due_reminders(test_db, fake_mailer, TODAY) == 0
        assert send_due_reminders(test_db, fake_mailer, TODAY + timedelta(days=1)) == 1
        assert len(fake_mailer.sent) == 2

    def test_closed_issues_skipped(self, make_issue, test_db, fake_mailer):
        issue = make_issue(timeline=due_in(1))
        test_db.close_issue(issue['id'], AUDITOR)
        assert send_due_reminders(test_db, fake_mailer, TODAY) == 0

    def test_failed_send_is_retried_later(self, make_issue, test_db, fake_mailer):
        issue = make_issue(timeline=due_in(1))
        fake_mailer.fail = True
        assert send_due_reminders(test_db, fake_mailer, TODAY) == 0
        assert not test_db.reminder_sent(issue['id'], TODAY)
        fake_mailer.fail = False
        assert send_due_reminders(test_db, fake_mailer, TODAY) == 1


    def test_overlapping_run_does_not_resend(self, make_issue, test_db, fake_mailer):
        make_issue(timeline=due_in(1))
        overlapping = []
        send = fake_mailer.send

        def send_with_overlapping_run(to, subject, html_body, cc=None):
            # A second run starts while the first is still sending
            if not overlapping:
                overlapping.append(send_due_reminders(test_db, fake_mailer, TODAY))
            return send(to, subject, html_body, cc)

        fake_mailer.send = send_with_overlapping_run
        assert send_due_reminders(test_db, fake_mailer, TODAY) == 1
        assert overlapping == [0]
        assert len(fake_mailer.sent) == 1

    def test_claimed_issue_is_skipped(self, make_issue, test_db, fake_mailer):
        issue = make_issue(timeline=due_in(1))
        assert test_db.record_reminder(issue['id'], TODAY)
        assert send_due_reminders(test_db, fake_mailer, TODAY) == 0
        assert fake_mailer.sent == []


class TestReminderThread:
    """Background scheduling."""

    def test_disabled_by_default(self, monkeypatch, test_db, fake_mailer):
        monkeypatch.delenv('REMINDERS_ENABLED', raising=False)
        assert start_reminder_thread(test_db, fake_mailer) is None

    def test_enabled_runs_immediately(self, monkeypatch, test_db, fake_mailer):
        monkeypatch.setenv('REMINDERS_ENABLED', 'true')
        ran = threading.Event()

        def fake_send(db, mailer, today=None):
            ran.set()
            return 0

        monkeypatch.setattr(reminders, 'send_due_reminders', fake_send)
        timer = start_reminder_thread(test_db, fake_mailer, interval=3600)
        assert timer.daemon
        assert ran.wait(timeout=5)

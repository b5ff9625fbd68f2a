"""
Seed Data Script for the Audit Issue Tracker

Creates a handful of representative audit issues covering:
- Every risk level and receipt status
- Single- and multi-entity coverage
- Due dates that are overdue, due soon and months out
- A reviewed issue with its evidence accepted

Run with: python3 seed_data.py
"""

from datetime import date, timedelta

from database import get_db
from workflow import EVIDENCE_ACCEPTED


def sample_issues(today: date = None):
    """Representative issue records, due dates relative to today."""
    today = today or date.today()
    return [
        {
            'fiscalYear': 'FY2025',
            'process': 'Procure to Pay',
            'entityCovered': 'Plant A; Plant B',
            'observation': 'Purchase orders raised after invoice receipt for 14 of 40 samples.',
            'riskLevel': 'high',
            'recommendation': 'Enforce PO-before-invoice in the ERP workflow.',
            'managementComment': 'Agreed. Workflow change scheduled.',
            'personResponsible': ['buyer.lead@example.com'],
            'approver': ['procurement.head@example.com'],
            'cxoResponsible': ['cfo@example.com'],
            'timeline': (today - timedelta(days=10)).isoformat(),
            'currentStatus': 'To Be Received',
        },
        {
            'fiscalYear': 'FY2025',
            'process': 'Order to Cash',
            'entityCovered': 'Head Office',
            'observation': 'Credit limit overrides are not approved by a second person.',
            'riskLevel': 'medium',
            'recommendation': 'Add a maker-checker step for overrides.',
            'personResponsible': ['credit.control@example.com'],
            'approver': ['finance.controller@example.com'],
            'cxoResponsible': ['cfo@example.com'],
            'timeline': (today + timedelta(days=2)).isoformat(),
            'currentStatus': 'Partially Received',
        },
        {
            'fiscalYear': 'FY2026',
            'process': 'IT General Controls',
            'entityCovered': 'Head Office, Plant A, Plant B',
            'observation': 'Leaver accounts remained active for more than 30 days.',
            'riskLevel': 'high',
            'recommendation': 'Automate deprovisioning from the HR leaver feed.',
            'personResponsible': ['it.ops@example.com'],
            'approver': ['it.head@example.com'],
            'cxoResponsible': ['cio@example.com'],
            'coOwner': ['hr.ops@example.com'],
            'timeline': (today + timedelta(days=75)).isoformat(),
            'currentStatus': 'To Be Received',
        },
        {
            'fiscalYear': 'FY2026',
            'process': 'Inventory',
            'entityCovered': 'Plant B',
            'observation': 'Cycle count variances are written off without investigation.',
            'riskLevel': 'low',
            'recommendation': 'Require root-cause notes above a threshold.',
            'personResponsible': ['stores@example.com'],
            'approver': ['plant.manager@example.com'],
            'cxoResponsible': ['coo@example.com'],
            'timeline': (today + timedelta(days=150)).isoformat(),
            'currentStatus': 'Received',
        },
    ]


def seed_issues(db, today: date = None):
    """Create the sample issues. Returns their ids."""
    issue_ids = []
    for record in sample_issues(today):
        issue_id = db.create_issue(record)
        issue_ids.append(issue_id)
        print(f"  Created issue: {record['process']} ({record['riskLevel']})")
    return issue_ids


def accept_last_issue(db, issue_ids):
    """Review the last sample issue as Accepted so a locked issue exists."""
    if not issue_ids:
        return
    db.append_evidence(issue_ids[-1], [{
        'entryType': 'text',
        'fileName': 'Comment',
        'content': 'Root-cause notes now mandatory above 1% variance.',
        'uploadedBy': 'stores@example.com',
    }])
    db.review_issue(issue_ids[-1], EVIDENCE_ACCEPTED, 'Evidence verified on site.', 'auditor@example.com')
    print("  Accepted evidence on the inventory issue")


def main():
    print("Audit Issue Tracker Seed Data Script")
    print("=" * 40)

    db = get_db()
    if db.count_issues():
        print(f"\nDatabase already has {db.count_issues()} issue(s); nothing to do.")
        return

    print("\n1. Creating issues...")
    issue_ids = seed_issues(db)

    print("\n2. Reviewing evidence...")
    accept_last_issue(db, issue_ids)

    print("\n" + "=" * 40)
    print("Seed data complete!")
    print(f"Created {len(issue_ids)} audit issues")


if __name__ == '__main__':
    main()

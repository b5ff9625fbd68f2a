"""
Due-date reports rendered as single-sheet XLSX workbooks.

next3 and next6 cover issues due from today up to (not including) the same
day three or six months ahead; overdue covers everything due before today.
"""

import calendar
import logging
from datetime import date
from io import BytesIO
from typing import Dict, List, Optional, Tuple

from openpyxl import Workbook

logger = logging.getLogger(__name__)

# report type -> (sheet name, months ahead; None for overdue)
REPORT_TYPES = {
    'next3': ('Next_3_Months_Report', 3),
    'next6': ('Next_6_Months_Report', 6),
    'overdue': ('Overdue_Report', None),
}

# (header, issue field)
REPORT_COLUMNS = [
    ('S.No', 'serialNumber'),
    ('FY', 'fiscalYear'),
    ('Process', 'process'),
    ('Entity Covered', 'entityCovered'),
    ('Observation', 'observation'),
    ('Risk Level', 'riskLevel'),
    ('Recommendation', 'recommendation'),
    ('Management Comment', 'managementComment'),
    ('Person Responsible', 'personResponsible'),
    ('Approver', 'approver'),
    ('CXO Responsible', 'cxoResponsible'),
    ('Co-Owner', 'coOwner'),
    ('Timeline', 'timeline'),
    ('Current Status', 'currentStatus'),
    ('Evidence Status', 'evidenceStatus'),
    ('Review Comments', 'reviewComments'),
]

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


class UnknownReportError(ValueError):
    def __init__(self, report_type: str):
        super().__init__('Invalid reportType. Use next3, next6 or overdue.')
        self.report_type = report_type


def add_months(day: date, months: int) -> date:
    """Add calendar months, clamping to the last day of the target month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def report_window(report_type: str, today: Optional[date] = None) -> Tuple[Optional[date], date]:
    """Return the [start, end) timeline window for a report type.

    A start of None means no lower bound (overdue).
    """
    if report_type not in REPORT_TYPES:
        raise UnknownReportError(report_type)
    today = today or date.today()
    months = REPORT_TYPES[report_type][1]
    if months is None:
        return None, today
    return today, add_months(today, months)


def _cell(value):
    if isinstance(value, list):
        return '; '.join(str(v) for v in value)
    return value


def render_workbook(sheet_name: str, issues: List[Dict]) -> bytes:
    """Write issues to a single-sheet workbook. The header row is always present."""
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name
    ws.append([header for header, _ in REPORT_COLUMNS])
    for issue in issues:
        ws.append([_cell(issue.get(field)) for _, field in REPORT_COLUMNS])
    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()


def build_report(db, report_type: str, today: Optional[date] = None) -> Tuple[str, bytes]:
    """Build a report. Returns (sheet name, xlsx bytes)."""
    start, end = report_window(report_type, today)
    sheet_name = REPORT_TYPES[report_type][0]
    issues = db.get_issues_due_between(start, end)
    logger.info(f"[Reports] {sheet_name}: {len(issues)} issue(s)")
    return sheet_name, render_workbook(sheet_name, issues)

"""
Spreadsheet import for audit issues.

Parses an uploaded CSV, TSV or XLSX file and maps each data row to an issue
record by fixed column position (the layout of the downloadable template).
Rows are inserted one at a time; a failing row is logged and counted and
the batch carries on.
"""

import csv
import io
import logging
import re
import sqlite3
import uuid
import zipfile
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from auth import split_emails
from workflow import normalize_import_status, normalize_risk_level

logger = logging.getLogger(__name__)

TEMPLATE_COLUMNS = [
    'S.No',
    'FY',
    'Process',
    'Entity Covered',
    'Observation',
    'Risk Level',
    'Recommendation',
    'Management Comment',
    'Person Responsible',
    'Approver',
    'CXO Responsible',
    'Timeline',
    'Current Status',
    'Evidence',
    'Review Comments',
    'Risk',
    'Annexure',
    'Action Required',
    'Further Comment by Management',
    'IA Comments',
    'Co-Owner',
    'Coverage Start Month',
    'Coverage End Month',
]

# Column positions
COL_FY = 1
COL_PROCESS = 2
COL_ENTITY = 3
COL_OBSERVATION = 4
COL_RISK_LEVEL = 5
COL_RECOMMENDATION = 6
COL_MANAGEMENT_COMMENT = 7
COL_PERSON_RESPONSIBLE = 8
COL_APPROVER = 9
COL_CXO = 10
COL_TIMELINE = 11
COL_STATUS = 12
COL_EVIDENCE = 13
COL_REVIEW_COMMENTS = 14
COL_RISK = 15
COL_ANNEXURE = 16
COL_ACTION_REQUIRED = 17
COL_MANAGEMENT_FURTHER = 18
COL_IA_COMMENTS = 19
COL_CO_OWNER = 20
COL_START_MONTH = 21
COL_END_MONTH = 22

# (column, entry label, uploadedBy) for text columns seeded into the evidence trail
SEEDED_TEXT_COLUMNS = [
    (COL_EVIDENCE, 'Evidence', 'Import'),
    (COL_MANAGEMENT_FURTHER, 'CXO Comment', 'CXO (import)'),
    (COL_IA_COMMENTS, 'Auditor Comment', 'Auditor (import)'),
]

DATE_FORMATS = [
    '%Y-%m-%d',
    '%d-%m-%Y',
    '%d/%m/%Y',
    '%m/%d/%Y',
    '%Y/%m/%d',
    '%d.%m.%Y',
    '%d-%b-%Y',
    '%d-%b-%y',
    '%d %b %Y',
    '%d %B %Y',
    '%b %d, %Y',
    '%B %d, %Y',
]

EXCEL_EPOCH = date(1899, 12, 30)
MAX_EXCEL_SERIAL = 2958465  # 9999-12-31


class SpreadsheetError(ValueError):
    """Raised when an uploaded file cannot be read as a spreadsheet."""


def read_rows(filename: str, data: bytes) -> List[List[Any]]:
    """Read the first sheet of a CSV/TSV/XLSX file into a list of rows."""
    name = (filename or '').lower()
    if name.endswith(('.xlsx', '.xlsm')):
        try:
            wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError) as e:
            raise SpreadsheetError(f"Could not read workbook: {e}")
        try:
            ws = wb.worksheets[0]
            return [list(row) for row in ws.iter_rows(values_only=True)]
        finally:
            wb.close()

    if name.endswith(('.csv', '.tsv', '.txt')):
        try:
            text = data.decode('utf-8-sig')
        except UnicodeDecodeError:
            text = data.decode('latin-1')
        delimiter = '\t' if name.endswith('.tsv') else ','
        return [row for row in csv.reader(io.StringIO(text), delimiter=delimiter)]

    raise SpreadsheetError('Unsupported file type. Upload a .csv, .tsv or .xlsx file')


def _cell_text(value) -> str:
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def is_blank_row(row: List[Any]) -> bool:
    return all(_cell_text(cell) == '' for cell in row)


def parse_date(value) -> Optional[str]:
    """Parse a timeline cell into an ISO date string, or None.

    Accepts date/datetime cells, Excel serial numbers and the common
    text formats in DATE_FORMATS.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)):
        if 0 < value <= MAX_EXCEL_SERIAL:
            return (EXCEL_EPOCH + timedelta(days=int(value))).isoformat()
        return None

    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r'\d+(\.\d+)?', text):
        return parse_date(float(text))
    if re.match(r'\d{4}-\d{2}-\d{2}T', text):
        text = text[:10]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def map_row(row: List[Any]) -> Dict[str, Any]:
    """Map one data row to an issue record by column position."""
    def cell(index):
        return row[index] if index < len(row) else None

    def text(index):
        return _cell_text(cell(index))

    now = datetime.now().isoformat(timespec='microseconds')

    evidence = []
    for column, label, uploaded_by in SEEDED_TEXT_COLUMNS:
        content = text(column)
        if content:
            evidence.append({
                'id': uuid.uuid4().hex,
                'entryType': 'text',
                'fileName': label,
                'fileType': 'text/plain',
                'fileSize': len(content),
                'content': content,
                'uploadedAt': now,
                'uploadedBy': uploaded_by,
            })

    annexure = [
        {'name': name.strip(), 'uploadedAt': now}
        for name in re.split(r'[;,]', text(COL_ANNEXURE)) if name.strip()
    ]

    return {
        'id': str(uuid.uuid4()),
        'fiscalYear': text(COL_FY),
        'date': date.today().isoformat(),
        'process': text(COL_PROCESS),
        'entityCovered': text(COL_ENTITY),
        'observation': text(COL_OBSERVATION),
        'riskLevel': normalize_risk_level(text(COL_RISK_LEVEL)),
        'recommendation': text(COL_RECOMMENDATION),
        'managementComment': text(COL_MANAGEMENT_COMMENT),
        'personResponsible': split_emails(text(COL_PERSON_RESPONSIBLE)),
        'approver': split_emails(text(COL_APPROVER)),
        'cxoResponsible': split_emails(text(COL_CXO)),
        'coOwner': split_emails(text(COL_CO_OWNER)),
        'timeline': parse_date(cell(COL_TIMELINE)),
        'currentStatus': normalize_import_status(text(COL_STATUS)),
        'reviewComments': text(COL_REVIEW_COMMENTS),
        'risk': text(COL_RISK),
        'actionRequired': text(COL_ACTION_REQUIRED),
        'startMonth': text(COL_START_MONTH),
        'endMonth': text(COL_END_MONTH),
        'evidenceReceived': evidence,
        'annexure': annexure,
    }


def import_spreadsheet(db, filename: str, data: bytes) -> Dict[str, Any]:
    """Import every non-blank data row as a new issue.

    Returns {message, imported, failed, skipped}. Raises SpreadsheetError
    when the file has no header plus data row.
    """
    rows = read_rows(filename, data)
    data_rows = rows[1:]
    records = [row for row in data_rows if not is_blank_row(row)]
    if not rows or not records:
        raise SpreadsheetError('File must contain a header row and at least one data row')

    skipped = len(data_rows) - len(records)
    imported = 0
    failed = 0
    for line_number, row in enumerate(data_rows, start=2):
        if is_blank_row(row):
            continue
        try:
            db.create_issue(map_row(row))
            imported += 1
        except (sqlite3.Error, ValueError) as e:
            failed += 1
            logger.warning(f"[Import] Row {line_number} of {filename} failed: {e}")

    logger.info(f"[Import] {filename}: {imported} imported, {failed} failed, {skipped} skipped")
    message = f"Imported {imported} row(s)" + (f", {failed} failed." if failed else ".")
    return {'message': message, 'imported': imported, 'failed': failed, 'skipped': skipped}


def build_template_csv() -> str:
    """Header-only CSV template for bulk upload."""
    buffer = io.StringIO()
    csv.writer(buffer).writerow(TEMPLATE_COLUMNS)
    return buffer.getvalue()

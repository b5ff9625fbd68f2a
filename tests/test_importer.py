"""Tests for spreadsheet import."""
import csv
import io
import sqlite3
from datetime import date, datetime

import pytest
from openpyxl import Workbook

from importer import (
    TEMPLATE_COLUMNS, SpreadsheetError, build_template_csv, import_spreadsheet,
    is_blank_row, map_row, parse_date, read_rows
)


def make_row(**cells):
    """A template-width row with the given column positions filled."""
    row = [''] * len(TEMPLATE_COLUMNS)
    for index, value in cells.items():
        row[int(index.lstrip('c'))] = value
    return row


def to_csv(rows, delimiter=','):
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter)
    writer.writerow(TEMPLATE_COLUMNS)
    writer.writerows(rows)
    return buffer.getvalue().encode('utf-8')


def to_xlsx(rows):
    wb = Workbook()
    ws = wb.active
    ws.append(TEMPLATE_COLUMNS)
    for row in rows:
        ws.append(row)
    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()


class TestImportScenarios:
    """End-to-end imports into a real database."""

    def test_single_row_normalised(self, test_db):
        data = to_csv([make_row(c1='FY2025', c2='Payroll', c4='Ghost employees',
                                c5='HIGH', c12='Partially received', c8='hr.lead')])
        result = import_spreadsheet(test_db, 'issues.csv', data)
        assert result['imported'] == 1
        assert result['failed'] == 0
        issue = test_db.get_all_issues()[0]
        assert issue['riskLevel'] == 'high'
        assert issue['currentStatus'] == 'Partially Received'
        assert issue['personResponsible'] == ['hr.lead@example.com']
        assert issue['serialNumber'] == 1

    def test_blank_rows_skipped_not_counted(self, test_db):
        data = to_csv([make_row(c4='One'), [''] * 5, ['  ', ''], make_row(c4='Two')])
        result = import_spreadsheet(test_db, 'issues.csv', data)
        assert result == {
            'message': 'Imported 2 row(s).', 'imported': 2, 'failed': 0, 'skipped': 2,
        }
        assert test_db.count_issues() == 2

    def test_header_only_rejected(self, test_db):
        with pytest.raises(SpreadsheetError):
            import_spreadsheet(test_db, 'issues.csv', to_csv([]))

    def test_only_blank_data_rows_rejected(self, test_db):
        with pytest.raises(SpreadsheetError):
            import_spreadsheet(test_db, 'issues.csv', to_csv([[''] * 3]))

    def test_each_row_is_new_issue(self, test_db):
        row = make_row(c4='Same observation')
        import_spreadsheet(test_db, 'issues.csv', to_csv([row]))
        import_spreadsheet(test_db, 'issues.csv', to_csv([row]))
        issues = test_db.get_all_issues()
        assert len(issues) == 2
        assert issues[0]['id'] != issues[1]['id']

    def test_row_failures_counted(self, test_db):
        class FlakyDb:
            def __init__(self):
                self.calls = 0

            def create_issue(self, record):
                self.calls += 1
                if self.calls == 2:
                    raise sqlite3.IntegrityError('boom')
                return test_db.create_issue(record)

        data = to_csv([make_row(c4='a'), make_row(c4='b'), make_row(c4='c')])
        result = import_spreadsheet(FlakyDb(), 'issues.csv', data)
        assert result['imported'] == 2
        assert result['failed'] == 1
        assert result['message'] == 'Imported 2 row(s), 1 failed.'

    def test_tsv(self, test_db):
        data = to_csv([make_row(c4='Tabbed', c5='low')], delimiter='\t')
        result = import_spreadsheet(test_db, 'issues.tsv', data)
        assert result['imported'] == 1
        assert test_db.get_all_issues()[0]['riskLevel'] == 'low'

    def test_xlsx_with_date_and_serial_timelines(self, test_db):
        rows = [
            make_row(c4='Dated', c11=datetime(2025, 6, 30)),
            make_row(c4='Serial', c11=45658),
        ]
        result = import_spreadsheet(test_db, 'issues.xlsx', to_xlsx(rows))
        assert result['imported'] == 2
        timelines = {i['observation']: i['timeline'] for i in test_db.get_all_issues()}
        assert timelines == {'Dated': '2025-06-30', 'Serial': '2025-01-01'}

    def test_unsupported_file_type(self, test_db):
        with pytest.raises(SpreadsheetError):
            import_spreadsheet(test_db, 'issues.pdf', b'%PDF')

    def test_corrupt_workbook(self, test_db):
        with pytest.raises(SpreadsheetError):
            read_rows('issues.xlsx', b'not a zip file')


class TestRowMapping:
    """Positional column mapping."""

    def test_short_row_defaults(self):
        record = map_row(['1', 'FY2024', 'Sales'])
        assert record['fiscalYear'] == 'FY2024'
        assert record['process'] == 'Sales'
        assert record['observation'] == ''
        assert record['riskLevel'] == 'medium'
        assert record['currentStatus'] == 'To Be Received'
        assert record['timeline'] is None
        assert record['evidenceReceived'] == []

    def test_serial_column_discarded(self):
        record = map_row(make_row(c0='99', c4='x'))
        assert '99' not in record.values()
        assert 'serialNumber' not in record

    def test_seeded_text_evidence_order(self):
        record = map_row(make_row(c13='Policy attached', c18='Will fix by Q3', c19='Follow up'))
        entries = record['evidenceReceived']
        assert [e['fileName'] for e in entries] == ['Evidence', 'CXO Comment', 'Auditor Comment']
        assert [e['content'] for e in entries] == ['Policy attached', 'Will fix by Q3', 'Follow up']
        assert all(e['entryType'] == 'text' for e in entries)

    def test_annexure_names(self):
        record = map_row(make_row(c16='a.pdf; b.xlsx,'))
        assert [a['name'] for a in record['annexure']] == ['a.pdf', 'b.xlsx']
        assert all('path' not in a for a in record['annexure'])

    def test_multi_valued_stakeholders(self):
        record = map_row(make_row(c9='x@corp.com; Y@corp.com', c20='co.owner'))
        assert record['approver'] == ['x@corp.com', 'y@corp.com']
        assert record['coOwner'] == ['co.owner@example.com']

    def test_coverage_months(self):
        record = map_row(make_row(c21='Apr-24', c22='Mar-25'))
        assert (record['startMonth'], record['endMonth']) == ('Apr-24', 'Mar-25')

    def test_is_blank_row(self):
        assert is_blank_row(['', '  ', None])
        assert not is_blank_row(['', 'x'])


class TestParseDate:
    """Timeline parsing."""

    @pytest.mark.parametrize('raw,expected', [
        ('2025-03-31', '2025-03-31'),
        ('31/03/2025', '2025-03-31'),
        ('31-Mar-2025', '2025-03-31'),
        ('March 31, 2025', '2025-03-31'),
        ('2025-03-31T10:15:00Z', '2025-03-31'),
        (datetime(2025, 3, 31, 10, 0), '2025-03-31'),
        (date(2025, 3, 31), '2025-03-31'),
        (45747, '2025-03-31'),
        ('45747', '2025-03-31'),
        ('not a date', None),
        ('', None),
        (None, None),
        (-5, None),
    ])
    def test_parse(self, raw, expected):
        assert parse_date(raw) == expected


class TestTemplate:
    """Downloadable CSV template."""

    def test_template_header(self):
        rows = list(csv.reader(io.StringIO(build_template_csv())))
        assert rows == [TEMPLATE_COLUMNS]
        assert len(TEMPLATE_COLUMNS) == 23
        assert TEMPLATE_COLUMNS[0] == 'S.No'

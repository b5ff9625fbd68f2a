"""
Table view, analytics and viewer roles over a list of issue records.

Works on the API-shaped dicts returned by the database layer, so the same
list that backs GET /api/audit-issues can be expanded, searched, filtered,
sorted and aggregated without another query.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

from workflow import CURRENT_STATUSES, RISK_LEVELS, STATUS_CLOSED, STATUS_RECEIVED

# Query parameter -> how a row is matched
FILTER_FIELDS = ('currentStatus', 'riskLevel', 'fiscalYear', 'process', 'entity', 'cxo')

SORTABLE_FIELDS = {
    'serialNumber', 'displaySerial', 'fiscalYear', 'date', 'process', 'entity',
    'entityCovered', 'observation', 'riskLevel', 'recommendation', 'personResponsible',
    'approver', 'cxoResponsible', 'timeline', 'currentStatus', 'evidenceStatus',
    'createdAt', 'updatedAt',
}

DEFAULT_SORT = [('serialNumber', False)]

# Role labels, in display order
ROLE_CXO = 'CXO'
ROLE_APPROVER = 'Approver'
ROLE_PERSON_RESPONSIBLE = 'Person Responsible'
VIEWER_ROLE_FIELDS = [
    (ROLE_CXO, 'cxoResponsible'),
    (ROLE_APPROVER, 'approver'),
    (ROLE_PERSON_RESPONSIBLE, 'personResponsible'),
]


def split_entities(value) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in re.split(r'[;,]', str(value)) if part.strip()]


def _letter_suffix(index: int) -> str:
    """0 -> a, 25 -> z, 26 -> aa."""
    suffix = ''
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        suffix = chr(ord('a') + remainder) + suffix
    return suffix


def expand_rows(issues: List[Dict]) -> List[Dict]:
    """One row per covered entity.

    An issue covering a single entity keeps its serial as displaySerial;
    one covering several becomes rows 12a, 12b, ... each carrying the
    parent's other fields.
    """
    rows = []
    for issue in issues:
        entities = split_entities(issue.get('entityCovered'))
        serial = str(issue.get('serialNumber'))
        if len(entities) <= 1:
            rows.append(dict(issue, displaySerial=serial, entity=entities[0] if entities else ''))
            continue
        for index, entity in enumerate(entities):
            rows.append(dict(issue, displaySerial=f"{serial}{_letter_suffix(index)}", entity=entity))
    return rows


def _as_text(value) -> str:
    if value is None:
        return ''
    if isinstance(value, list):
        return ' '.join(_as_text(v) for v in value)
    if isinstance(value, dict):
        return ' '.join(_as_text(v) for v in value.values())
    return str(value)


def matches_search(row: Dict, search: str) -> bool:
    needle = search.strip().lower()
    if not needle:
        return True
    return any(needle in _as_text(value).lower() for value in row.values())


def filter_rows(rows: List[Dict], search: Optional[str] = None,
                filters: Optional[Dict[str, str]] = None) -> List[Dict]:
    """Apply free-text search and facet filters. A filter of 'all' or '' is ignored."""
    active = {k: v for k, v in (filters or {}).items()
              if k in FILTER_FIELDS and v and v != 'all'}
    out = []
    for row in rows:
        if search and not matches_search(row, search):
            continue
        matched = True
        for field, wanted in active.items():
            if field == 'cxo':
                matched = wanted.strip().lower() in (row.get('cxoResponsible') or [])
            else:
                matched = str(row.get(field) or '') == wanted
            if not matched:
                break
        if matched:
            out.append(row)
    return out


def parse_sort(value: Optional[str]) -> List[Tuple[str, bool]]:
    """Parse 'field:asc,other:desc' into [(field, descending)].

    Unknown fields are dropped; an unknown direction is ascending.
    """
    keys = []
    for part in (value or '').split(','):
        field, _, direction = part.strip().partition(':')
        field = field.strip()
        if field in SORTABLE_FIELDS:
            keys.append((field, direction.strip().lower() == 'desc'))
    return keys or list(DEFAULT_SORT)


def _sort_value(value):
    if isinstance(value, list):
        value = '; '.join(str(v) for v in value)
    if isinstance(value, str):
        value = value.strip().lower()
        return value or None
    return value


def sort_rows(rows: List[Dict], keys: List[Tuple[str, bool]]) -> List[Dict]:
    """Stable multi-field sort. Missing values always sort last."""
    out = list(rows)
    for field, descending in reversed(keys):
        present = [r for r in out if _sort_value(r.get(field)) is not None]
        missing = [r for r in out if _sort_value(r.get(field)) is None]
        present.sort(key=lambda r: _sort_value(r.get(field)), reverse=descending)
        out = present + missing
    return out


def facet_values(issues: List[Dict]) -> Dict[str, List[str]]:
    """Sorted distinct values for each filter dropdown."""
    facets = {field: set() for field in FILTER_FIELDS}
    for issue in issues:
        for field in ('currentStatus', 'riskLevel', 'fiscalYear', 'process'):
            if issue.get(field):
                facets[field].add(str(issue[field]))
        facets['entity'].update(split_entities(issue.get('entityCovered')))
        facets['cxo'].update(issue.get('cxoResponsible') or [])
    return {field: sorted(values) for field, values in facets.items()}


def build_table(issues: List[Dict], search: Optional[str] = None,
                filters: Optional[Dict[str, str]] = None, sort: Optional[str] = None) -> Dict:
    rows = sort_rows(filter_rows(expand_rows(issues), search, filters), parse_sort(sort))
    return {'rows': rows, 'facets': facet_values(issues), 'total': len(rows)}


def _is_received(issue: Dict) -> bool:
    return issue.get('currentStatus') in (STATUS_RECEIVED, STATUS_CLOSED)


def analytics(issues: List[Dict]) -> Dict[str, Any]:
    """Dashboard aggregates. Closed issues count as received."""
    total = len(issues)
    received = sum(1 for i in issues if _is_received(i))

    by_process: Dict[str, int] = {}
    by_entity: Dict[str, int] = {}
    by_cxo: Dict[str, Dict[str, int]] = {}
    by_year: Dict[str, Dict[str, int]] = {}
    for issue in issues:
        process = issue.get('process') or ''
        by_process[process] = by_process.get(process, 0) + 1
        for entity in split_entities(issue.get('entityCovered')) or ['']:
            by_entity[entity] = by_entity.get(entity, 0) + 1
        for cxo in issue.get('cxoResponsible') or []:
            counts = by_cxo.setdefault(cxo, {'received': 0, 'pending': 0})
            counts['received' if _is_received(issue) else 'pending'] += 1
        year = by_year.setdefault(issue.get('fiscalYear') or '', {'total': 0, 'high': 0})
        year['total'] += 1
        if issue.get('riskLevel') == 'high':
            year['high'] += 1

    return {
        'totalIssues': total,
        'highRiskIssues': sum(1 for i in issues if i.get('riskLevel') == 'high'),
        'received': received,
        'pending': total - received,
        'completionRate': round(received / total * 100, 1) if total else 0.0,
        'byStatus': {s: sum(1 for i in issues if i.get('currentStatus') == s) for s in CURRENT_STATUSES},
        'byRisk': {r: sum(1 for i in issues if i.get('riskLevel') == r) for r in RISK_LEVELS},
        'byProcess': [{'name': k, 'value': v} for k, v in sorted(by_process.items())],
        'byCxo': [{'name': k, **v} for k, v in sorted(by_cxo.items())],
        'byFiscalYear': [{'year': k, **v} for k, v in sorted(by_year.items())],
        'byEntity': [{'name': k, 'value': v} for k, v in sorted(by_entity.items())],
    }


def viewer_roles(issues: List[Dict], viewer: str) -> List[str]:
    """Roles the viewer holds on any issue, in the order CXO, Approver, Person Responsible."""
    return [label for label, field in VIEWER_ROLE_FIELDS
            if any(viewer in (issue.get(field) or []) for issue in issues)]


def capabilities(issue: Dict, viewer: str) -> Dict[str, bool]:
    """Per-issue actions for the viewer. Nothing is allowed on a locked issue."""
    locked = bool(issue.get('isLocked'))
    return {
        'canComment': not locked and (viewer in (issue.get('cxoResponsible') or [])
                                      or viewer in (issue.get('approver') or [])),
        'canUploadEvidence': not locked and viewer in (issue.get('personResponsible') or []),
    }

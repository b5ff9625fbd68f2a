from flask import Flask, request, jsonify, send_from_directory, send_file, Response, g
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename
from io import BytesIO
import logging
import mimetypes
import os
import sqlite3
import uuid
from datetime import datetime

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

load_dotenv()

# Development mode flag - set DEV_MODE=true for development features
DEV_MODE = os.environ.get('DEV_MODE', 'false').lower() in ('true', '1', 'yes')

from database import get_db, EDITABLE_FIELDS, STAKEHOLDER_ROLES
from auth import (
    get_actor, get_auditor_emails, is_auditor, normalize_email, resolve_role,
    require_actor, require_auditor, split_emails
)
from workflow import (
    IssueLockedError, WorkflowError, normalize_risk_level, normalize_status,
    validate_evidence_status
)
from importer import SpreadsheetError, build_template_csv, import_spreadsheet, parse_date
from reports import REPORT_TYPES, XLSX_MIMETYPE, build_report
from notifications import (
    GraphMailer, build_mailer_from_env, comment_email, edit_email, evidence_email,
    new_issue_email, notify, review_email, stakeholder_emails
)
from reminders import send_due_reminders, start_reminder_thread
from issue_table import FILTER_FIELDS, analytics, build_table, capabilities, viewer_roles

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

app = Flask(__name__, static_folder=None)

# File upload configuration
UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER') or os.path.join(BASE_DIR, 'uploads')
ALLOWED_EXTENSIONS = {
    'pdf', 'doc', 'docx', 'xls', 'xlsx', 'xlsm', 'csv', 'tsv', 'ppt', 'pptx',
    'msg', 'eml', 'txt', 'png', 'jpg', 'jpeg', 'gif', 'zip'
}
MAX_CONTENT_LENGTH = int(os.environ.get('MAX_CONTENT_LENGTH', 50 * 1024 * 1024))  # 50MB max upload

# Built frontend (index.html + assets)
FRONTEND_DIST = os.environ.get('FRONTEND_DIST') or os.path.join(BASE_DIR, 'dist')

app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
app.config['MAX_CONTENT_LENGTH'] = MAX_CONTENT_LENGTH
app.config['FRONTEND_DIST'] = FRONTEND_DIST

# Ensure upload folder exists
os.makedirs(UPLOAD_FOLDER, exist_ok=True)

# Plain text fields copied from request bodies
TEXT_FIELDS = [
    'fiscalYear', 'process', 'entityCovered', 'observation', 'recommendation',
    'managementComment', 'reviewComments', 'risk', 'actionRequired', 'startMonth', 'endMonth'
]


# ==================== Security Middleware ====================

@app.after_request
def add_security_headers(response):
    """Add security headers to all responses."""
    # Prevent MIME type sniffing
    response.headers['X-Content-Type-Options'] = 'nosniff'
    # Prevent clickjacking
    response.headers['X-Frame-Options'] = 'SAMEORIGIN'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    response.headers['Permissions-Policy'] = 'geolocation=(), microphone=(), camera=()'
    return response


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS

# Initialize database and mail
db = get_db()
mailer = build_mailer_from_env()


# ==================== Error Response Helpers ====================

def error_response(message: str, status_code: int = 400):
    """Return a standardized JSON error response."""
    return jsonify({'error': message}), status_code


def not_found_response(entity: str = 'Resource'):
    """Return a standardized 404 response."""
    return jsonify({'error': f'{entity} not found'}), 404


@app.errorhandler(WorkflowError)
def handle_workflow_error(e):
    return error_response(str(e))


@app.errorhandler(SpreadsheetError)
def handle_spreadsheet_error(e):
    return error_response(str(e))


@app.errorhandler(IssueLockedError)
def handle_locked_issue(e):
    return error_response('Issue is locked (evidence accepted) and can no longer be changed', 423)


@app.errorhandler(404)
def handle_not_found(e):
    return error_response('Not found', 404)


@app.errorhandler(405)
def handle_method_not_allowed(e):
    return error_response('Method not allowed', 405)


@app.errorhandler(413)
def handle_too_large(e):
    limit_mb = app.config['MAX_CONTENT_LENGTH'] // (1024 * 1024)
    return error_response(f'Upload too large. Maximum size is {limit_mb}MB', 413)


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return error_response(e.description, e.code)
    logger.exception(f"Unhandled error on {request.method} {request.path}")
    return error_response('Internal server error', 500)


# ==================== Request Helpers ====================

def _now() -> str:
    return datetime.now().isoformat(timespec='microseconds')


def _request_data() -> dict:
    """JSON body, or the form fields of a multipart request.

    Stakeholder fields may repeat in a form, one part per email.
    """
    if request.is_json:
        return request.get_json(silent=True) or {}
    data = request.form.to_dict()
    for field in STAKEHOLDER_ROLES:
        if field in request.form:
            data[field] = request.form.getlist(field)
    return data


def _visible_issues():
    """Issues the requesting viewer may see, honouring ?viewer= and ?scope=.

    Returns (issues, error_response_or_None).
    """
    viewer = normalize_email(request.args.get('viewer'))
    if not viewer:
        return db.get_all_issues(), None
    if request.args.get('scope', 'mine') == 'all':
        if not is_auditor(viewer):
            return None, error_response('Only auditors can view all issues', 403)
        return db.get_all_issues(), None
    return db.get_issues_for_viewer(viewer), None


def _issue_fields(data: dict, partial: bool = False) -> dict:
    """Normalise issue fields from a request body.

    With partial=True only the fields present in the body are returned.
    """
    record = {}
    for field in TEXT_FIELDS:
        if field in data or not partial:
            record[field] = str(data.get(field) or '').strip()
    if 'riskLevel' in data or not partial:
        record['riskLevel'] = normalize_risk_level(data.get('riskLevel'))
    if 'timeline' in data or not partial:
        record['timeline'] = parse_date(data.get('timeline'))
    if parse_date(data.get('date')):
        record['date'] = parse_date(data.get('date'))
    for field in STAKEHOLDER_ROLES:
        if field in data or not partial:
            record[field] = split_emails(data.get(field))
    return record


def _process_file_upload(file):
    """Save an uploaded file under a unique name and return its metadata.

    Raises ValueError on validation errors.
    """
    if file.filename == '':
        raise ValueError('No file selected')

    if not allowed_file(file.filename):
        raise ValueError(f'File type not allowed. Allowed: {", ".join(sorted(ALLOWED_EXTENSIONS))}')

    original_filename = secure_filename(file.filename) or 'upload'
    ext = original_filename.rsplit('.', 1)[1].lower() if '.' in original_filename else ''
    unique_filename = f"{uuid.uuid4().hex}.{ext}" if ext else uuid.uuid4().hex

    filepath = os.path.join(app.config['UPLOAD_FOLDER'], unique_filename)
    file.save(filepath)

    try:
        file_size = os.path.getsize(filepath)
        mime_type = mimetypes.guess_type(original_filename)[0] or file.mimetype or 'application/octet-stream'
        return {
            'filepath': filepath,
            'original_filename': original_filename,
            'unique_filename': unique_filename,
            'file_size': file_size,
            'mime_type': mime_type,
        }
    except OSError:
        # Clean up file on failure
        if os.path.exists(filepath):
            os.remove(filepath)
        raise


def _remove_files(paths):
    for path in paths:
        if os.path.exists(path):
            os.remove(path)


def _text_entry(label: str, content: str, uploaded_by: str, uploaded_at: str) -> dict:
    return {
        'id': uuid.uuid4().hex,
        'entryType': 'text',
        'fileName': label,
        'fileType': 'text/plain',
        'fileSize': len(content),
        'content': content,
        'uploadedAt': uploaded_at,
        'uploadedBy': uploaded_by,
    }


# ==================== Audit Issues API ====================

@app.route('/api/audit-issues', methods=['GET'])
def list_audit_issues():
    """List issues, newest first. ?viewer= limits to that viewer's issues."""
    issues, error = _visible_issues()
    if error:
        return error
    return jsonify(issues)


@app.route('/api/audit-issues', methods=['POST'])
def create_audit_issue():
    """Create an issue from JSON or multipart (with 'annexure' files)."""
    data = _request_data()
    record = _issue_fields(data)
    if not record['observation'] or not record['process']:
        return error_response('observation and process are required')
    record['currentStatus'] = normalize_status(data.get('currentStatus'))

    saved = []
    annexures = []
    try:
        for file in request.files.getlist('annexure'):
            info = _process_file_upload(file)
            saved.append(info['filepath'])
            annexures.append({
                'name': info['original_filename'],
                'path': f"/uploads/{info['unique_filename']}",
                'size': info['file_size'],
                'type': info['mime_type'],
                'uploadedAt': _now(),
            })
        record['annexure'] = annexures
        issue_id = db.create_issue(record)
    except ValueError as e:
        _remove_files(saved)
        return error_response(str(e))
    except sqlite3.Error:
        _remove_files(saved)
        raise

    issue = db.get_issue(issue_id)
    logger.info(f"[Issues] Created issue {issue['serialNumber']} ({issue_id})")
    notify(mailer, get_auditor_emails(), new_issue_email(issue), cc=stakeholder_emails(issue))
    return jsonify(issue), 201


@app.route('/api/audit-issues/<issue_id>', methods=['GET'])
def get_audit_issue(issue_id):
    issue = db.get_issue(issue_id)
    if not issue:
        return not_found_response('Audit issue')
    return jsonify(issue)


@app.route('/api/audit-issues/<issue_id>', methods=['PUT'])
def update_audit_issue(issue_id):
    """Edit an issue's descriptive fields and stakeholders.

    Status fields only change through review and close. An edit by an
    auditor sends a diff of the changed fields.
    """
    data = request.get_json(silent=True) or {}
    before = db.get_issue(issue_id)
    if not before:
        return not_found_response('Audit issue')

    changes = {k: v for k, v in _issue_fields(data, partial=True).items()
               if k in EDITABLE_FIELDS or k in STAKEHOLDER_ROLES}
    after = db.update_issue(issue_id, changes)
    if after is None:
        return not_found_response('Audit issue')

    actor = get_actor()
    if is_auditor(actor):
        message = edit_email(before, after, actor)
        if message:
            notify(mailer, get_auditor_emails(), message, cc=stakeholder_emails(after))
    return jsonify(after)


@app.route('/api/audit-issues/<issue_id>/close', methods=['POST'])
@require_auditor
def close_audit_issue(issue_id):
    if not db.close_issue(issue_id, closed_by=g.actor):
        return not_found_response('Audit issue')
    logger.info(f"[Issues] {issue_id} closed by {g.actor}")
    return jsonify(db.get_issue(issue_id))


# ==================== Import / Template ====================

@app.route('/api/audit-issues/upload', methods=['POST'])
def upload_audit_issues():
    """Bulk import issues from a CSV/TSV/XLSX file in the 'file' field."""
    if 'file' not in request.files:
        return error_response('No file uploaded')
    file = request.files['file']
    if file.filename == '':
        return error_response('No file selected')
    return jsonify(import_spreadsheet(db, file.filename, file.read()))


@app.route('/api/audit-issues/template', methods=['GET'])
def download_template():
    return Response(
        build_template_csv(),
        mimetype='text/csv',
        headers={'Content-Disposition': 'attachment; filename=audit_issues_template.csv'}
    )


# ==================== Evidence ====================

@app.route('/api/audit-issues/<issue_id>/evidence', methods=['POST'])
def upload_evidence(issue_id):
    """Attach evidence files and/or a text note to an issue.

    Entry order: justification, comment, then one entry per file.
    """
    issue = db.get_issue(issue_id)
    if not issue:
        return not_found_response('Audit issue')
    if issue['isLocked']:
        raise IssueLockedError(issue_id)

    uploaded_by = (request.form.get('uploadedBy') or '').strip() or 'Unknown'
    text = (request.form.get('textEvidence') or '').strip()
    justification = (request.form.get('justification') or '').strip()
    files = [f for f in request.files.getlist('evidence') if f and f.filename]
    if not files and not text and not justification:
        return error_response('Provide at least one file or a text comment')

    now = _now()
    entries = []
    if justification:
        entries.append(_text_entry('Justification', justification, uploaded_by, now))
    if text:
        entries.append(_text_entry('Comment', text, uploaded_by, now))

    saved = []
    try:
        for file in files:
            info = _process_file_upload(file)
            saved.append(info['filepath'])
            entries.append({
                'id': uuid.uuid4().hex,
                'entryType': 'file',
                'fileName': info['original_filename'],
                'fileType': info['mime_type'],
                'fileSize': info['file_size'],
                'path': f"/uploads/{info['unique_filename']}",
                'uploadedAt': now,
                'uploadedBy': uploaded_by,
            })
        new_evidence = db.append_evidence(issue_id, entries)
    except ValueError as e:
        _remove_files(saved)
        return error_response(str(e))
    except Exception:
        _remove_files(saved)
        raise

    if new_evidence is None:
        _remove_files(saved)
        return not_found_response('Audit issue')

    logger.info(f"[Evidence] {len(new_evidence)} entr(ies) added to {issue_id} by {uploaded_by}")
    message = evidence_email(issue, uploaded_by, len(files), text or justification)
    for field in ('personResponsible', 'cxoResponsible', 'approver'):
        notify(mailer, issue[field], message)
    return jsonify({'success': True, 'newEvidence': new_evidence})


@app.route('/api/audit-issues/<issue_id>/evidence/<evidence_id>', methods=['DELETE'])
@require_actor
def delete_evidence(issue_id, evidence_id):
    """Remove one evidence entry. Person responsible only."""
    issue = db.get_issue(issue_id)
    if not issue:
        return not_found_response('Audit issue')
    if g.actor not in issue['personResponsible']:
        return error_response('Only the person responsible can remove evidence', 403)

    entry = next((e for e in issue['evidenceReceived'] if e['id'] == evidence_id), None)
    removed = db.remove_evidence(issue_id, evidence_id)
    if removed is None:
        return not_found_response('Audit issue')
    if not removed:
        return not_found_response('Evidence item')

    # Delete file from disk
    if entry and entry.get('path'):
        filepath = os.path.join(app.config['UPLOAD_FOLDER'], os.path.basename(entry['path']))
        if os.path.exists(filepath):
            os.remove(filepath)
    return jsonify({'success': True})


# ==================== Review / Comments / Activity ====================

@app.route('/api/audit-issues/<issue_id>/review', methods=['PUT'])
def review_evidence(issue_id):
    """Record a review outcome; currentStatus follows the evidence status."""
    data = request.get_json(silent=True) or {}
    evidence_status = validate_evidence_status(data.get('evidenceStatus'))
    review_comments = str(data.get('reviewComments') or '').strip()
    reviewed_by = normalize_email(data.get('reviewedBy')) or None

    updated = db.review_issue(issue_id, evidence_status, review_comments, reviewed_by)
    if updated is None:
        return not_found_response('Audit issue')

    logger.info(f"[Review] {issue_id} -> {evidence_status} ({updated['currentStatus']})")
    message = review_email(updated, evidence_status, review_comments)
    for field in ('personResponsible', 'cxoResponsible'):
        notify(mailer, updated[field], message)
    return jsonify(updated)


@app.route('/api/audit-issues/<issue_id>/comments', methods=['POST'])
@require_actor
def add_issue_comment(issue_id):
    data = request.get_json(silent=True) or {}
    content = str(data.get('content') or '').strip()
    if not content:
        return error_response('Comment content is required')

    issue = db.get_issue(issue_id)
    if not issue:
        return not_found_response('Audit issue')
    if not (is_auditor(g.actor) or g.actor in stakeholder_emails(issue)):
        return error_response('Only auditors and stakeholders of this issue can comment', 403)

    activity = db.add_comment(issue_id, g.actor, content)
    if activity is None:
        return not_found_response('Audit issue')

    notify(mailer, get_auditor_emails(), comment_email(issue, g.actor, content),
           cc=stakeholder_emails(issue))
    return jsonify(activity), 201


@app.route('/api/audit-issues/<issue_id>/activity', methods=['GET'])
def get_issue_activity(issue_id):
    """Activity feed for an issue, newest first."""
    if not db.get_issue(issue_id):
        return not_found_response('Audit issue')
    return jsonify(db.get_activity(issue_id))


# ==================== Reports / Table / Analytics ====================

@app.route('/api/audit-issues/reports/<report_type>', methods=['GET'])
def download_report(report_type):
    if report_type not in REPORT_TYPES:
        return error_response('Invalid reportType. Use next3, next6 or overdue.')
    sheet_name, content = build_report(db, report_type)
    return send_file(
        BytesIO(content),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name=f"{sheet_name}.xlsx"
    )


@app.route('/api/audit-issues/table', methods=['GET'])
def audit_issue_table():
    """Expanded, filtered and sorted rows plus filter facets."""
    issues, error = _visible_issues()
    if error:
        return error
    filters = {field: request.args.get(field) for field in FILTER_FIELDS}
    return jsonify(build_table(issues, request.args.get('search'), filters, request.args.get('sort')))


@app.route('/api/audit-issues/analytics', methods=['GET'])
def audit_issue_analytics():
    issues, error = _visible_issues()
    if error:
        return error
    return jsonify(analytics(issues))


# ==================== Roles ====================

@app.route('/api/resolve-role', methods=['GET'])
def api_resolve_role():
    email = normalize_email(request.args.get('email'))
    if not email:
        return error_response('email is required')
    return jsonify({'email': email, 'role': resolve_role(db, email)})


@app.route('/api/me/roles', methods=['GET'])
def api_my_roles():
    """The viewer's roles across their issues and what they can do on each."""
    viewer = normalize_email(request.args.get('viewer'))
    if not viewer:
        return error_response('viewer is required')
    issues = db.get_issues_for_viewer(viewer)
    return jsonify({
        'viewer': viewer,
        'isAuditor': is_auditor(viewer),
        'roles': viewer_roles(issues, viewer),
        'issues': [
            {'id': issue['id'], 'serialNumber': issue['serialNumber'], **capabilities(issue, viewer)}
            for issue in issues
        ],
    })


# ==================== Maintenance ====================

@app.route('/api/reminders/run', methods=['POST'])
@require_auditor
def run_reminders():
    """Send today's due-soon reminders now."""
    return jsonify({'sent': send_due_reminders(db, mailer)})


@app.route('/api/health', methods=['GET'])
def health():
    return jsonify({
        'status': 'ok',
        'issues': db.count_issues(),
        'migrations': db.migration_status(),
        'mail': 'graph' if isinstance(mailer, GraphMailer) else 'log',
    })


# ==================== Static / SPA ====================

@app.route('/uploads/<path:filename>')
def uploaded_file(filename):
    return send_from_directory(app.config['UPLOAD_FOLDER'], filename)


@app.route('/api/<path:path>', methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE'])
def unknown_api_endpoint(path):
    return not_found_response('Endpoint')


@app.route('/', defaults={'path': ''})
@app.route('/<path:path>')
def frontend(path):
    """Serve the built frontend; unknown paths fall back to index.html."""
    dist = app.config['FRONTEND_DIST']
    if path and os.path.isfile(os.path.join(dist, path)):
        return send_from_directory(dist, path)
    if not os.path.isfile(os.path.join(dist, 'index.html')):
        return error_response('Frontend build not found', 404)
    return send_from_directory(dist, 'index.html')


if __name__ == '__main__':
    start_reminder_thread(db, mailer)
    app.run(debug=DEV_MODE, use_reloader=False, port=int(os.environ.get('PORT', 5000)))

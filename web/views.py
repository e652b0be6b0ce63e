"""
JSON API for the measure import workflow.
"""
from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename
import logging

from extensions import cache
from import_engine.errors import ImportPipelineError
from import_engine.service import ImportService
from web.auth import require_auth, get_current_user

logger = logging.getLogger(__name__)
bp = Blueprint('imports', __name__, url_prefix='/api/import')

SYSTEMS_CACHE_KEY = 'import_systems'


def get_import_service() -> ImportService:
    """The ImportService built by create_app."""
    return current_app.extensions['import_service']


def _show_details() -> bool:
    return bool(current_app.debug or current_app.config.get('SHOW_ERROR_DETAILS'))


def _error_response(code: str, message: str, status: int, **extra):
    error = {'code': code, 'message': message}
    error.update(extra)
    return jsonify({'success': False, 'error': error}), status


def _parse_owner_id(raw):
    if raw in (None, '', 'null'):
        return None
    return int(raw)


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


# ==================== Error handling ====================

@bp.errorhandler(ImportPipelineError)
def handle_pipeline_error(e: ImportPipelineError):
    logger.warning(f"[API] {request.method} {request.path} -> {e}")
    return jsonify({'success': False, 'error': e.to_dict(include_details=_show_details())}), e.http_status


@bp.errorhandler(Exception)
def handle_unexpected_error(e: Exception):
    if isinstance(e, HTTPException):
        if e.code == 413:
            return _error_response('FILE_TOO_LARGE', 'Uploaded file exceeds the size limit', 413)
        return _error_response(e.name.upper().replace(' ', '_'), e.description or e.name, e.code or 500)

    logger.error(f"[API] Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
    if _show_details():
        return _error_response('INTERNAL_ERROR', str(e), 500, type=type(e).__name__)
    return _error_response('INTERNAL_ERROR', 'An unexpected error occurred', 500)


# ==================== Systems ====================

@bp.route('/systems', methods=['GET'])
@require_auth
@cache.cached(key_prefix=SYSTEMS_CACHE_KEY)
def list_systems():
    """List configured source systems."""
    return jsonify({'success': True, 'data': get_import_service().list_systems()})


@bp.route('/systems/<system_id>', methods=['GET'])
@require_auth
def get_system(system_id: str):
    return jsonify({'success': True, 'data': get_import_service().get_system(system_id)})


@bp.route('/systems/reload', methods=['POST'])
@require_auth
def reload_systems():
    """Re-read import configuration from disk (administrative)."""
    systems = get_import_service().reload_systems(actor=get_current_user())
    cache.delete(SYSTEMS_CACHE_KEY)
    return jsonify({'success': True, 'data': systems})


# ==================== Preview / commit ====================

@bp.route('/preview', methods=['POST'])
@require_auth
def create_preview():
    """
    Upload a file and build a preview.

    Form fields: file (required), systemId, mode (replace|merge), ownerId.
    """
    if 'file' not in request.files:
        return _error_response('NO_FILE', 'No file uploaded', 400)

    file = request.files['file']
    if not file.filename:
        return _error_response('NO_FILE', 'No file selected', 400)

    try:
        owner_id = _parse_owner_id(request.form.get('ownerId'))
    except ValueError:
        return _error_response('INVALID_OWNER', 'ownerId must be an integer', 400)

    filename = secure_filename(file.filename) or file.filename
    content = file.read()

    result = get_import_service().upload_and_preview(
        content=content,
        filename=filename,
        system_id=request.form.get('systemId') or None,
        mode=request.form.get('mode') or None,
        target_owner_id=owner_id,
        actor=get_current_user(),
    )
    return jsonify({'success': True, 'data': result}), 201


@bp.route('/preview/<preview_id>', methods=['GET'])
@require_auth
def get_preview(preview_id: str):
    return jsonify({'success': True, 'data': get_import_service().get_preview_detail(preview_id)})


@bp.route('/preview/<preview_id>/extend', methods=['POST'])
@require_auth
def extend_preview(preview_id: str):
    return jsonify({'success': True, 'data': get_import_service().extend_preview(preview_id)})


@bp.route('/preview/<preview_id>/commit', methods=['POST'])
@require_auth
def commit_preview(preview_id: str):
    """
    Commit a preview.

    JSON body (optional): {"confirmReassignments": bool, "skipInvalid": bool}
    """
    body = request.get_json(silent=True) or {}
    result = get_import_service().commit_preview(
        preview_id,
        actor=get_current_user(),
        confirm_reassignments=_truthy(body.get('confirmReassignments', False)),
        skip_invalid=_truthy(body.get('skipInvalid', False)),
    )
    return jsonify({'success': True, 'data': result})


@bp.route('/preview/<preview_id>', methods=['DELETE'])
@require_auth
def cancel_preview(preview_id: str):
    removed = get_import_service().cancel_preview(preview_id, actor=get_current_user())
    return jsonify({'success': True, 'data': {'previewId': preview_id, 'removed': removed}})


# ==================== Operations ====================

@bp.route('/cache/stats', methods=['GET'])
@require_auth
def cache_stats():
    return jsonify({'success': True, 'data': get_import_service().cache_stats()})


@bp.route('/runs', methods=['GET'])
@require_auth
def list_runs():
    """Committed import runs, newest first (?limit=N, default 10)."""
    limit = request.args.get('limit', default=10, type=int)
    return jsonify({'success': True, 'data': get_import_service().list_import_runs(max(1, min(limit, 100)))})


@bp.route('/health', methods=['GET'])
def health():
    service = get_import_service()
    return jsonify({
        'success': True,
        'data': {
            'status': 'ok',
            'systems': len(service.list_systems()),
            'previews': service.cache_stats()['active'],
            'sweeper_running': service.preview_store.running,
        }
    })

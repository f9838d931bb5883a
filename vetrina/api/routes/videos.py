import json
import logging
import math
import os

from flask import Blueprint, current_app, jsonify, request, send_from_directory, url_for
from flask_login import current_user, login_required
from werkzeug.utils import secure_filename

from vetrina.api.models.video import (
    SensitivityResult, SensitivityStatus, VideoRecord, VideoStatus, Visibility,
)
from vetrina.core.auth import can_edit, can_view
from vetrina.core.broadcast import EVENT_UPLOAD_COMPLETE
from vetrina.core.errors import InvalidTransitionError, PipelineAlreadyRunningError, RangeNotSatisfiableError
from vetrina.core.range_streaming import build_stream_response
from vetrina.utils import build_storage_filename, remove_file_quietly

logger = logging.getLogger(__name__)
videos_bp = Blueprint('videos', __name__)

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000
_VISIBILITY_VALUES = [v.value for v in Visibility]
_STATUS_VALUES = [s.value for s in VideoStatus]
_SENSITIVITY_VALUES = [r.value for r in SensitivityResult]


def _error(error_code, message, status_code, **extra):
    body = {'success': False, 'error_code': error_code, 'message': message}
    body.update(extra)
    return jsonify(body), status_code


def _services():
    cfg = current_app.config
    return cfg['VIDEO_STORE'], cfg['PROGRESS_CHANNEL'], cfg['PIPELINE_SUPERVISOR'], cfg['PIPELINE_ORCHESTRATOR']


def _serialize(record: VideoRecord):
    data = record.to_public_dict()
    data['stream_url'] = url_for('videos.stream_video', video_id=record.id)
    data['thumbnail_url'] = url_for('videos.get_thumbnail', video_id=record.id) if record.thumbnail else None
    return data


def validate_descriptive_fields(data, partial=False, tags_as_json=False):
    """Valida titolo, descrizione, visibilità e tag. Ritorna (campi_puliti, errori)."""
    clean, errors = {}, []

    if 'title' in data or not partial:
        title = (data.get('title') or '').strip()
        if not 1 <= len(title) <= TITLE_MAX_LENGTH:
            errors.append(f"Il titolo è obbligatorio e deve avere al massimo {TITLE_MAX_LENGTH} caratteri.")
        else:
            clean['title'] = title

    if 'description' in data:
        description = (data.get('description') or '').strip()
        if len(description) > DESCRIPTION_MAX_LENGTH:
            errors.append(f"La descrizione deve avere al massimo {DESCRIPTION_MAX_LENGTH} caratteri.")
        else:
            clean['description'] = description

    if 'visibility' in data:
        visibility = data.get('visibility')
        if visibility not in _VISIBILITY_VALUES:
            errors.append(f"Visibilità non valida. Valori ammessi: {_VISIBILITY_VALUES}.")
        else:
            clean['visibility'] = visibility

    if 'tags' in data:
        tags = data.get('tags')
        if tags_as_json and isinstance(tags, str):
            try:
                tags = json.loads(tags or '[]')
            except ValueError:
                tags = None
        if not isinstance(tags, list):
            errors.append("I tag devono essere un array JSON.")
        else:
            clean['tags'] = [str(tag) for tag in tags]

    return clean, errors


def _load_visible_record(video_id):
    """Record attivo della stessa organizzazione e visibile all'utente, oppure una risposta di errore."""
    store = current_app.config['VIDEO_STORE']
    record = store.get(video_id)
    if record is None or not record.is_active or record.organization_id != str(current_user.organization_id):
        return None, _error('VIDEO_NOT_FOUND', 'Video non trovato.', 404)
    if not can_view(current_user, record):
        return None, _error('FORBIDDEN', 'Accesso negato a questo video.', 403)
    return record, None


def _load_editable_record(video_id, action):
    if not current_user.can_edit_content:
        return None, _error('INSUFFICIENT_ROLE', 'Permessi insufficienti: serve il ruolo editor o admin.', 403)
    store = current_app.config['VIDEO_STORE']
    record = store.get(video_id)
    if record is None or not record.is_active or record.organization_id != str(current_user.organization_id):
        return None, _error('VIDEO_NOT_FOUND', 'Video non trovato.', 404)
    if not can_edit(current_user, record):
        return None, _error('FORBIDDEN', f'Accesso negato: puoi {action} solo i tuoi video.', 403)
    return record, None


# --- Upload ---

@videos_bp.route('/upload', methods=['POST'])
@login_required
def upload_video():
    """Riceve un file video, crea il record e accoda la pipeline. Risponde 201."""
    store, channel, supervisor, orchestrator = _services()

    fields, errors = validate_descriptive_fields(request.form, partial=False, tags_as_json=True)
    if errors:
        return _error('VALIDATION_ERROR', 'Validazione fallita.', 400, errors=errors)

    uploaded = request.files.get('video')
    if uploaded is None or not uploaded.filename:
        return _error('FILE_REQUIRED', 'Il file video è obbligatorio.', 400)
    if uploaded.mimetype not in current_app.config['ALLOWED_VIDEO_MIMETYPES']:
        return _error('INVALID_FILE_TYPE', 'Tipo di file non valido. Sono ammessi solo file video.', 400)

    original_name = uploaded.filename
    stored_name = build_storage_filename(secure_filename(original_name) or 'video')
    file_path = os.path.join(current_app.config['UPLOAD_FOLDER_PATH'], stored_name)
    try:
        uploaded.save(file_path)
        record = VideoRecord(
            owner_id=str(current_user.id),
            organization_id=str(current_user.organization_id),
            filename=stored_name,
            original_name=original_name,
            file_path=file_path,
            file_size=os.path.getsize(file_path),
            mime_type=uploaded.mimetype,
            status=VideoStatus.UPLOADING,
            **fields,
        )
        store.create(record)
    except Exception as e:
        logger.exception(f"Errore durante l'upload di '{original_name}': {e}")
        remove_file_quietly(file_path)
        return _error('UPLOAD_FAILED', "Errore durante il caricamento del video.", 500)

    response_data = _serialize(record)
    channel.publish(record.owner_id, EVENT_UPLOAD_COMPLETE, {
        'video_id': record.id, 'title': record.title, 'filename': record.filename,
    })
    supervisor.submit(record.id, orchestrator.run_pipeline, record)
    logger.info(f"Upload completato: video {record.id} ('{original_name}', {record.file_size} bytes)")

    return jsonify({
        'success': True,
        'message': 'Video caricato, elaborazione avviata.',
        'data': {'video': response_data},
    }), 201


# --- Lettura ---

@videos_bp.route('/', methods=['GET'])
@login_required
def list_videos():
    store = current_app.config['VIDEO_STORE']
    try:
        page = int(request.args.get('page', 1))
        limit = int(request.args.get('limit', 10))
    except ValueError:
        return _error('VALIDATION_ERROR', 'page e limit devono essere numeri interi.', 400)
    if page < 1 or not 1 <= limit <= 100:
        return _error('VALIDATION_ERROR', 'page deve essere >= 1 e limit tra 1 e 100.', 400)

    status = request.args.get('status')
    if status and status not in _STATUS_VALUES:
        return _error('VALIDATION_ERROR', f"Stato non valido. Valori ammessi: {_STATUS_VALUES}.", 400)
    sensitivity = request.args.get('sensitivity')
    if sensitivity and sensitivity not in _SENSITIVITY_VALUES:
        return _error('VALIDATION_ERROR', f"Filtro sensibilità non valido. Valori ammessi: {_SENSITIVITY_VALUES}.", 400)
    search = (request.args.get('search') or '').strip() or None

    records, total = store.search(
        organization_id=str(current_user.organization_id),
        viewer_id=str(current_user.id),
        include_private=current_user.is_admin,
        status=status,
        sensitivity=sensitivity,
        text=search,
        page=page,
        limit=limit,
    )
    total_pages = math.ceil(total / limit) if total else 0
    return jsonify({
        'success': True,
        'data': {
            'videos': [_serialize(record) for record in records],
            'pagination': {
                'current_page': page,
                'total_pages': total_pages,
                'total_videos': total,
                'has_next_page': page < total_pages,
                'has_prev_page': page > 1,
            },
        },
    })


@videos_bp.route('/<video_id>', methods=['GET'])
@login_required
def get_video(video_id):
    record, error_response = _load_visible_record(video_id)
    if error_response:
        return error_response
    store = current_app.config['VIDEO_STORE']
    store.increment_view(video_id)
    record = store.get(video_id)
    return jsonify({'success': True, 'data': {'video': _serialize(record)}})


# --- Modifica / archiviazione ---

@videos_bp.route('/<video_id>', methods=['PUT'])
@login_required
def update_video(video_id):
    record, error_response = _load_editable_record(video_id, 'modificare')
    if error_response:
        return error_response

    data = request.get_json(silent=True) or {}
    fields, errors = validate_descriptive_fields(data, partial=True)
    if errors:
        return _error('VALIDATION_ERROR', 'Validazione fallita.', 400, errors=errors)
    if not fields:
        return _error('VALIDATION_ERROR', 'Nessun campo da aggiornare.', 400)

    updated = current_app.config['VIDEO_STORE'].update_fields(video_id, **fields)
    logger.info(f"Video {video_id} aggiornato da {current_user.id}: {sorted(fields)}")
    return jsonify({'success': True, 'message': 'Video aggiornato.', 'data': {'video': _serialize(updated)}})


@videos_bp.route('/<video_id>', methods=['DELETE'])
@login_required
def delete_video(video_id):
    record, error_response = _load_editable_record(video_id, 'eliminare')
    if error_response:
        return error_response
    current_app.config['VIDEO_STORE'].archive(video_id)
    return jsonify({'success': True, 'message': 'Video eliminato.'})


@videos_bp.route('/<video_id>/reanalyze', methods=['POST'])
@login_required
def reanalyze_video(video_id):
    """Avvia una nuova analisi di sensibilità in background. Risponde 202."""
    _, _, supervisor, orchestrator = _services()
    record, error_response = _load_editable_record(video_id, 'rianalizzare')
    if error_response:
        return error_response

    if supervisor.is_running(video_id) or record.sensitivity.status == SensitivityStatus.PROCESSING:
        return _error('ALREADY_PROCESSING', 'Elaborazione o analisi già in corso per questo video.', 409)
    try:
        record.reopen_sensitivity()
        # Lo stato processing viene salvato dal job, solo se la sottomissione riesce
        supervisor.submit(video_id, orchestrator.run_reanalysis, record.model_copy(deep=True))
    except (InvalidTransitionError, PipelineAlreadyRunningError) as e:
        return _error(e.error_code, e.message, 409)

    return jsonify({
        'success': True,
        'message': 'Rianalisi di sensibilità avviata.',
        'data': {'sensitivity': record.sensitivity.model_dump(mode='json')},
    }), 202


# --- Media ---

@videos_bp.route('/<video_id>/stream', methods=['GET'])
@login_required
def stream_video(video_id):
    """Streaming con supporto Range (206) del file ottimizzato o, in mancanza, dell'originale."""
    store = current_app.config['VIDEO_STORE']
    record = store.get(video_id)
    if record is None:
        return _error('VIDEO_NOT_FOUND', 'Video non trovato.', 404)
    if not record.is_active or record.status != VideoStatus.COMPLETED:
        return _error('VIDEO_NOT_READY', f"Video non pronto per lo streaming. Stato: {record.status.value}", 404)
    if not can_view(current_user, record):
        return _error('FORBIDDEN', 'Accesso negato a questo video.', 403)

    path = record.optimized_path or record.file_path
    if not os.path.exists(path):
        logger.error(f"File del video {video_id} mancante su disco: {path}")
        return _error('FILE_NOT_FOUND', 'File video non trovato su disco.', 404)

    mimetype = 'video/mp4' if record.optimized_path else (record.mime_type or 'application/octet-stream')
    try:
        return build_stream_response(
            path, request.headers.get('Range'), current_app.config['STREAM_CHUNK_SIZE'], mimetype=mimetype,
        )
    except RangeNotSatisfiableError as e:
        response, status_code = _error(e.error_code, e.message, 416)
        response.headers['Content-Range'] = f"bytes */{e.file_size}"
        return response, status_code


@videos_bp.route('/<video_id>/thumbnail', methods=['GET'])
@login_required
def get_thumbnail(video_id):
    record, error_response = _load_visible_record(video_id)
    if error_response:
        return error_response
    if not record.thumbnail:
        return _error('THUMBNAIL_NOT_FOUND', 'Miniatura non disponibile.', 404)
    return send_from_directory(current_app.config['THUMBNAILS_FOLDER_PATH'], record.thumbnail)

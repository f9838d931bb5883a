import io
import json
from unittest.mock import patch

import pytest

from vetrina.api.models.video import SensitivityAnalysis, SensitivityStatus, VideoStatus, Visibility
from vetrina.core.broadcast import EVENT_PROCESSING_PROGRESS, EVENT_UPLOAD_COMPLETE
from vetrina.core.errors import PipelineAlreadyRunningError


def _upload(client, headers, title='Il mio video', content=b'contenuto-video', filename='clip.mp4',
            mimetype='video/mp4', **fields):
    data = {'title': title, 'video': (io.BytesIO(content), filename, mimetype)}
    data.update(fields)
    return client.post('/api/videos/upload', data=data, headers=headers, content_type='multipart/form-data')


def _wait_pipeline(app, video_id):
    app.config['PIPELINE_SUPERVISOR'].wait(video_id, timeout=10)
    return app.config['VIDEO_STORE'].get(video_id)


@pytest.fixture
def stored(app, make_record):
    """Factory: salva un record nel DB dell'app."""
    def _stored(owner_id, **overrides):
        return app.config['VIDEO_STORE'].create(make_record(owner_id=owner_id, **overrides))
    return _stored


# --- Upload ---

def test_upload_runs_pipeline_to_completion(client, app, create_user, auth_headers, fake_runner):
    # 1. ARRANGE
    user_id = create_user()
    subscription = app.config['PROGRESS_CHANNEL'].subscribe(user_id)

    # 2. ACT
    response = _upload(client, auth_headers(user_id), description='Prova', tags=json.dumps(['demo', 'demo', ' a ']),
                       visibility='organization')

    # 3. ASSERT
    assert response.status_code == 201
    video = response.json['data']['video']
    assert video['status'] == 'uploading'
    assert video['tags'] == ['demo', 'a']
    assert video['original_name'] == 'clip.mp4'
    assert 'file_path' not in video
    assert video['stream_url'] == f"/api/videos/{video['id']}/stream"

    saved = _wait_pipeline(app, video['id'])
    assert saved.status == VideoStatus.COMPLETED
    assert saved.processing_progress == 100
    assert saved.sensitivity.status == SensitivityStatus.COMPLETED
    assert saved.filename.endswith('.mp4') and saved.filename != 'clip.mp4'

    first_event = subscription.get(timeout=1)
    assert first_event[0] == EVENT_UPLOAD_COMPLETE
    app.config['PROGRESS_CHANNEL'].unsubscribe(subscription)


def test_upload_requires_title(client, create_user, auth_headers):
    response = _upload(client, auth_headers(create_user()), title='  ')
    assert response.status_code == 400
    assert response.json['error_code'] == 'VALIDATION_ERROR'
    assert response.json['errors']


def test_upload_rejects_bad_tags_and_visibility(client, create_user, auth_headers):
    response = _upload(client, auth_headers(create_user()), tags='non-json', visibility='segreta')
    assert response.status_code == 400
    assert len(response.json['errors']) == 2


def test_upload_requires_file(client, create_user, auth_headers):
    response = client.post('/api/videos/upload', data={'title': 'Senza file'},
                           headers=auth_headers(create_user()), content_type='multipart/form-data')
    assert response.status_code == 400
    assert response.json['error_code'] == 'FILE_REQUIRED'


def test_upload_rejects_non_video(client, create_user, auth_headers):
    response = _upload(client, auth_headers(create_user()), filename='doc.pdf', mimetype='application/pdf')
    assert response.status_code == 400
    assert response.json['error_code'] == 'INVALID_FILE_TYPE'


def test_upload_too_large(client, app, create_user, auth_headers):
    headers = auth_headers(create_user())
    with patch.dict(app.config, {'MAX_CONTENT_LENGTH': 10}):
        response = _upload(client, headers, content=b'x' * 4096)
    assert response.status_code == 413
    assert response.json['error_code'] == 'FILE_TOO_LARGE'


def test_upload_requires_authentication(client):
    response = _upload(client, {})
    assert response.status_code == 401


# --- Lista e dettaglio ---

def test_list_applies_visibility_and_filters(client, create_user, auth_headers, stored):
    # 1. ARRANGE
    org = 'org-lista'
    viewer_id = create_user(organization_id=org)
    other_id = create_user(organization_id=org)
    mine = stored(viewer_id, organization_id=org, title='Mio video')
    shared = stored(other_id, organization_id=org, title='Condiviso', visibility=Visibility.ORGANIZATION,
                    status=VideoStatus.COMPLETED)
    stored(other_id, organization_id=org, title='Privato altrui')

    # 2. ACT
    response = client.get('/api/videos/', headers=auth_headers(viewer_id))
    filtered = client.get('/api/videos/?status=completed', headers=auth_headers(viewer_id))

    # 3. ASSERT
    assert response.status_code == 200
    ids = {v['id'] for v in response.json['data']['videos']}
    assert ids == {mine.id, shared.id}
    pagination = response.json['data']['pagination']
    assert pagination == {'current_page': 1, 'total_pages': 1, 'total_videos': 2,
                          'has_next_page': False, 'has_prev_page': False}
    assert [v['id'] for v in filtered.json['data']['videos']] == [shared.id]


def test_list_admin_sees_private_videos(client, create_user, auth_headers, stored):
    org = 'org-admin-lista'
    admin_id = create_user(role='admin', organization_id=org)
    stored(create_user(organization_id=org), organization_id=org)

    response = client.get('/api/videos/', headers=auth_headers(admin_id))

    assert response.json['data']['pagination']['total_videos'] == 1


def test_list_rejects_bad_parameters(client, create_user, auth_headers):
    headers = auth_headers(create_user())
    assert client.get('/api/videos/?page=0', headers=headers).status_code == 400
    assert client.get('/api/videos/?limit=abc', headers=headers).status_code == 400
    assert client.get('/api/videos/?status=perso', headers=headers).status_code == 400
    assert client.get('/api/videos/?sensitivity=boh', headers=headers).status_code == 400


def test_get_video_increments_view_count(client, create_user, auth_headers, stored):
    user_id = create_user()
    record = stored(user_id)

    client.get(f'/api/videos/{record.id}', headers=auth_headers(user_id))
    response = client.get(f'/api/videos/{record.id}', headers=auth_headers(user_id))

    assert response.status_code == 200
    assert response.json['data']['video']['view_count'] == 2
    assert response.json['data']['video']['last_viewed_at'] is not None


def test_get_private_video_of_colleague_is_forbidden(client, create_user, auth_headers, stored):
    record = stored(create_user())
    response = client.get(f'/api/videos/{record.id}', headers=auth_headers(create_user()))
    assert response.status_code == 403


def test_get_video_of_other_organization_is_not_found(client, create_user, auth_headers, stored):
    record = stored(create_user(organization_id='org-2'), organization_id='org-2', visibility=Visibility.PUBLIC)
    response = client.get(f'/api/videos/{record.id}', headers=auth_headers(create_user()))
    assert response.status_code == 404


# --- Modifica e archiviazione ---

def test_update_video_by_owner(client, app, create_user, auth_headers, stored):
    user_id = create_user()
    record = stored(user_id, status=VideoStatus.COMPLETED, processing_progress=100)

    response = client.put(f'/api/videos/{record.id}', headers=auth_headers(user_id),
                          json={'title': 'Nuovo titolo', 'tags': ['x'], 'visibility': 'public'})

    assert response.status_code == 200
    video = response.json['data']['video']
    assert video['title'] == 'Nuovo titolo'
    assert video['visibility'] == 'public'
    saved = app.config['VIDEO_STORE'].get(record.id)
    assert saved.status == VideoStatus.COMPLETED
    assert saved.processing_progress == 100


def test_update_requires_editor_role(client, create_user, auth_headers, stored):
    viewer_id = create_user(role='viewer')
    record = stored(viewer_id)
    response = client.put(f'/api/videos/{record.id}', headers=auth_headers(viewer_id), json={'title': 'X'})
    assert response.status_code == 403
    assert response.json['error_code'] == 'INSUFFICIENT_ROLE'


def test_update_other_editor_video_is_forbidden(client, create_user, auth_headers, stored):
    record = stored(create_user(), visibility=Visibility.ORGANIZATION)
    response = client.put(f'/api/videos/{record.id}', headers=auth_headers(create_user()), json={'title': 'X'})
    assert response.status_code == 403
    assert response.json['error_code'] == 'FORBIDDEN'


def test_admin_can_update_any_video_of_organization(client, create_user, auth_headers, stored):
    record = stored(create_user())
    response = client.put(f'/api/videos/{record.id}', headers=auth_headers(create_user(role='admin')),
                          json={'description': 'Rivista'})
    assert response.status_code == 200
    assert response.json['data']['video']['description'] == 'Rivista'


def test_update_validation(client, create_user, auth_headers, stored):
    user_id = create_user()
    record = stored(user_id)
    headers = auth_headers(user_id)
    assert client.put(f'/api/videos/{record.id}', headers=headers, json={}).status_code == 400
    assert client.put(f'/api/videos/{record.id}', headers=headers, json={'title': 'x' * 201}).status_code == 400
    assert client.put(f'/api/videos/{record.id}', headers=headers, json={'tags': 'a,b'}).status_code == 400


def test_delete_archives_video(client, app, create_user, auth_headers, stored):
    user_id = create_user()
    record = stored(user_id)
    headers = auth_headers(user_id)

    response = client.delete(f'/api/videos/{record.id}', headers=headers)

    assert response.status_code == 200
    assert client.get(f'/api/videos/{record.id}', headers=headers).status_code == 404
    saved = app.config['VIDEO_STORE'].get(record.id)
    assert saved.status == VideoStatus.ARCHIVED
    assert saved.is_active is False


# --- Rianalisi ---

def test_reanalyze_accepted(client, app, create_user, auth_headers, stored, fake_runner):
    user_id = create_user()
    record = stored(user_id, status=VideoStatus.COMPLETED, processing_progress=100,
                    sensitivity=SensitivityAnalysis.completed(result='safe', confidence=0.9))

    response = client.post(f'/api/videos/{record.id}/reanalyze', headers=auth_headers(user_id))

    assert response.status_code == 202
    assert response.json['data']['sensitivity']['status'] == 'processing'
    saved = _wait_pipeline(app, record.id)
    assert saved.sensitivity.status == SensitivityStatus.COMPLETED
    assert saved.status == VideoStatus.COMPLETED


def test_reanalyze_rejected_submission_leaves_sensitivity_untouched(client, app, create_user, auth_headers, stored):
    """Se il job non viene accettato, lo stato salvato dell'analisi non cambia."""
    # 1. ARRANGE
    user_id = create_user()
    record = stored(user_id, status=VideoStatus.COMPLETED, processing_progress=100,
                    sensitivity=SensitivityAnalysis.completed(result='safe', confidence=0.9))
    supervisor = app.config['PIPELINE_SUPERVISOR']

    # 2. ACT
    with patch.object(supervisor, 'submit', side_effect=PipelineAlreadyRunningError(record.id)):
        response = client.post(f'/api/videos/{record.id}/reanalyze', headers=auth_headers(user_id))

    # 3. ASSERT
    assert response.status_code == 409
    assert response.json['error_code'] == 'ALREADY_PROCESSING'
    saved = app.config['VIDEO_STORE'].get(record.id)
    assert saved.sensitivity.status == SensitivityStatus.COMPLETED
    assert saved.sensitivity.result.value == 'safe'


def test_reanalyze_conflict_while_processing(client, create_user, auth_headers, stored):
    user_id = create_user()
    record = stored(user_id, status=VideoStatus.COMPLETED, sensitivity=SensitivityAnalysis.processing())

    response = client.post(f'/api/videos/{record.id}/reanalyze', headers=auth_headers(user_id))

    assert response.status_code == 409
    assert response.json['error_code'] == 'ALREADY_PROCESSING'


# --- Miniatura ---

def test_thumbnail_served_after_pipeline(client, app, create_user, auth_headers, fake_runner):
    user_id = create_user()
    headers = auth_headers(user_id)
    video_id = _upload(client, headers).json['data']['video']['id']
    _wait_pipeline(app, video_id)

    detail = client.get(f'/api/videos/{video_id}', headers=headers).json['data']['video']
    response = client.get(detail['thumbnail_url'], headers=headers)

    assert response.status_code == 200
    assert response.mimetype == 'image/jpeg'


def test_thumbnail_missing(client, create_user, auth_headers, stored):
    user_id = create_user()
    record = stored(user_id)
    response = client.get(f'/api/videos/{record.id}/thumbnail', headers=auth_headers(user_id))
    assert response.status_code == 404
    assert response.json['error_code'] == 'THUMBNAIL_NOT_FOUND'


# --- Eventi SSE e health ---

def test_event_stream_delivers_user_events(client, app, create_user, auth_headers):
    # 1. ARRANGE
    user_id = create_user()
    channel = app.config['PROGRESS_CHANNEL']

    # 2. ACT
    response = client.get('/api/events/', headers=auth_headers(user_id), buffered=False)
    chunks = response.iter_encoded()
    connected = next(chunks).decode()
    channel.publish(user_id, EVENT_PROCESSING_PROGRESS, {'video_id': 'v-sse', 'progress': 40})
    progress = next(chunks).decode()
    response.close()

    # 3. ASSERT
    assert response.status_code == 200
    assert response.mimetype == 'text/event-stream'
    assert connected.startswith('event: connected')
    assert progress.startswith(f'event: {EVENT_PROCESSING_PROGRESS}')
    payload = json.loads(progress.split('data: ', 1)[1])
    assert payload['video_id'] == 'v-sse'
    assert payload['progress'] == 40
    assert channel.listener_count(user_id) == 0


def test_event_stream_requires_authentication(client):
    assert client.get('/api/events/').status_code == 401


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.json == {'success': True, 'status': 'ok'}

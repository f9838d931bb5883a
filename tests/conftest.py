import pytest
import os
import json
import uuid
import shutil
import sqlite3
import logging
import tempfile
from datetime import datetime, timedelta, timezone

import jwt
from PIL import Image

from vetrina.main import create_app
from vetrina.api.models.video import VideoRecord
from vetrina.config import TestConfig
from vetrina.core.setup import init_db
from vetrina.services.media.tools import ToolResult

_TEST_DATA_DIR_CONFTEST = None
logger = logging.getLogger(__name__)

DEFAULT_FFPROBE_OUTPUT = {
    'format': {'duration': '42.5', 'bit_rate': '1500000'},
    'streams': [
        {'codec_type': 'video', 'codec_name': 'h264', 'width': 1280, 'height': 720,
         'r_frame_rate': '30000/1001', 'display_aspect_ratio': '16:9'},
        {'codec_type': 'audio', 'codec_name': 'aac'},
    ],
}


class FakeToolRunner:
    """Simula ffprobe/ffmpeg scrivendo file veri (copie, JPEG generati con Pillow)."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.calls = []
        self.ffprobe_output = DEFAULT_FFPROBE_OUTPUT
        self.ffprobe_exit_code = 0
        self.fail_transcode = False
        self.skip_transcode_output = False
        self.fail_thumbnail = False
        self.fail_frames = False
        self.frame_colors = [(120, 120, 120)] * 3

    def run(self, args):
        self.calls.append(list(args))
        tool = os.path.basename(args[0])
        if 'ffprobe' in tool:
            if self.ffprobe_exit_code != 0:
                return ToolResult(stdout='', exit_code=self.ffprobe_exit_code, stderr='ffprobe failed')
            return ToolResult(stdout=json.dumps(self.ffprobe_output), exit_code=0)
        if 'libx264' in args:
            return self._transcode(args)
        if '-vframes' in args:
            return self._thumbnail(args)
        if any(str(a).startswith('fps=') for a in args):
            return self._frames(args)
        return ToolResult(stdout='', exit_code=1, stderr='comando sconosciuto')

    def _transcode(self, args):
        if self.fail_transcode:
            return ToolResult(stdout='', exit_code=1, stderr='encoder error')
        if self.skip_transcode_output:
            return ToolResult(stdout='', exit_code=0)
        shutil.copyfile(args[args.index('-i') + 1], args[-1])
        return ToolResult(stdout='', exit_code=0)

    def _thumbnail(self, args):
        if self.fail_thumbnail:
            return ToolResult(stdout='', exit_code=1, stderr='seek past end')
        Image.new('RGB', (320, 240), (10, 10, 10)).save(args[-1], 'JPEG')
        return ToolResult(stdout='', exit_code=0)

    def _frames(self, args):
        if self.fail_frames:
            return ToolResult(stdout='', exit_code=1, stderr='decode error')
        pattern = args[-1]
        for index, color in enumerate(self.frame_colors, start=1):
            Image.new('RGB', (64, 48), color).save(pattern % index, 'JPEG')
        return ToolResult(stdout='', exit_code=0)


_SESSION_RUNNER = FakeToolRunner()


@pytest.fixture(scope='session')
def app():
    global _TEST_DATA_DIR_CONFTEST
    _TEST_DATA_DIR_CONFTEST = tempfile.mkdtemp(prefix="pytest_vetrina_session_")
    logger.info(f"CONFTEST: Test data directory created: {_TEST_DATA_DIR_CONFTEST}")

    test_config_instance = TestConfig()
    test_config_instance._TEST_BASE_DIR = _TEST_DATA_DIR_CONFTEST

    flask_app = create_app(test_config_instance, tool_runner=_SESSION_RUNNER)

    with flask_app.app_context():
        init_db(flask_app.config)
        logger.info(f"CONFTEST: Test database initialized at: {flask_app.config['DATABASE_FILE']}")

    yield flask_app

    logger.info("CONFTEST: Teardown for session-scoped app fixture.")
    flask_app.config['PIPELINE_SUPERVISOR'].shutdown(wait=True)
    if _TEST_DATA_DIR_CONFTEST and os.path.exists(_TEST_DATA_DIR_CONFTEST):
        shutil.rmtree(_TEST_DATA_DIR_CONFTEST, ignore_errors=True)
        _TEST_DATA_DIR_CONFTEST = None


@pytest.fixture(scope='function')
def client(app):
    return app.test_client()


@pytest.fixture(scope='function')
def fake_runner():
    _SESSION_RUNNER.reset()
    yield _SESSION_RUNNER
    _SESSION_RUNNER.reset()


@pytest.fixture
def create_user(app):
    """Factory: inserisce un utente e ritorna il suo id."""
    def _create_user(role='editor', organization_id='org-1', email=None):
        user_id = str(uuid.uuid4())
        conn = sqlite3.connect(app.config['DATABASE_FILE'])
        try:
            conn.execute(
                "INSERT INTO users (id, email, name, organization_id, role) VALUES (?, ?, ?, ?, ?)",
                (user_id, email or f"{user_id}@example.com", "Utente Test", organization_id, role),
            )
            conn.commit()
        finally:
            conn.close()
        return user_id
    return _create_user


@pytest.fixture
def make_token(app):
    def _make_token(user_id, expires_in=timedelta(hours=1)):
        payload = {'sub': user_id, 'exp': datetime.now(timezone.utc) + expires_in}
        return jwt.encode(payload, app.config['SECRET_KEY'], algorithm='HS256')
    return _make_token


@pytest.fixture
def auth_headers(make_token):
    def _auth_headers(user_id):
        return {'Authorization': f"Bearer {make_token(user_id)}"}
    return _auth_headers


@pytest.fixture
def store_db(tmp_path):
    """DB SQLite isolato per i test che non passano dall'app."""
    db_path = str(tmp_path / 'store_test.db')
    init_db({'DATABASE_FILE': db_path})
    return db_path


@pytest.fixture
def make_record(tmp_path):
    """Factory: VideoRecord con un file vero su disco (non salvato nel DB)."""
    def _make_record(owner_id='user-1', organization_id='org-1', content=b'fake-video-bytes', **overrides):
        file_path = tmp_path / f"{uuid.uuid4().hex}.mp4"
        file_path.write_bytes(content)
        fields = dict(
            owner_id=owner_id,
            organization_id=organization_id,
            title='Video di prova',
            filename=file_path.name,
            original_name='prova.mp4',
            file_path=str(file_path),
            file_size=len(content),
            mime_type='video/mp4',
        )
        fields.update(overrides)
        return VideoRecord(**fields)
    return _make_record

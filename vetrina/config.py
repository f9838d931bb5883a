import os
from dotenv import load_dotenv

app_dir = os.path.abspath(os.path.dirname(__file__))
basedir = os.path.dirname(app_dir)

dotenv_path = os.path.join(basedir, '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path)
    print(f"Caricate variabili d'ambiente da: {dotenv_path}") # Log conferma
else:
    print(f"Attenzione: File .env non trovato in {basedir}")


def _int_from_env(name, default, minimum=None):
    """Legge un intero da environ; se non valido torna al default con un avviso."""
    raw_value = os.environ.get(name)
    if raw_value is None or raw_value == '':
        return default
    try:
        value = int(raw_value)
        if minimum is not None and value < minimum:
            raise ValueError(f"Il valore deve essere >= {minimum}.")
        return value
    except (ValueError, TypeError):
        print(f"ATTENZIONE: {name} ('{raw_value}') non valido. Uso '{default}'.")
        return default


class BaseConfig:
    """Configurazione di base da cui le altre ereditano."""

    # --- Segreti (letti direttamente da environ) ---
    SECRET_KEY = os.environ.get('FLASK_SECRET_KEY')
    BASE_DIR = basedir

    # --- Percorsi (relativi in .env, assoluti qui) ---
    DATABASE_FILE = os.path.join(BASE_DIR, os.environ.get('DATABASE_FILE', 'data/vetrina.db'))
    UPLOAD_FOLDER_PATH = os.path.join(BASE_DIR, os.environ.get('UPLOAD_FOLDER', 'data/uploads'))
    OPTIMIZED_FOLDER_PATH = os.path.join(BASE_DIR, os.environ.get('OPTIMIZED_FOLDER', 'data/optimized'))
    THUMBNAILS_FOLDER_PATH = os.path.join(BASE_DIR, os.environ.get('THUMBNAILS_FOLDER', 'data/thumbnails'))
    # Le cartelle temporanee dei frame vengono create qui dentro, una per analisi
    SCRATCH_FOLDER_PATH = os.path.join(BASE_DIR, os.environ.get('SCRATCH_FOLDER', 'data/scratch'))

    # --- Strumenti media esterni ---
    FFMPEG_PATH = os.environ.get('FFMPEG_PATH', 'ffmpeg')
    FFPROBE_PATH = os.environ.get('FFPROBE_PATH', 'ffprobe')
    MEDIA_TOOL_TIMEOUT = _int_from_env('MEDIA_TOOL_TIMEOUT', 3600, minimum=1) # secondi

    # --- Upload ---
    MAX_CONTENT_LENGTH = _int_from_env('MAX_UPLOAD_BYTES', 1024 * 1024 * 1024, minimum=1) # 1 GB
    ALLOWED_VIDEO_MIMETYPES = {
        'video/mp4',
        'video/avi',
        'video/quicktime',
        'video/x-msvideo',
        'video/x-flv',
        'video/webm',
        'video/mov',
    }

    # --- Pipeline ---
    PIPELINE_MAX_WORKERS = _int_from_env('PIPELINE_MAX_WORKERS', 2, minimum=1)
    FRAME_SAMPLE_INTERVAL = _int_from_env('FRAME_SAMPLE_INTERVAL', 10, minimum=1) # un frame ogni N secondi
    THUMBNAIL_OFFSET = _int_from_env('THUMBNAIL_OFFSET', 5, minimum=0) # secondi
    THUMBNAIL_SIZE = (320, 240)
    # Seed opzionale per il termine casuale dello scorer (utile per riprodurre un'analisi)
    _seed_str = os.environ.get('FRAME_SCORER_SEED')
    try:
        FRAME_SCORER_SEED = int(_seed_str) if _seed_str else None
    except ValueError:
        print(f"ATTENZIONE: FRAME_SCORER_SEED ('{_seed_str}') non valido. Uso seed casuale.")
        FRAME_SCORER_SEED = None

    # --- Streaming ---
    STREAM_CHUNK_SIZE = _int_from_env('STREAM_CHUNK_SIZE', 64 * 1024, minimum=1024)
    SSE_KEEPALIVE_SECONDS = _int_from_env('SSE_KEEPALIVE_SECONDS', 15, minimum=1)

    # --- Scheduler (pulizia pipeline orfane) ---
    STALE_PIPELINE_MINUTES = _int_from_env('STALE_PIPELINE_MINUTES', 120, minimum=1)
    SWEEPER_INTERVAL_MINUTES = _int_from_env('SWEEPER_INTERVAL_MINUTES', 15, minimum=1)

    # --- CORS ---
    _origins_str = os.environ.get('CORS_ORIGINS', '*')
    CORS_ORIGINS = [origin.strip() for origin in _origins_str.split(',') if origin.strip()] or ['*']


class DevelopmentConfig(BaseConfig):
    """Configurazione per lo sviluppo."""
    DEBUG = True


class ProductionConfig(BaseConfig):
    """Configurazione per la produzione."""
    DEBUG = False


class TestConfig(DevelopmentConfig):
    """Configurazione per i test."""
    TESTING = True
    SECRET_KEY = 'test_secret_key_vetrina_0123456789abcdef'
    FRAME_SCORER_SEED = 1234
    PIPELINE_MAX_WORKERS = 1
    STREAM_CHUNK_SIZE = 1024
    SSE_KEEPALIVE_SECONDS = 1

    # _TEST_BASE_DIR verrà impostato dalla fixture di test
    _TEST_BASE_DIR = None
    _DATA_SUBDIR_IN_TEST_DIR = None

    def __setattr__(self, name, value):
        super().__setattr__(name, value)
        if name == '_TEST_BASE_DIR' and value is not None:
            self._DATA_SUBDIR_IN_TEST_DIR = os.path.join(value, "data_for_tests")
            os.makedirs(self._DATA_SUBDIR_IN_TEST_DIR, exist_ok=True)

    def _get_test_data_path(self, filename):
        if self._DATA_SUBDIR_IN_TEST_DIR is None:
            raise ValueError("_DATA_SUBDIR_IN_TEST_DIR non è stato impostato. Assicurati che _TEST_BASE_DIR sia impostato.")
        return os.path.join(self._DATA_SUBDIR_IN_TEST_DIR, filename)

    @property
    def DATABASE_FILE(self):
        return self._get_test_data_path('test_vetrina.db')

    @property
    def UPLOAD_FOLDER_PATH(self):
        return self._get_test_data_path('test_uploads')

    @property
    def OPTIMIZED_FOLDER_PATH(self):
        return self._get_test_data_path('test_optimized')

    @property
    def THUMBNAILS_FOLDER_PATH(self):
        return self._get_test_data_path('test_thumbnails')

    @property
    def SCRATCH_FOLDER_PATH(self):
        return self._get_test_data_path('test_scratch')


# Dizionario per selezionare la configurazione
config_by_name = dict(
    development=DevelopmentConfig,
    production=ProductionConfig,
    test=TestConfig,
    default=DevelopmentConfig
)

# --- Import Standard ---
import os
import sys
import atexit
import logging
import random

# --- Import Flask e Correlati ---
from flask import Flask, g, jsonify
from flask_cors import CORS
from flask_login import LoginManager
from apscheduler.schedulers.background import BackgroundScheduler
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from .core.auth import load_principal_from_request
from .core.broadcast import ProgressChannel
from .core.errors import VetrinaError
from .core.pipeline import PipelineOrchestrator, PipelineSupervisor
from .core.range_streaming import EXPOSED_STREAM_HEADERS
from .core.setup import ensure_media_directories, init_db
from .core.video_store import VideoStore
from .services.media.metadata import MetadataExtractor
from .services.media.thumbnails import ThumbnailGenerator
from .services.media.tools import SubprocessToolRunner
from .services.media.transcoder import StreamTranscoder
from .services.sensitivity.analyzer import SensitivityAnalyzer
from .services.sensitivity.scoring import HeuristicFrameScorer

# --- Caricamento Configurazione Centralizzata ---
load_dotenv() # Carica .env prima di importare config
try:
    from .config import config_by_name
    config_name = os.getenv('FLASK_ENV', 'default')
    AppConfig = config_by_name.get(config_name, config_by_name['default'])
    print(f"Trovata configurazione per l'ambiente: {config_name}")
except ImportError as e:
    print(f"ERRORE CRITICO: Impossibile importare la configurazione da config.py: {e}")
    sys.exit(1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def shutdown_scheduler(scheduler_instance):
    """Funzione per spegnere lo scheduler in modo pulito."""
    if scheduler_instance and scheduler_instance.running:
        logger.info("Spegnimento APScheduler...")
        try:
            scheduler_instance.shutdown()
            logger.info("APScheduler spento.")
        except Exception as e:
            logger.error(f"Errore durante lo spegnimento dello scheduler: {e}")


def build_services(config, runner=None):
    """Costruisce store, canale e pipeline a partire dalla config.

    `runner` permette di sostituire l'esecuzione reale di ffmpeg/ffprobe (test).
    """
    runner = runner or SubprocessToolRunner(timeout=config.get('MEDIA_TOOL_TIMEOUT'))
    store = VideoStore(config['DATABASE_FILE'])
    channel = ProgressChannel()
    ffmpeg_path = config.get('FFMPEG_PATH', 'ffmpeg')
    analyzer = SensitivityAnalyzer(
        runner=runner,
        scorer=HeuristicFrameScorer(random.Random(config.get('FRAME_SCORER_SEED'))),
        ffmpeg_path=ffmpeg_path,
        scratch_root=config.get('SCRATCH_FOLDER_PATH'),
        sample_interval=config.get('FRAME_SAMPLE_INTERVAL', 10),
    )
    orchestrator = PipelineOrchestrator(
        store=store,
        channel=channel,
        extractor=MetadataExtractor(runner, ffprobe_path=config.get('FFPROBE_PATH', 'ffprobe')),
        transcoder=StreamTranscoder(runner, ffmpeg_path=ffmpeg_path),
        thumbnailer=ThumbnailGenerator(
            runner, ffmpeg_path=ffmpeg_path,
            offset_seconds=config.get('THUMBNAIL_OFFSET', 5),
            size=config.get('THUMBNAIL_SIZE', (320, 240)),
        ),
        analyzer=analyzer,
        optimized_dir=config['OPTIMIZED_FOLDER_PATH'],
        thumbnails_dir=config['THUMBNAILS_FOLDER_PATH'],
    )
    supervisor = PipelineSupervisor(max_workers=config.get('PIPELINE_MAX_WORKERS', 2))
    return {
        'VIDEO_STORE': store,
        'PROGRESS_CHANNEL': channel,
        'PIPELINE_ORCHESTRATOR': orchestrator,
        'PIPELINE_SUPERVISOR': supervisor,
    }


# --- Factory Function per l'App Flask ---
def create_app(config_object=AppConfig, tool_runner=None):
    """Crea e configura l'istanza dell'app Flask."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Un solo proxy (reverse proxy / tunnel) davanti all'app
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    # --- Configura Logging ---
    is_debug_mode = app.config.get('FLASK_DEBUG', app.config.get('DEBUG', False))
    log_level = logging.DEBUG if is_debug_mode else logging.INFO
    logging.getLogger().setLevel(log_level)
    if not logging.getLogger().hasHandlers():
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(handler)
    logger.info(f"Logging configurato a livello: {logging.getLevelName(log_level)}")

    # Validazioni Configurazioni Critiche
    if not app.config.get('SECRET_KEY'): logger.critical("SECRET_KEY mancante!"); sys.exit(1)
    if not app.config.get('DATABASE_FILE'): logger.critical("DATABASE_FILE mancante!"); sys.exit(1)

    # Inizializzazione DB SQLite e cartelle media
    try:
        init_db(app.config)
        ensure_media_directories(app.config)
    except Exception as e:
        logger.critical(f"Fallimento inizializzazione DB/Directory: {e}", exc_info=True)
        sys.exit(1)

    # Servizi condivisi (store, canale eventi, pipeline)
    app.config.update(build_services(app.config, runner=tool_runner))
    atexit.register(lambda: app.config['PIPELINE_SUPERVISOR'].shutdown(wait=False))

    # Inizializza Flask-Login: niente sessioni, ogni richiesta porta il suo token
    login_manager = LoginManager()
    login_manager.init_app(app)
    login_manager.request_loader(load_principal_from_request)

    @login_manager.unauthorized_handler
    def unauthorized():
        error_code = g.get('auth_error_code', 'UNAUTHORIZED')
        messages = {
            'TOKEN_REQUIRED': "Token di accesso richiesto.",
            'TOKEN_EXPIRED': "Il token di accesso è scaduto.",
            'INVALID_TOKEN': "Il token di accesso non è valido.",
            'USER_NOT_FOUND': "Utente non trovato.",
        }
        message = messages.get(error_code, "Autenticazione richiesta.")
        return jsonify({'success': False, 'error_code': error_code, 'message': message}), 401

    # --- Scheduler (pulizia elaborazioni orfane) ---
    if not app.config.get('TESTING', False):
        from .scheduler_jobs import sweep_stale_pipelines_job
        app.scheduler = BackgroundScheduler(timezone="UTC")
        app.scheduler.add_job(
            func=sweep_stale_pipelines_job,
            args=[app],
            trigger='interval',
            minutes=app.config.get('SWEEPER_INTERVAL_MINUTES', 15),
            id='sweep_stale_pipelines_job',
            name='Pulizia elaborazioni orfane',
            replace_existing=True,
            misfire_grace_time=300,
        )
        app.scheduler.start()
        logger.info("APScheduler avviato con successo.")
        atexit.register(lambda: shutdown_scheduler(app.scheduler))
    else:
        app.scheduler = None
        logger.info("Modalità TESTING: APScheduler NON avviato.")

    # Abilita CORS (gli header del range devono essere leggibili dal player)
    CORS(
        app,
        resources={r"/api/*": {"origins": app.config.get('CORS_ORIGINS', '*')}},
        expose_headers=EXPOSED_STREAM_HEADERS,
    )

    # Registra Blueprints
    from .api.routes.videos import videos_bp
    app.register_blueprint(videos_bp, url_prefix='/api/videos')
    from .api.routes.events import events_bp
    app.register_blueprint(events_bp, url_prefix='/api/events')
    logger.info("Blueprint videos ed events registrati.")

    # --- Gestione errori ---
    @app.errorhandler(VetrinaError)
    def handle_vetrina_error(error):
        if error.http_status >= 500:
            logger.error(f"Errore applicativo: {error}")
            message = "Errore interno del server."
        else:
            message = error.message
        return jsonify({'success': False, 'error_code': error.error_code, 'message': message}), error.http_status

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(error):
        limit_mb = app.config.get('MAX_CONTENT_LENGTH', 0) // (1024 * 1024)
        return jsonify({'success': False, 'error_code': 'FILE_TOO_LARGE',
                        'message': f"Il file supera il limite massimo di {limit_mb} MB."}), 413

    @app.errorhandler(500)
    def handle_internal_error(error):
        logger.error(f"Errore 500: {error}")
        return jsonify({'success': False, 'error_code': 'INTERNAL_SERVER_ERROR', 'message': "Errore interno del server."}), 500

    @app.route('/api/health')
    def health():
        return jsonify({'success': True, 'status': 'ok'})

    return app


if __name__ == '__main__':
    application = create_app()
    application.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), threaded=True)

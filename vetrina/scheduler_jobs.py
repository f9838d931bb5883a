import logging
from datetime import timedelta

from vetrina.api.models.video import SensitivityAnalysis, VideoStatus
from vetrina.core.broadcast import EVENT_PROCESSING_ERROR
from vetrina.utils import utcnow

logger = logging.getLogger(__name__)


def sweep_stale_pipelines(store, supervisor, channel, stale_minutes):
    """Chiude come failed le elaborazioni rimaste a metà (es. dopo un riavvio del server).

    Vengono toccati solo i video senza un'esecuzione attiva nel supervisor e
    non aggiornati da almeno `stale_minutes`. Ritorna quanti video sono stati chiusi.
    """
    cutoff = utcnow() - timedelta(minutes=stale_minutes)
    swept = 0
    for record in store.find_stale(cutoff):
        if supervisor.is_running(record.id):
            continue
        error = f"Elaborazione interrotta: nessun avanzamento da oltre {stale_minutes} minuti."
        if record.status in (VideoStatus.UPLOADING, VideoStatus.PROCESSING):
            record.mark_failed(error)
        else:
            # Video già concluso, solo la rianalisi è rimasta appesa
            record.sensitivity = SensitivityAnalysis.failed(error, record.sensitivity.details)
        if store.persist_pipeline_state(record):
            channel.publish(record.owner_id, EVENT_PROCESSING_ERROR, {
                'video_id': record.id, 'error': error, 'stage': 'sweeper',
            })
            swept += 1
            logger.warning(f"SCHEDULER JOB: video {record.id} chiuso come failed ({error})")
    return swept


def sweep_stale_pipelines_job(app):
    """Job periodico APScheduler."""
    logger.info("SCHEDULER JOB: Controllo elaborazioni orfane...")
    with app.app_context():
        cfg = app.config
        try:
            swept = sweep_stale_pipelines(
                cfg['VIDEO_STORE'], cfg['PIPELINE_SUPERVISOR'], cfg['PROGRESS_CHANNEL'],
                cfg.get('STALE_PIPELINE_MINUTES', 120),
            )
            logger.info(f"SCHEDULER JOB: Completato. Video chiusi: {swept}")
        except Exception:
            logger.exception("SCHEDULER JOB: ERRORE CRITICO durante la pulizia delle elaborazioni.")

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict

from vetrina.api.models.video import SensitivityStatus, VideoRecord, VideoStatus
from vetrina.core.broadcast import (
    EVENT_PROCESSING_COMPLETE, EVENT_PROCESSING_ERROR, EVENT_PROCESSING_PROGRESS, ProgressChannel,
)
from vetrina.core.errors import InvalidTransitionError, PipelineAlreadyRunningError, StageError
from vetrina.core.video_store import VideoStore

logger = logging.getLogger(__name__)


class _RecordArchived(Exception):
    """Il video è stato archiviato durante l'elaborazione."""


class PipelineOrchestrator:
    """Esegue in sequenza metadati, transcodifica, miniatura e analisi di sensibilità.

    Dopo ogni traguardo il record viene salvato e viene pubblicato un evento di
    progresso al proprietario. Un errore in uno stadio porta il video in failed
    e ferma la pipeline; il progresso resta all'ultimo traguardo raggiunto.
    """

    def __init__(self, store: VideoStore, channel: ProgressChannel, extractor, transcoder,
                 thumbnailer, analyzer, optimized_dir, thumbnails_dir):
        self.store = store
        self.channel = channel
        self.extractor = extractor
        self.transcoder = transcoder
        self.thumbnailer = thumbnailer
        self.analyzer = analyzer
        self.optimized_dir = optimized_dir
        self.thumbnails_dir = thumbnails_dir

    def _publish(self, record, event_name, **payload):
        self.channel.publish(record.owner_id, event_name, {'video_id': record.id, **payload})

    def _sink_for(self, record):
        return lambda event_name, payload: self.channel.publish(record.owner_id, event_name, payload)

    def _checkpoint(self, record, progress, message):
        record.update_progress(progress)
        if not self.store.persist_pipeline_state(record):
            raise _RecordArchived(record.id)
        self._publish(
            record, EVENT_PROCESSING_PROGRESS,
            progress=record.processing_progress, status=record.status.value, message=message,
        )
        logger.info(f"[{record.id}] {record.processing_progress}% - {message}")

    def _fail(self, record, error):
        stage = getattr(error, 'stage', 'unknown')
        message = str(error)
        try:
            record.mark_failed(message)
        except InvalidTransitionError:
            logger.warning(f"[{record.id}] Video archiviato: errore '{message}' non registrato.")
            return record
        self.store.persist_pipeline_state(record)
        self._publish(record, EVENT_PROCESSING_ERROR, error=message, stage=stage)
        return record

    def run_pipeline(self, record: VideoRecord) -> VideoRecord:
        logger.info(f"[{record.id}] Avvio pipeline per '{record.original_name}'")
        try:
            record.advance_status(VideoStatus.PROCESSING)
            self._checkpoint(record, 10, "Avvio elaborazione video...")

            metadata = self.extractor.extract_metadata(record.file_path)
            record.apply_metadata(metadata)
            self._checkpoint(record, 20, "Metadati estratti...")

            optimized_path = os.path.join(self.optimized_dir, f"{record.id}.mp4")
            record.set_optimized_path(self.transcoder.transcode(record.file_path, optimized_path))
            self._checkpoint(record, 40, "Video ottimizzato per lo streaming...")

            record.thumbnail = self.thumbnailer.generate_thumbnail(record.file_path, self.thumbnails_dir)
            self._checkpoint(record, 60, "Miniatura generata...")

            record.begin_sensitivity()
            self._checkpoint(record, 80, "Avvio analisi di sensibilità...")

            analysis = self.analyzer.analyze(record.file_path, record.id, self._sink_for(record))
            record.apply_sensitivity(analysis)
            record.advance_status(VideoStatus.COMPLETED)
            self._checkpoint(record, 100, "Elaborazione completata.")
        except _RecordArchived:
            logger.info(f"[{record.id}] Video archiviato durante l'elaborazione: pipeline interrotta.")
            return record
        except StageError as e:
            logger.error(f"[{record.id}] Stadio '{e.stage}' fallito: {e}")
            return self._fail(record, e)
        except Exception as e:
            logger.exception(f"[{record.id}] Errore imprevisto nella pipeline: {e}")
            return self._fail(record, e)

        result = record.sensitivity.result.value if record.sensitivity.result else None
        self._publish(record, EVENT_PROCESSING_COMPLETE, title=record.title, sensitivity_result=result)
        logger.info(f"[{record.id}] Pipeline completata. Sensibilità: {record.sensitivity.status.value} / {result}")
        return record

    def run_reanalysis(self, record: VideoRecord) -> VideoRecord:
        """Nuova passata di sensibilità; lo stato del video non cambia."""
        if record.sensitivity.status != SensitivityStatus.PROCESSING:
            record.reopen_sensitivity()
        if not self.store.persist_pipeline_state(record):
            logger.info(f"[{record.id}] Video archiviato: rianalisi annullata.")
            return record
        logger.info(f"[{record.id}] Avvio rianalisi di sensibilità")
        analysis = self.analyzer.analyze(record.file_path, record.id, self._sink_for(record))
        record.apply_sensitivity(analysis)
        self.store.persist_pipeline_state(record)
        return record


class PipelineSupervisor:
    """Pool di thread per le pipeline, con un handle (Future) per video.

    Rifiuta una seconda esecuzione per lo stesso video finché la prima non è
    conclusa.
    """

    def __init__(self, max_workers=2):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='vetrina-pipeline')
        self._tasks: Dict[str, Future] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _run(video_id, fn, args, kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.exception(f"BACKGROUND PIPELINE: errore non gestito per il video {video_id}.")
            raise

    def _forget(self, video_id, future):
        with self._lock:
            if self._tasks.get(video_id) is future:
                del self._tasks[video_id]

    def submit(self, video_id, fn, *args, **kwargs) -> Future:
        with self._lock:
            existing = self._tasks.get(video_id)
            if existing is not None and not existing.done():
                raise PipelineAlreadyRunningError(video_id)
            future = self._executor.submit(self._run, video_id, fn, args, kwargs)
            self._tasks[video_id] = future
        future.add_done_callback(lambda f, vid=video_id: self._forget(vid, f))
        logger.info(f"Elaborazione del video {video_id} accodata.")
        return future

    def is_running(self, video_id) -> bool:
        with self._lock:
            future = self._tasks.get(video_id)
            return future is not None and not future.done()

    def wait(self, video_id, timeout=None):
        """Attende la fine dell'esecuzione corrente (se presente) e ne ritorna il risultato."""
        with self._lock:
            future = self._tasks.get(video_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def shutdown(self, wait=True):
        logger.info("Spegnimento pool pipeline...")
        self._executor.shutdown(wait=wait)

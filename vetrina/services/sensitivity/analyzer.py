import logging
import os
import tempfile
from typing import Callable, List, Optional

from vetrina.api.models.video import (
    AnalysisDetails, AverageScores, FlaggedContent, SensitivityAnalysis, SensitivityResult,
)
from vetrina.core.broadcast import (
    EVENT_SENSITIVITY_COMPLETE, EVENT_SENSITIVITY_ERROR, EVENT_SENSITIVITY_PROGRESS,
)
from vetrina.core.errors import AnalysisError, ToolExecutionError
from vetrina.services.media.tools import ToolRunner
from vetrina.services.sensitivity.scoring import FrameScore, FrameScorer

logger = logging.getLogger(__name__)

HIGH_SUSPICION = 0.6
FLAGGED_AVERAGE = 0.7
FLAGGED_HIGH_RATIO = 0.3
REVIEW_AVERAGE = 0.4
ADULT_AVERAGE = 0.6

NOTES = {
    SensitivityResult.SAFE: "Il contenuto sembra adatto a un pubblico generale.",
    SensitivityResult.FLAGGED: "Rilevato contenuto potenzialmente inappropriato nei frame del video.",
    SensitivityResult.UNDER_REVIEW: "Rilevato contenuto potenzialmente problematico. Consigliata revisione manuale.",
}

ProgressSink = Callable[[str, dict], None]


def classify_sensitivity(average_suspicion, high_frames, frame_count):
    """Tabella di classificazione: ritorna (result, confidence arrotondata a 2 decimali)."""
    high_ratio = high_frames / frame_count if frame_count else 0.0
    if average_suspicion > FLAGGED_AVERAGE or high_ratio > FLAGGED_HIGH_RATIO:
        result = SensitivityResult.FLAGGED
        confidence = min(average_suspicion, 0.9)
    elif average_suspicion > REVIEW_AVERAGE or high_frames > 0:
        result = SensitivityResult.UNDER_REVIEW
        confidence = min(average_suspicion * 0.8, 0.7)
    else:
        result = SensitivityResult.SAFE
        confidence = max(0.85, 0.98 - average_suspicion)
    return result, round(confidence, 2)


def summarize_scores(scores: List[FrameScore]) -> SensitivityAnalysis:
    if not scores:
        raise AnalysisError("Nessun frame analizzabile.")
    frame_count = len(scores)
    average_suspicion = sum(s.suspicion for s in scores) / frame_count
    average_brightness = sum(s.brightness for s in scores) / frame_count
    average_contrast = sum(s.contrast for s in scores) / frame_count
    high_frames = sum(1 for s in scores if s.suspicion > HIGH_SUSPICION)

    result, confidence = classify_sensitivity(average_suspicion, high_frames, frame_count)
    return SensitivityAnalysis.completed(
        result=result,
        confidence=confidence,
        flagged_content=FlaggedContent(adult=average_suspicion > ADULT_AVERAGE),
        notes=NOTES[result],
        details=AnalysisDetails(
            frames_analyzed=frame_count,
            average_scores=AverageScores(
                suspicion=round(average_suspicion, 2),
                brightness=round(average_brightness, 2),
                contrast=round(average_contrast, 2),
                high_suspicion_frames=high_frames,
            ),
        ),
    )


class SensitivityAnalyzer:
    """Campiona i frame di un video, li valuta e classifica il risultato.

    `analyze` non solleva mai eccezioni: ogni errore diventa un'analisi con
    status failed. I frame vivono in una cartella temporanea per esecuzione,
    rimossa sempre all'uscita.
    """

    def __init__(self, runner: ToolRunner, scorer: FrameScorer, ffmpeg_path='ffmpeg',
                 scratch_root=None, sample_interval=10):
        self.runner = runner
        self.scorer = scorer
        self.ffmpeg_path = ffmpeg_path
        self.scratch_root = scratch_root
        self.sample_interval = sample_interval

    def _extract_frames(self, file_path, frames_dir):
        args = [
            self.ffmpeg_path, '-i', file_path,
            '-vf', f"fps=1/{self.sample_interval}",
            '-q:v', '2',
            os.path.join(frames_dir, 'frame_%03d.jpg'),
        ]
        try:
            result = self.runner.run(args)
        except ToolExecutionError as e:
            raise AnalysisError(f"Estrazione frame fallita: {e}") from e
        if not result.ok:
            raise AnalysisError(f"Estrazione frame fallita (ffmpeg exit {result.exit_code}).")
        frame_files = sorted(
            name for name in os.listdir(frames_dir)
            if name.startswith('frame_') and name.endswith('.jpg')
        )
        logger.info(f"Estratti {len(frame_files)} frame per l'analisi.")
        return [os.path.join(frames_dir, name) for name in frame_files]

    def _score_frame(self, frame_path) -> Optional[FrameScore]:
        """Un frame che non si riesce a valutare viene saltato, non conteggiato."""
        try:
            return self.scorer.score(frame_path)
        except Exception as e:
            logger.warning(f"Frame {os.path.basename(frame_path)} saltato: {e}")
            return None

    def analyze(self, file_path, video_id, progress_sink: Optional[ProgressSink] = None) -> SensitivityAnalysis:
        emit = progress_sink or (lambda event_name, payload: None)

        def progress(value, step):
            emit(EVENT_SENSITIVITY_PROGRESS, {'video_id': video_id, 'step': step, 'progress': value})

        try:
            progress(0, "Inizializzazione analisi del contenuto...")
            if self.scratch_root:
                os.makedirs(self.scratch_root, exist_ok=True)
            progress(10, "Preparazione analisi immagini...")
            with tempfile.TemporaryDirectory(prefix=f"frames_{video_id}_", dir=self.scratch_root) as frames_dir:
                progress(20, "Estrazione frame dal video...")
                frame_paths = self._extract_frames(file_path, frames_dir)
                if not frame_paths:
                    raise AnalysisError("Nessun frame estratto dal video.")

                progress(40, "Analisi del contenuto video...")
                scores = []
                total = len(frame_paths)
                for index, frame_path in enumerate(frame_paths, start=1):
                    score = self._score_frame(frame_path)
                    if score is not None:
                        scores.append(score)
                    progress(40 + round(index / total * 40), f"Analizzati {index}/{total} frame")

                progress(85, "Elaborazione dei risultati...")
                analysis = summarize_scores(scores)
        except Exception as e:
            logger.exception(f"Analisi di sensibilità fallita per il video {video_id}: {e}")
            emit(EVENT_SENSITIVITY_ERROR, {'video_id': video_id, 'error': str(e)})
            return SensitivityAnalysis.failed(str(e))

        logger.info(
            f"Analisi di sensibilità completata per {video_id}: {analysis.result.value} "
            f"(confidenza {analysis.confidence}, {analysis.details.frames_analyzed} frame)"
        )
        emit(EVENT_SENSITIVITY_COMPLETE, {'video_id': video_id, 'results': analysis.model_dump(mode='json')})
        return analysis

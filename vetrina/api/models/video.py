from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import List, Optional
from datetime import datetime
from enum import Enum
import uuid

from vetrina.core.errors import InvalidTransitionError
from vetrina.utils import utcnow


class VideoStatus(str, Enum):
    UPLOADING = 'uploading'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    ARCHIVED = 'archived'


class SensitivityStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    SKIPPED = 'skipped'


class SensitivityResult(str, Enum):
    SAFE = 'safe'
    FLAGGED = 'flagged'
    UNDER_REVIEW = 'under-review'


class Visibility(str, Enum):
    PRIVATE = 'private'
    ORGANIZATION = 'organization'
    PUBLIC = 'public'


# Ordine "in avanti" del ciclo di vita; failed e archived sono gestiti a parte
_STATUS_ORDER = {
    VideoStatus.UPLOADING: 0,
    VideoStatus.PROCESSING: 1,
    VideoStatus.COMPLETED: 2,
}
_SENSITIVITY_TERMINAL = {SensitivityStatus.COMPLETED, SensitivityStatus.FAILED, SensitivityStatus.SKIPPED}


class Resolution(BaseModel):
    width: int = Field(0, ge=0)
    height: int = Field(0, ge=0)


class MediaMetadata(BaseModel):
    codec: str = 'unknown'
    bitrate: int = Field(0, ge=0)
    frame_rate: float = Field(0.0, ge=0)
    aspect_ratio: str = 'unknown'
    has_audio: bool = False


class VideoMetadata(BaseModel):
    """Risultato dell'estrazione metadati (ffprobe + stat del file)."""
    duration: float = Field(0.0, ge=0)
    resolution: Resolution = Field(default_factory=Resolution)
    media: MediaMetadata = Field(default_factory=MediaMetadata)
    file_size: int = Field(0, ge=0)
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None


class FlaggedContent(BaseModel):
    violence: bool = False
    adult: bool = False
    hate: bool = False
    drugs: bool = False
    weapons: bool = False


class AverageScores(BaseModel):
    suspicion: float = 0.0
    brightness: float = 0.0
    contrast: float = 0.0
    high_suspicion_frames: int = 0


class AnalysisDetails(BaseModel):
    frames_analyzed: int = 0
    average_scores: AverageScores = Field(default_factory=AverageScores)
    error: Optional[str] = None


class SensitivityAnalysis(BaseModel):
    """Esito della classificazione di sensibilità.

    `result` e `confidence` esistono solo quando `status` è completed: in ogni
    altro stato vengono azzerati alla costruzione.
    """
    status: SensitivityStatus = SensitivityStatus.PENDING
    result: Optional[SensitivityResult] = None
    confidence: Optional[float] = Field(None, ge=0, le=100)
    flagged_content: FlaggedContent = Field(default_factory=FlaggedContent)
    notes: Optional[str] = None
    analysis_date: Optional[datetime] = None
    details: AnalysisDetails = Field(default_factory=AnalysisDetails)

    @model_validator(mode='after')
    def _result_only_when_completed(self):
        if self.status == SensitivityStatus.COMPLETED:
            if self.result is None or self.confidence is None:
                raise ValueError("Un'analisi completata deve avere result e confidence.")
        else:
            self.result = None
            self.confidence = None
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in _SENSITIVITY_TERMINAL

    @classmethod
    def processing(cls) -> 'SensitivityAnalysis':
        return cls(status=SensitivityStatus.PROCESSING)

    @classmethod
    def failed(cls, error: str, details: Optional[AnalysisDetails] = None) -> 'SensitivityAnalysis':
        details = (details or AnalysisDetails()).model_copy(update={'error': error})
        return cls(
            status=SensitivityStatus.FAILED,
            notes=f"Analisi fallita: {error}",
            analysis_date=utcnow(),
            details=details,
        )

    @classmethod
    def completed(cls, result, confidence, flagged_content=None, details=None, notes=None) -> 'SensitivityAnalysis':
        return cls(
            status=SensitivityStatus.COMPLETED,
            result=result,
            confidence=confidence,
            flagged_content=flagged_content or FlaggedContent(),
            notes=notes,
            analysis_date=utcnow(),
            details=details or AnalysisDetails(),
        )


def clamp_progress(value):
    """Riporta un valore di progresso dentro [0, 100]."""
    if value is None:
        return 0
    value = int(round(float(value)))
    return max(0, min(100, value))


def _new_video_id():
    return uuid.uuid4().hex


class VideoRecord(BaseModel):
    """Video caricato con il suo stato di elaborazione e classificazione."""
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_video_id, frozen=True)
    owner_id: str = Field(frozen=True)
    organization_id: str = Field(frozen=True)

    title: str
    description: str = ''
    tags: List[str] = Field(default_factory=list)
    visibility: Visibility = Visibility.PRIVATE

    filename: str
    original_name: str
    file_path: str = Field(frozen=True)
    optimized_path: Optional[str] = None
    file_size: int = Field(0, ge=0)
    mime_type: str = ''
    thumbnail: Optional[str] = None

    duration: float = Field(0.0, ge=0)
    resolution: Resolution = Field(default_factory=Resolution)
    metadata: MediaMetadata = Field(default_factory=MediaMetadata)

    status: VideoStatus = VideoStatus.UPLOADING
    processing_progress: int = 0
    sensitivity: SensitivityAnalysis = Field(default_factory=SensitivityAnalysis)

    is_active: bool = True
    view_count: int = Field(0, ge=0)
    last_viewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('processing_progress', mode='before')
    @classmethod
    def _clamp_progress(cls, value):
        return clamp_progress(value)

    @field_validator('tags', mode='before')
    @classmethod
    def _normalize_tags(cls, value):
        if value is None:
            return []
        normalized = []
        for tag in value:
            tag = str(tag).strip()
            if tag and tag not in normalized:
                normalized.append(tag)
        return normalized

    # --- Transizioni di stato ---

    def advance_status(self, new_status):
        """Sposta lo stato del video rifiutando i passi all'indietro."""
        new_status = VideoStatus(new_status)
        current = self.status
        if new_status == current:
            return self
        if current == VideoStatus.ARCHIVED:
            raise InvalidTransitionError(f"Il video {self.id} è archiviato: impossibile passare a '{new_status.value}'.")
        if new_status == VideoStatus.ARCHIVED:
            self.status = new_status
            return self
        if new_status == VideoStatus.FAILED:
            self.status = new_status
            return self
        if current == VideoStatus.FAILED or _STATUS_ORDER[new_status] < _STATUS_ORDER[current]:
            raise InvalidTransitionError(
                f"Transizione non consentita per il video {self.id}: '{current.value}' -> '{new_status.value}'."
            )
        self.status = new_status
        return self

    def update_progress(self, value):
        """Aggiorna il progresso (mai all'indietro); congelato dopo un fallimento."""
        if self.status == VideoStatus.FAILED:
            return self
        self.processing_progress = max(self.processing_progress, clamp_progress(value))
        return self

    def set_optimized_path(self, path):
        if self.optimized_path is not None and self.optimized_path != path:
            raise InvalidTransitionError(f"optimized_path del video {self.id} è già impostato.")
        self.optimized_path = path
        return self

    def apply_metadata(self, meta: VideoMetadata):
        self.duration = meta.duration
        self.resolution = meta.resolution
        self.metadata = meta.media
        if meta.file_size:
            self.file_size = meta.file_size
        return self

    def begin_sensitivity(self):
        if self.sensitivity.is_terminal:
            raise InvalidTransitionError(
                f"L'analisi del video {self.id} è già '{self.sensitivity.status.value}': usare reopen_sensitivity()."
            )
        self.sensitivity = SensitivityAnalysis.processing()
        return self

    def reopen_sensitivity(self):
        """Riapre l'analisi per una nuova passata (solo rianalisi)."""
        if self.sensitivity.status == SensitivityStatus.PROCESSING:
            raise InvalidTransitionError(f"Analisi già in corso per il video {self.id}.")
        self.sensitivity = SensitivityAnalysis.processing()
        return self

    def apply_sensitivity(self, analysis: SensitivityAnalysis):
        if self.sensitivity.is_terminal:
            raise InvalidTransitionError(f"L'analisi del video {self.id} è già conclusa.")
        if not analysis.is_terminal:
            raise InvalidTransitionError("Si può applicare solo un'analisi conclusa.")
        self.sensitivity = analysis
        return self

    def mark_failed(self, error: str):
        """Stato failed; l'errore finisce in sensitivity.details.error."""
        self.advance_status(VideoStatus.FAILED)
        if self.sensitivity.is_terminal:
            details = self.sensitivity.details.model_copy(update={'error': error})
            self.sensitivity = self.sensitivity.model_copy(update={'details': details})
        else:
            self.sensitivity = SensitivityAnalysis.failed(error, self.sensitivity.details)
        return self

    def archive(self):
        self.is_active = False
        self.status = VideoStatus.ARCHIVED
        return self

    def touch(self):
        self.updated_at = utcnow()
        return self

    def to_public_dict(self):
        """Rappresentazione JSON per le API (senza percorsi interni)."""
        data = self.model_dump(mode='json', exclude={'file_path', 'optimized_path'})
        data['is_streamable'] = self.optimized_path is not None
        return data

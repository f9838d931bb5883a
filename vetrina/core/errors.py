"""Eccezioni applicative di Vetrina.

Ogni eccezione porta un `error_code` stabile (usato nelle risposte JSON) e lo
status HTTP con cui le route la traducono.
"""


class VetrinaError(Exception):
    """Radice di tutte le eccezioni applicative."""
    error_code = 'INTERNAL_SERVER_ERROR'
    http_status = 500

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class InvalidInputError(VetrinaError):
    """Dati di input non validi."""
    error_code = 'VALIDATION_ERROR'
    http_status = 400


class AuthenticationError(VetrinaError):
    """Autenticazione richiesta."""
    error_code = 'UNAUTHORIZED'
    http_status = 401


class AuthorizationError(VetrinaError):
    """Accesso negato a questa risorsa."""
    error_code = 'FORBIDDEN'
    http_status = 403


class VideoNotFoundError(VetrinaError):
    """Video non trovato."""
    error_code = 'VIDEO_NOT_FOUND'
    http_status = 404

    def __init__(self, video_id, message=None):
        super().__init__(message or f"Video '{video_id}' non trovato.")
        self.video_id = video_id


class RangeNotSatisfiableError(VetrinaError):
    """Intervallo di byte richiesto non valido."""
    error_code = 'RANGE_NOT_SATISFIABLE'
    http_status = 416

    def __init__(self, file_size, message=None):
        super().__init__(message)
        self.file_size = file_size


class InvalidTransitionError(VetrinaError, ValueError):
    """Transizione di stato non consentita."""
    error_code = 'INVALID_STATE_TRANSITION'
    http_status = 409


class PipelineAlreadyRunningError(VetrinaError):
    """Elaborazione già in corso per questo video."""
    error_code = 'ALREADY_PROCESSING'
    http_status = 409

    def __init__(self, video_id):
        super().__init__(f"Elaborazione già in corso per il video '{video_id}'.")
        self.video_id = video_id


class ToolExecutionError(VetrinaError):
    """Impossibile eseguire lo strumento esterno."""
    error_code = 'TOOL_EXECUTION_ERROR'


class StageError(VetrinaError):
    """Errore in uno stadio della pipeline; `stage` indica quale."""
    error_code = 'PIPELINE_STAGE_FAILED'
    stage = 'unknown'

    def __init__(self, message=None, stage=None):
        super().__init__(message)
        if stage:
            self.stage = stage


class TranscodeError(StageError):
    """Transcodifica fallita."""
    error_code = 'TRANSCODE_FAILED'
    stage = 'transcode'


class AnalysisError(StageError):
    """Analisi di sensibilità fallita."""
    error_code = 'ANALYSIS_FAILED'
    stage = 'sensitivity'

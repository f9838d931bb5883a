import json
import logging
import os
from datetime import datetime, timezone

from pydantic import ValidationError

from vetrina.api.models.video import MediaMetadata, Resolution, VideoMetadata
from vetrina.core.errors import ToolExecutionError
from vetrina.services.media.tools import ToolRunner

logger = logging.getLogger(__name__)


def parse_frame_rate(value) -> float:
    """Converte un rapporto ffprobe ('30000/1001', '25/1', '29.97') in float.

    Il rapporto viene diviso esplicitamente, mai valutato come espressione.
    Valori non interpretabili, denominatore zero o negativi danno 0.0.
    """
    if value is None:
        return 0.0
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        if '/' in text:
            num_s, den_s = text.split('/', 1)
            num = float(num_s)
            den = float(den_s)
            if den == 0:
                return 0.0
            rate = num / den
        else:
            rate = float(text)
    except ValueError:
        return 0.0
    return rate if rate > 0 else 0.0


def _to_float(value):
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return 0.0


def _to_int(value):
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return 0


class MetadataExtractor:
    """Legge durata, risoluzione e codec di un video tramite ffprobe."""

    def __init__(self, runner: ToolRunner, ffprobe_path='ffprobe'):
        self.runner = runner
        self.ffprobe_path = ffprobe_path

    @staticmethod
    def _stat_fields(file_path):
        stats = os.stat(file_path)
        return {
            'file_size': stats.st_size,
            'created_at': datetime.fromtimestamp(stats.st_ctime, tz=timezone.utc),
            'modified_at': datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
        }

    @staticmethod
    def _parse_ffprobe_output(output, stat_fields) -> VideoMetadata:
        if not isinstance(output, dict):
            raise ValueError(f"output ffprobe inatteso: {type(output).__name__}")
        streams = [s for s in (output.get('streams') or []) if isinstance(s, dict)]
        fmt = output.get('format')
        fmt = fmt if isinstance(fmt, dict) else {}
        video_stream = next((s for s in streams if s.get('codec_type') == 'video'), None) or {}
        audio_stream = next((s for s in streams if s.get('codec_type') == 'audio'), None)

        return VideoMetadata(
            duration=_to_float(fmt.get('duration')),
            resolution=Resolution(
                width=_to_int(video_stream.get('width')),
                height=_to_int(video_stream.get('height')),
            ),
            media=MediaMetadata(
                codec=str(video_stream.get('codec_name') or 'unknown'),
                bitrate=_to_int(fmt.get('bit_rate')),
                frame_rate=parse_frame_rate(video_stream.get('r_frame_rate')),
                aspect_ratio=str(video_stream.get('display_aspect_ratio') or 'unknown'),
                has_audio=audio_stream is not None,
            ),
            **stat_fields,
        )

    def extract_metadata(self, file_path) -> VideoMetadata:
        """Estrae i metadati; se ffprobe fallisce torna valori di default (mai eccezioni per l'analisi)."""
        try:
            stat_fields = self._stat_fields(file_path)
        except OSError as e:
            logger.warning(f"Impossibile leggere le informazioni del file {file_path}: {e}")
            stat_fields = {}

        args = [
            self.ffprobe_path, '-v', 'quiet', '-print_format', 'json',
            '-show_format', '-show_streams', file_path,
        ]
        try:
            result = self.runner.run(args)
            if not result.ok:
                raise ToolExecutionError(f"ffprobe terminato con codice {result.exit_code}")
            metadata = self._parse_ffprobe_output(json.loads(result.stdout or '{}'), stat_fields)
        except (ToolExecutionError, ValueError, ValidationError) as e:
            logger.warning(f"Estrazione metadati fallita per {file_path}, uso valori di default: {e}")
            return VideoMetadata(**stat_fields)

        logger.info(
            f"Metadati estratti per {os.path.basename(file_path)}: "
            f"{metadata.duration:.1f}s, {metadata.resolution.width}x{metadata.resolution.height}, {metadata.media.codec}"
        )
        return metadata

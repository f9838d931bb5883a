import logging
import os
import uuid

from vetrina.core.errors import ToolExecutionError
from vetrina.services.media.tools import ToolRunner

logger = logging.getLogger(__name__)


def _format_offset(seconds):
    seconds = int(seconds)
    return f"{seconds // 3600:02d}:{(seconds % 3600) // 60:02d}:{seconds % 60:02d}"


class ThumbnailGenerator:
    """Cattura un frame e lo adatta (con bande) a una tela fissa."""

    def __init__(self, runner: ToolRunner, ffmpeg_path='ffmpeg', offset_seconds=5, size=(320, 240)):
        self.runner = runner
        self.ffmpeg_path = ffmpeg_path
        self.offset_seconds = offset_seconds
        self.width, self.height = size

    def build_command(self, input_path, thumbnail_path):
        w, h = self.width, self.height
        video_filter = (
            f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2"
        )
        return [
            self.ffmpeg_path, '-i', input_path,
            '-ss', _format_offset(self.offset_seconds),
            '-vframes', '1',
            '-vf', video_filter,
            '-y', thumbnail_path,
        ]

    def generate_thumbnail(self, input_path, output_dir):
        """Ritorna il nome file della miniatura, oppure None in caso di qualsiasi problema."""
        thumbnail_name = f"thumb_{uuid.uuid4().hex}.jpg"
        thumbnail_path = os.path.join(output_dir, thumbnail_name)
        try:
            os.makedirs(output_dir, exist_ok=True)
            result = self.runner.run(self.build_command(input_path, thumbnail_path))
        except (ToolExecutionError, OSError) as e:
            logger.warning(f"Generazione miniatura fallita per {input_path}: {e}")
            return None

        if not result.ok or not os.path.exists(thumbnail_path):
            logger.warning(f"Miniatura non creata per {input_path} (exit {result.exit_code}).")
            return None
        logger.info(f"Miniatura generata: {thumbnail_name}")
        return thumbnail_name

import logging
import os

from vetrina.core.errors import ToolExecutionError, TranscodeError
from vetrina.services.media.tools import ToolRunner
from vetrina.utils import remove_file_quietly

logger = logging.getLogger(__name__)


class StreamTranscoder:
    """Produce la copia H.264/AAC ottimizzata per lo streaming (moov atom in testa)."""

    def __init__(self, runner: ToolRunner, ffmpeg_path='ffmpeg'):
        self.runner = runner
        self.ffmpeg_path = ffmpeg_path

    def build_command(self, input_path, output_path):
        return [
            self.ffmpeg_path, '-i', input_path,
            '-c:v', 'libx264', '-preset', 'fast', '-crf', '23',
            '-c:a', 'aac',
            '-movflags', '+faststart',
            '-y', output_path,
        ]

    def transcode(self, input_path, output_path):
        """Ritorna output_path; TranscodeError se ffmpeg fallisce o il file non viene creato."""
        os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
        logger.info(f"Avvio transcodifica: {input_path} -> {output_path}")
        try:
            result = self.runner.run(self.build_command(input_path, output_path))
        except ToolExecutionError as e:
            raise TranscodeError(f"Impossibile ottimizzare il video per lo streaming: {e}") from e

        if not result.ok:
            remove_file_quietly(output_path)
            raise TranscodeError(f"Impossibile ottimizzare il video per lo streaming (ffmpeg exit {result.exit_code}).")
        if not os.path.exists(output_path):
            raise TranscodeError("Il file video ottimizzato non è stato creato.")

        logger.info(f"Video ottimizzato: {output_path} ({os.path.getsize(output_path)} bytes)")
        return output_path

import logging
import subprocess
from typing import List, NamedTuple, Protocol

from vetrina.core.errors import ToolExecutionError

logger = logging.getLogger(__name__)


class ToolResult(NamedTuple):
    stdout: str
    exit_code: int
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ToolRunner(Protocol):
    def run(self, args: List[str]) -> ToolResult:
        ...


class SubprocessToolRunner:
    """Esegue ffmpeg/ffprobe come processi esterni, in modo bloccante.

    Un timeout scaduto viene riportato come exit code -1; l'impossibilità di
    avviare il processo (binario mancante) solleva ToolExecutionError.
    """

    def __init__(self, timeout=None):
        self.timeout = timeout

    def run(self, args: List[str]) -> ToolResult:
        logger.debug(f"Esecuzione strumento: {' '.join(args)}")
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Timeout ({self.timeout}s) eseguendo {args[0]}.")
            return ToolResult(stdout='', exit_code=-1, stderr=f"timeout dopo {self.timeout}s")
        except OSError as e:
            raise ToolExecutionError(f"Impossibile avviare '{args[0]}': {e}") from e

        if completed.returncode != 0:
            logger.warning(f"{args[0]} terminato con codice {completed.returncode}: {(completed.stderr or '')[-500:]}")
        return ToolResult(stdout=completed.stdout or '', exit_code=completed.returncode, stderr=completed.stderr or '')

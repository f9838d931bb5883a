import logging
import random
from typing import NamedTuple, Optional, Protocol

from PIL import Image, ImageStat

logger = logging.getLogger(__name__)

DARK_THRESHOLD = 50
BRIGHT_THRESHOLD = 200
CONTRAST_THRESHOLD = 80
LUMA_PENALTY = 0.1
CONTRAST_PENALTY = 0.1
MAX_PERTURBATION = 0.3


class FrameScore(NamedTuple):
    suspicion: float
    brightness: float
    contrast: float
    width: int
    height: int


class FrameScorer(Protocol):
    def score(self, frame_path) -> Optional[FrameScore]:
        ...


class HeuristicFrameScorer:
    """Punteggio di sospetto segnaposto basato su luminosità e contrasto.

    Non è un classificatore reale: aggiunge un termine casuale in [0, 0.3)
    preso da `rng`, che va passato con un seed per avere risultati riproducibili.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    @staticmethod
    def measure(image):
        """(luminosità, contrasto): media delle medie e delle deviazioni standard dei canali."""
        stat = ImageStat.Stat(image)
        brightness = sum(stat.mean) / len(stat.mean)
        contrast = sum(stat.stddev) / len(stat.stddev)
        return brightness, contrast

    def suspicion_for(self, brightness, contrast):
        suspicion = 0.0
        if brightness < DARK_THRESHOLD or brightness > BRIGHT_THRESHOLD:
            suspicion += LUMA_PENALTY
        if contrast > CONTRAST_THRESHOLD:
            suspicion += CONTRAST_PENALTY
        suspicion += self.rng.random() * MAX_PERTURBATION
        return min(suspicion, 1.0)

    def score(self, frame_path) -> Optional[FrameScore]:
        """Ritorna None se il frame non è leggibile (viene saltato)."""
        try:
            with Image.open(frame_path) as image:
                width, height = image.size
                brightness, contrast = self.measure(image.convert('RGB'))
        except OSError as e:
            logger.warning(f"Frame {frame_path} non analizzabile: {e}")
            return None
        return FrameScore(
            suspicion=self.suspicion_for(brightness, contrast),
            brightness=brightness,
            contrast=contrast,
            width=width,
            height=height,
        )

"""openWakeWord wrapper for local wake word detection.

Uses one of the pre-trained openWakeWord models (hey_jarvis by default).
openWakeWord computes mel-spectrograms and speech embeddings internally
and produces a prediction for every 1280 samples (80ms), which is the
frame size the session feeds it.
"""

import logging

import numpy as np
import openwakeword
from openwakeword import Model as OwwModel

from voice_rewind.config import WAKEWORD_MODEL, WAKEWORD_THRESHOLD

logger = logging.getLogger(__name__)


class WakeWordDetector:
    """Scores audio frames and reports when the wake word was heard."""

    def __init__(
        self,
        model_name: str = WAKEWORD_MODEL,
        threshold: float = WAKEWORD_THRESHOLD,
    ) -> None:
        """Load a single pre-trained wake word model.

        Args:
            model_name: Key of a bundled openWakeWord model (e.g. "alexa",
                        "hey_jarvis", "hey_mycroft").
            threshold: Detection confidence threshold [0.0, 1.0]. Lower =
                       more false triggers, higher = more missed wakes.

        Raises:
            KeyError: If model_name is not a bundled model.
        """
        model_path = openwakeword.models[model_name]["model_path"]
        self._model = OwwModel(wakeword_model_paths=[model_path])
        self._model_name = model_name
        self._threshold = threshold
        logger.info(
            "WakeWordDetector loaded: model=%s, threshold=%.2f",
            model_name,
            threshold,
        )

    @property
    def threshold(self) -> float:
        return self._threshold

    def detect(self, frame: bytes) -> bool:
        """Process one frame of 16-bit signed LE mono PCM.

        Returns:
            True if any model output scored >= threshold.
        """
        audio_int16 = np.frombuffer(frame, dtype=np.int16)
        predictions = self._model.predict(audio_int16)

        for name, score in predictions.items():
            if score >= self._threshold:
                logger.debug(
                    "Wake word '%s' score: %.3f (threshold: %.2f)",
                    name,
                    score,
                    self._threshold,
                )
                return True
        return False

    def reset(self) -> None:
        """Clear the model's internal audio buffers (call after a detection)."""
        self._model.reset()

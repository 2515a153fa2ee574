"""Wake word sessions: LISTENING -> CAPTURING -> LISTENING.

Drives a StoppableReader through one wake word cycle:

- LISTENING: the reader is fed to a wake word detector. When the wake word
  is found the reader is stopped, so the listening loop sees end-of-stream
  on its next read, exactly as a streaming recognizer would.
- CAPTURING: the reader is rewound to the start of the wake word (with time
  zero reset to that point) and handed to a consumer callable. The rewound
  audio is replayed first, so the consumer hears the wake phrase itself.
- Back to LISTENING: the reader's history is reset, which is required
  before the next rewind.

WakeSession listens with a frame-scoring detector (openWakeWord) and
rewinds a fixed pre-roll before the detection point. PhraseSession listens
with a streaming recognizer and rewinds to the start time of the wake
phrase's first word. Both default to UtteranceCapture as the consumer.

Sessions do not own the audio source; they only read from the reader.
"""

import enum
import logging
from typing import Callable

import numpy as np

from voice_rewind.config import (
    BYTES_PER_SECOND,
    CHANNELS,
    ENERGY_THRESHOLD,
    FRAME_BYTES,
    MAX_UTTERANCE_S,
    MIN_WAKE_PHRASE_CONFIDENCE,
    PREROLL_MS,
    SAMPLE_WIDTH,
    SILENCE_TIMEOUT_S,
)
from voice_rewind.reader import RewindError, StoppableReader
from voice_rewind.timing import RecognitionResult, find_wake_phrase_start, seconds_to_offset

logger = logging.getLogger(__name__)

SAMPLE_BYTES = SAMPLE_WIDTH * CHANNELS


class State(enum.Enum):
    LISTENING = "listening"
    CAPTURING = "capturing"


def frame_rms(frame: bytes) -> float:
    """Root-mean-square level of 16-bit PCM audio (0.0 for empty input)."""
    usable = len(frame) - len(frame) % 2
    if usable == 0:
        return 0.0
    samples = np.frombuffer(frame[:usable], dtype=np.int16).astype(np.float64)
    return float(np.sqrt(np.mean(samples * samples)))


def read_frame(reader, frame_bytes: int) -> bytes:
    """Read one frame, or less at end-of-stream (b"" if nothing)."""
    frame = bytearray()
    while len(frame) < frame_bytes:
        data = reader.read(frame_bytes - len(frame))
        if not data:
            break
        frame += data
    return bytes(frame)


class UtteranceCapture:
    """Consumer that records one utterance from a rewound reader.

    Frames are collected until trailing silence (RMS below the energy
    threshold) reaches the silence timeout, the length limit is reached or
    the reader reports end-of-stream.
    """

    def __init__(
        self,
        frame_bytes: int = FRAME_BYTES,
        bytes_per_second: int = BYTES_PER_SECOND,
        silence_timeout_s: float = SILENCE_TIMEOUT_S,
        max_utterance_s: float = MAX_UTTERANCE_S,
        energy_threshold: float = ENERGY_THRESHOLD,
    ) -> None:
        self._frame_bytes = frame_bytes
        self._bytes_per_second = bytes_per_second
        self._silence_bytes = seconds_to_offset(silence_timeout_s, bytes_per_second, SAMPLE_BYTES)
        self._max_bytes = seconds_to_offset(max_utterance_s, bytes_per_second, SAMPLE_BYTES)
        self._energy_threshold = energy_threshold

    def __call__(self, reader) -> bytes:
        captured = bytearray()
        silence = 0
        while len(captured) < self._max_bytes:
            frame = read_frame(reader, self._frame_bytes)
            if not frame:
                logger.info("Audio source ended while capturing")
                break
            captured += frame
            if frame_rms(frame) >= self._energy_threshold:
                silence = 0
            else:
                silence += len(frame)
                if silence >= self._silence_bytes:
                    break

        audio = bytes(captured[: self._max_bytes])
        logger.info(
            "<<< Capture done (%.1fs of audio, %d bytes)",
            len(audio) / self._bytes_per_second,
            len(audio),
        )
        return audio


class _RewindSession:
    """Shared capture half of a wake word cycle; subclasses implement listen()."""

    def __init__(self, reader: StoppableReader, consumer: Callable) -> None:
        self._reader = reader
        self._consumer = consumer
        self._state = State.LISTENING

    @property
    def state(self) -> State:
        return self._state

    def listen(self) -> int | None:
        raise NotImplementedError

    def capture(self, offset: int):
        """Rewind to offset and hand the reader to the consumer.

        A rewind error is logged and the consumer reads live audio instead.
        The reader is reset afterwards.

        Returns:
            Whatever the consumer returns.
        """
        self._state = State.CAPTURING
        logger.info("Transitioning LISTENING -> CAPTURING (rewind to offset %d)", offset)
        try:
            self._reader.rewind(offset, reset_time_zero=True)
        except RewindError as exc:
            logger.warning("Rewind failed, capturing without wake word context: %s", exc)

        try:
            return self._consumer(self._reader)
        finally:
            self._reader.reset()
            self._state = State.LISTENING
            logger.info("Transitioning CAPTURING -> LISTENING")

    def run_once(self):
        """One full cycle: wait for the wake word, then capture.

        Returns:
            The consumer's result, or None if the source ended while
            listening.
        """
        offset = self.listen()
        if offset is None:
            return None
        return self.capture(offset)


class WakeSession(_RewindSession):
    """Wake word cycles driven by a frame-scoring detector.

    The detector only needs detect(frame) -> bool and reset(); see
    WakeWordDetector. Without a consumer, an UtteranceCapture built from
    the frame and capture settings records each utterance.
    """

    def __init__(
        self,
        reader: StoppableReader,
        detector,
        frame_bytes: int = FRAME_BYTES,
        bytes_per_second: int = BYTES_PER_SECOND,
        preroll_ms: int = PREROLL_MS,
        silence_timeout_s: float = SILENCE_TIMEOUT_S,
        max_utterance_s: float = MAX_UTTERANCE_S,
        energy_threshold: float = ENERGY_THRESHOLD,
        consumer: Callable | None = None,
    ) -> None:
        if consumer is None:
            consumer = UtteranceCapture(
                frame_bytes,
                bytes_per_second,
                silence_timeout_s,
                max_utterance_s,
                energy_threshold,
            )
        super().__init__(reader, consumer)
        self._detector = detector
        self._frame_bytes = frame_bytes
        self._preroll_bytes = seconds_to_offset(
            preroll_ms / 1000.0, bytes_per_second, SAMPLE_BYTES
        )

    def listen(self) -> int | None:
        """Read until the wake word is detected and the reader is stopped.

        Returns:
            Absolute offset to rewind to (pre-roll before the detection
            point, clamped to the retained history and kept on a sample
            boundary), or None if the source ended before a detection.
        """
        self._state = State.LISTENING
        detected = False

        while True:
            frame = read_frame(self._reader, self._frame_bytes)
            if not frame:
                break
            if detected or len(frame) < self._frame_bytes:
                continue
            if self._detector.detect(frame):
                detected = True
                logger.info(">>> WAKE WORD DETECTED -- stopping listener stream")
                self._reader.stop()

        if not detected:
            logger.info("Audio source ended while listening")
            return None

        self._detector.reset()
        offset = self._reader.position - self._preroll_bytes
        offset -= offset % SAMPLE_BYTES
        start = self._reader.buffer_start_offset
        if offset < start:
            # Pruning can leave the history starting mid-sample
            offset = start + (-start % SAMPLE_BYTES)
        return offset


class PhraseSession(_RewindSession):
    """Wake phrase cycles driven by a streaming recognizer's word timings.

    The recognizer only needs recognize(stream, on_result), which reads the
    stream until end-of-stream and passes each RecognitionResult to
    on_result; see CommandRecognizer. The first final result ending with
    one of the wake phrases stops the reader, and the capture rewinds to
    the start time of the phrase's first word.
    """

    def __init__(
        self,
        reader: StoppableReader,
        recognizer,
        wake_phrases: list[str],
        min_confidence: float = MIN_WAKE_PHRASE_CONFIDENCE,
        bytes_per_second: int = BYTES_PER_SECOND,
        consumer: Callable | None = None,
    ) -> None:
        super().__init__(reader, consumer or UtteranceCapture(bytes_per_second=bytes_per_second))
        self._recognizer = recognizer
        self._wake_phrases = list(wake_phrases)
        self._min_confidence = min_confidence
        self._bytes_per_second = bytes_per_second

    def listen(self) -> int | None:
        """Run the recognizer until a wake phrase stops the reader.

        Returns:
            Absolute offset of the wake phrase start, or None if the
            recognizer finished without finding one.
        """
        self._state = State.LISTENING
        start_time = None

        def handle_result(result: RecognitionResult) -> None:
            nonlocal start_time
            if start_time is not None:
                return
            found = find_wake_phrase_start(result, self._wake_phrases, self._min_confidence)
            if found is None:
                return
            start_time = found
            logger.info(">>> WAKE PHRASE at %.2fs -- stopping recognizer stream", found)
            self._reader.stop()

        self._recognizer.recognize(self._reader, handle_result)

        if start_time is None:
            logger.info("Recognizer finished without a wake phrase")
            return None
        return seconds_to_offset(start_time, self._bytes_per_second, SAMPLE_BYTES)

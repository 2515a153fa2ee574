"""Wake phrase timing for streaming ASR results.

A wake word recognizer running on a long-lived stream reports final
results with per-word start times. To replay the wake phrase to a second
recognizer, the start time of the phrase's first word is converted into a
byte offset on the audio stream and passed to StoppableReader.rewind().

The result dataclasses only carry the fields used here. CommandRecognizer
parses an ASR command's JSON output into them; other ASR clients can be
adapted the same way.
"""

from dataclasses import dataclass, field

from voice_rewind.config import BYTES_PER_SECOND, CHANNELS, SAMPLE_WIDTH


@dataclass
class WordInfo:
    word: str
    start_time: float  # seconds from the start of the stream
    duration: float = 0.0


@dataclass
class RecognitionAlternative:
    transcript: str
    confidence: float
    words: list[WordInfo] = field(default_factory=list)


@dataclass
class RecognitionResult:
    alternatives: list[RecognitionAlternative]
    is_partial: bool = False


def seconds_to_offset(
    seconds: float,
    bytes_per_second: int = BYTES_PER_SECOND,
    sample_width: int = SAMPLE_WIDTH * CHANNELS,
) -> int:
    """Convert a stream time into a byte offset on a whole sample boundary.

    The time is rounded to the nearest byte, then aligned down so the
    offset never splits a sample.
    """
    offset = round(seconds * bytes_per_second)
    return offset - offset % sample_width


def find_wake_phrase_start(
    result: RecognitionResult,
    phrases: list[str],
    min_confidence: float,
) -> float | None:
    """Return the start time of a wake phrase ending a final result.

    Only the first (best) alternative of a non-partial result is looked
    at. Its transcript must end with one of the phrases and its
    confidence must reach min_confidence. The phrase start is the start
    time of the first word in the word list that matches the phrase's
    first word.

    Returns:
        Start time in seconds, or None if no wake phrase was found or the
        phrase's first word has no timing information.
    """
    if result.is_partial or not result.alternatives:
        return None

    best = result.alternatives[0]
    if best.confidence < min_confidence:
        return None

    transcript = best.transcript.strip()
    for phrase in phrases:
        if not phrase or not transcript.endswith(phrase):
            continue
        first_word = phrase.split()[0]
        # Search from the end so an earlier repeat of the word is skipped
        for info in reversed(best.words):
            if info.word == first_word:
                return info.start_time
        return None

    return None

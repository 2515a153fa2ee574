"""voice-rewind: wake word capture daemon.

Usage: python -m voice_rewind [--config config.toml] [--output-dir DIR]

Pipeline:
1. A recorder (external command or ALSA) produces raw 16kHz PCM
2. A StoppableReader wraps it and keeps the last few seconds of audio
3. A session listens for the wake word: WakeSession scores frames with
   openWakeWord, PhraseSession runs an external ASR command and matches
   wake phrases in its word timings
4. The reader is stopped, rewound to the start of the wake word and handed
   to UtteranceCapture, so the captured utterance starts with the wake phrase
5. Each utterance is saved as a WAV file (and optionally played back)
"""

import argparse
import logging
import signal
import sys
import time
from pathlib import Path

from voice_rewind.alsa import AlsaRecorder
from voice_rewind.audio import Player, Recorder, pcm_to_wav
from voice_rewind.config import BYTES_PER_SECOND, AppConfig, load_config
from voice_rewind.reader import StoppableReader
from voice_rewind.recognizer import CommandRecognizer
from voice_rewind.session import PhraseSession, UtteranceCapture, WakeSession
from voice_rewind.wakeword import WakeWordDetector

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("voice_rewind")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="voice_rewind", description=__doc__.splitlines()[0])
    parser.add_argument("--config", help="Path to a TOML config file (defaults if omitted)")
    parser.add_argument("--output-dir", help="Directory for captured WAV files")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def make_recorder(cfg: AppConfig):
    """Build the audio source selected by the recording backend."""
    if cfg.recording.backend == "alsa":
        return AlsaRecorder(device=cfg.recording.alsa_device)
    return Recorder(cfg.recording)


def make_session(cfg: AppConfig, reader: StoppableReader):
    """Build the wake word session selected by the wake word engine."""
    utterance = UtteranceCapture(
        silence_timeout_s=cfg.capture.silence_timeout_s,
        max_utterance_s=cfg.capture.max_utterance_s,
        energy_threshold=cfg.capture.energy_threshold,
    )
    if cfg.wakeword.engine == "recognizer":
        logger.info("Wake phrases: %s", ", ".join(cfg.wakeword.wake_phrases))
        return PhraseSession(
            reader,
            CommandRecognizer(cfg.recognizer),
            cfg.wakeword.wake_phrases,
            min_confidence=cfg.wakeword.min_wake_phrase_confidence,
            consumer=utterance,
        )

    logger.info("Loading wake word model '%s'...", cfg.wakeword.model)
    detector = WakeWordDetector(
        model_name=cfg.wakeword.model,
        threshold=cfg.wakeword.threshold,
    )
    return WakeSession(
        reader,
        detector,
        preroll_ms=cfg.wakeword.preroll_ms,
        consumer=utterance,
    )


def save_capture(audio: bytes, output_dir: Path, index: int) -> Path:
    """Write a captured utterance as a timestamped WAV file."""
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"capture-{time.strftime('%Y%m%d-%H%M%S')}-{index:03d}.wav"
    path.write_bytes(pcm_to_wav(audio))
    return path


def main(argv: list[str] | None = None) -> None:
    """Main daemon entry point."""
    args = parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        cfg = load_config(args.config) if args.config else AppConfig()
    except Exception as e:
        logger.error("Error reading config file: %s", e)
        sys.exit(1)

    output_dir = Path(args.output_dir or cfg.capture.output_dir)

    logger.info("=== voice-rewind starting ===")
    recorder = make_recorder(cfg)
    reader = StoppableReader(recorder, cfg.wakeword.buffer_bytes)
    session = make_session(cfg, reader)
    player = Player(cfg.playback) if cfg.playback.enabled else None

    recorder.start()
    logger.info("Recorder started (backend=%s)", cfg.recording.backend)

    def handle_signal(signum, _frame):
        logger.info("Received signal %d, shutting down...", signum)
        # Raised in the main thread, which interrupts a blocked audio read
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    captures = 0
    logger.info("=== Listening (engine=%s) ===", cfg.wakeword.engine)

    try:
        while True:
            audio = session.run_once()
            if audio is None:
                break
            if not audio:
                continue

            captures += 1
            path = save_capture(audio, output_dir, captures)
            logger.info(
                "Capture #%d saved: %s (%.1fs)",
                captures,
                path,
                len(audio) / BYTES_PER_SECOND,
            )
            if player is not None:
                try:
                    player.play(audio)
                except (RuntimeError, OSError) as e:
                    logger.error("Playback of capture #%d failed: %s", captures, e)

    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error("Fatal error in main loop: %s", e, exc_info=True)
        sys.exit(1)
    finally:
        logger.info("Stopping recorder...")
        recorder.stop()
        logger.info("=== voice-rewind stopped (%d captures) ===", captures)


if __name__ == "__main__":
    main()

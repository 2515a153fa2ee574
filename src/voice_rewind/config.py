"""Configuration constants and TOML config loading for voice-rewind.

Module-level constants are the defaults. A TOML file (see
config.sample.toml) can override them per section; it is validated with
pydantic so typos and bad values fail at startup.
"""

import os
import shlex
import shutil
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Audio format
SAMPLE_RATE = 16000          # 16kHz mono, what the wake word and ASR models expect
SAMPLE_WIDTH = 2             # 16-bit = 2 bytes per sample
CHANNELS = 1
BYTES_PER_SECOND = SAMPLE_RATE * SAMPLE_WIDTH * CHANNELS

# Frame sizing (openWakeWord predicts on 80ms / 1280-sample windows)
FRAME_DURATION_MS = 80
FRAME_SIZE = 1280            # samples per frame
FRAME_BYTES = FRAME_SIZE * SAMPLE_WIDTH * CHANNELS

# Wake word
WAKEWORD_ENGINE = "openwakeword"   # or "recognizer" for an external ASR command
WAKEWORD_MODEL = "hey_jarvis"
WAKEWORD_THRESHOLD = 0.5
AUDIO_BUFFER_SEC = 10.0      # history kept so the wake phrase can be replayed
PREROLL_MS = 1000            # how far before the detection point to rewind
WAKE_PHRASES = ["OKCOBALT"]
MIN_WAKE_PHRASE_CONFIDENCE = 0.95

# Utterance capture
SILENCE_TIMEOUT_S = 1.5      # trailing silence that ends an utterance
MAX_UTTERANCE_S = 15.0
ENERGY_THRESHOLD = 500.0     # int16 RMS; quiet rooms sit well under 200
OUTPUT_DIR = "captures"

# ALSA capture (recording backend "alsa")
ALSA_DEVICE = "default"
ALSA_PERIOD_SIZE = 640       # two periods per frame
ALSA_PERIODS = 4
ALSA_QUEUE_FRAMES = 100      # 100 * 80ms = 8 seconds of headroom

# External recording / playback executables (recording backend "command")
RECORD_APPLICATION = "sox"
RECORD_ARGS = "-q -d -c 1 -r 16000 -b 16 -L -e signed -t raw -"
PLAYBACK_APPLICATION = "sox"
PLAYBACK_ARGS = "-q -c 1 -r 16000 -b 16 -L -e signed -t raw - -d"


class ConfigError(ValueError):
    """Raised when a config file is readable but unusable."""


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AudioAppConfig(_Section):
    """An external audio executable and its argument string."""

    application: str = ""
    args: str = ""

    def arg_list(self) -> list[str]:
        """Arguments split the way a shell would split them."""
        return shlex.split(self.args)


class RecordingConfig(AudioAppConfig):
    backend: Literal["command", "alsa"] = "command"
    application: str = RECORD_APPLICATION
    args: str = RECORD_ARGS
    alsa_device: str = ALSA_DEVICE


class PlaybackConfig(AudioAppConfig):
    application: str = PLAYBACK_APPLICATION
    args: str = PLAYBACK_ARGS
    enabled: bool = False


class RecognizerConfig(AudioAppConfig):
    """ASR command used by the "recognizer" wake word engine.

    The application reads raw PCM on stdin and writes one JSON recognition
    result per line on stdout.
    """


class WakeWordConfig(_Section):
    engine: Literal["openwakeword", "recognizer"] = WAKEWORD_ENGINE
    model: str = WAKEWORD_MODEL
    threshold: float = Field(default=WAKEWORD_THRESHOLD, ge=0.0, le=1.0)
    audio_buffer_sec: float = Field(default=AUDIO_BUFFER_SEC, gt=0.0)
    preroll_ms: int = Field(default=PREROLL_MS, ge=0)
    wake_phrases: list[str] = Field(default_factory=lambda: list(WAKE_PHRASES))
    min_wake_phrase_confidence: float = Field(
        default=MIN_WAKE_PHRASE_CONFIDENCE, ge=0.0, le=1.0
    )

    @field_validator("wake_phrases")
    @classmethod
    def _strip_phrases(cls, phrases: list[str]) -> list[str]:
        return [p.strip() for p in phrases if p.strip()]

    @property
    def buffer_bytes(self) -> int:
        """History size in bytes for the StoppableReader."""
        return int(BYTES_PER_SECOND * self.audio_buffer_sec)


class CaptureConfig(_Section):
    silence_timeout_s: float = Field(default=SILENCE_TIMEOUT_S, gt=0.0)
    max_utterance_s: float = Field(default=MAX_UTTERANCE_S, gt=0.0)
    energy_threshold: float = Field(default=ENERGY_THRESHOLD, ge=0.0)
    output_dir: str = OUTPUT_DIR


class AppConfig(_Section):
    recording: RecordingConfig = Field(default_factory=RecordingConfig)
    playback: PlaybackConfig = Field(default_factory=PlaybackConfig)
    wakeword: WakeWordConfig = Field(default_factory=WakeWordConfig)
    recognizer: RecognizerConfig = Field(default_factory=RecognizerConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)


def check_application(app: str) -> None:
    """Verify that an audio executable exists on disk or on PATH.

    Raises:
        ConfigError: If app is a directory or cannot be found.
    """
    if os.path.exists(app):
        if os.path.isdir(app):
            raise ConfigError(f"application {app} is a directory, not an executable")
        return
    if shutil.which(app) is None:
        raise ConfigError(f"could not find application {app}")


def load_config(path: str | os.PathLike) -> AppConfig:
    """Load and validate a TOML config file.

    Sections and keys that are absent fall back to the module defaults.
    Executables are only checked when the section that uses them is
    active (command recording backend, playback enabled, recognizer
    wake word engine).

    Raises:
        FileNotFoundError: If the file does not exist.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
        pydantic.ValidationError: If a value has the wrong type or range.
        ConfigError: If a configured executable cannot be found.
    """
    with Path(path).open("rb") as f:
        raw = tomllib.load(f)

    config = AppConfig.model_validate(raw)

    if config.recording.backend == "command":
        try:
            check_application(config.recording.application)
        except ConfigError as exc:
            raise ConfigError(f"recording config error - {exc}") from exc

    if config.playback.enabled:
        try:
            check_application(config.playback.application)
        except ConfigError as exc:
            raise ConfigError(f"playback config error - {exc}") from exc

    if config.wakeword.engine == "recognizer":
        if not config.recognizer.application:
            raise ConfigError("recognizer config error - no application configured")
        try:
            check_application(config.recognizer.application)
        except ConfigError as exc:
            raise ConfigError(f"recognizer config error - {exc}") from exc

    return config

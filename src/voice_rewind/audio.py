"""Audio I/O through external executables.

Recording and playback are delegated to a command line tool (sox by
default): the recorder's stdout is read as raw PCM, and the player's stdin
is fed raw PCM. Audio format is whatever the configured arguments ask for;
nothing here transcodes.
"""

import io
import logging
import subprocess
import wave

from voice_rewind.config import CHANNELS, SAMPLE_RATE, SAMPLE_WIDTH, AudioAppConfig

logger = logging.getLogger(__name__)


def pcm_to_wav(pcm_bytes: bytes) -> bytes:
    """Wrap raw PCM bytes in a valid WAV header.

    Uses the audio format constants from config: 16 kHz, 16-bit, mono.
    Returns a complete WAV file as bytes.
    """
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(CHANNELS)
        wf.setsampwidth(SAMPLE_WIDTH)
        wf.setframerate(SAMPLE_RATE)
        wf.writeframes(pcm_bytes)
    return buf.getvalue()


class Recorder:
    """Runs an external recording application and reads its stdout.

    The recorder is a byte source: pass it (or its output stream) to a
    StoppableReader. Stopping the recorder kills the process, which is the
    way to unblock a read that is waiting on audio.
    """

    def __init__(self, config: AudioAppConfig) -> None:
        self._config = config
        self._proc: subprocess.Popen | None = None

    @property
    def running(self) -> bool:
        return self._proc is not None

    @property
    def output(self):
        """The recording process's stdout, or None when not running."""
        if self._proc is None:
            return None
        return self._proc.stdout

    def start(self) -> None:
        """Launch the recording application. No-op if already running."""
        if self._proc is not None:
            return
        cmd = [self._config.application, *self._config.arg_list()]
        self._proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
        )
        logger.info("Recorder started: %s (pid %d)", " ".join(cmd), self._proc.pid)

    def stop(self) -> None:
        """Kill the recording application and wait for it. No-op if stopped."""
        if self._proc is None:
            return
        proc = self._proc
        self._proc = None
        proc.kill()
        # Exit status is ignored; the process was killed on purpose
        proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()
        logger.info("Recorder stopped")

    def read(self, size: int = -1) -> bytes:
        """Read audio from the recording application.

        Raises:
            RuntimeError: If the recorder is not running.
        """
        if self._proc is None:
            raise RuntimeError("recorder application is not running")
        return self._proc.stdout.read(size)

    def read1(self, size: int = -1) -> bytes:
        """Like read(), but returns as soon as any audio is available."""
        if self._proc is None:
            raise RuntimeError("recorder application is not running")
        return self._proc.stdout.read1(size)

    def __enter__(self) -> "Recorder":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()


class Player:
    """Runs an external playback application and writes audio to its stdin."""

    def __init__(self, config: AudioAppConfig) -> None:
        self._config = config
        self._proc: subprocess.Popen | None = None

    @property
    def running(self) -> bool:
        return self._proc is not None

    @property
    def input(self):
        """The playback process's stdin, or None when not running."""
        if self._proc is None:
            return None
        return self._proc.stdin

    def start(self) -> None:
        """Launch the playback application. No-op if already running."""
        if self._proc is not None:
            return
        cmd = [self._config.application, *self._config.arg_list()]
        self._proc = subprocess.Popen(cmd, stdin=subprocess.PIPE)
        logger.debug("Player started: %s (pid %d)", " ".join(cmd), self._proc.pid)

    def push_audio(self, audio: bytes) -> None:
        """Write audio to the player. start() must have been called.

        Raises:
            RuntimeError: If the player is not running.
        """
        if self._proc is None:
            raise RuntimeError("player application is not running")
        self._proc.stdin.write(audio)

    def stop(self) -> None:
        """Close the player's stdin and wait for playback to finish.

        Raises:
            RuntimeError: If the playback application exited with an error.
        """
        if self._proc is None:
            return
        proc = self._proc
        self._proc = None
        proc.stdin.close()
        returncode = proc.wait()
        if returncode != 0:
            raise RuntimeError(f"playback application exited with status {returncode}")
        logger.debug("Player stopped")

    def play(self, audio: bytes) -> None:
        """Play a complete clip: start, push, stop."""
        self.start()
        try:
            self.push_audio(audio)
        finally:
            self.stop()

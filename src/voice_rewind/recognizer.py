"""Streaming recognition through an external ASR command.

The recognizer application reads raw PCM on stdin and writes one JSON
recognition result per line on stdout, shaped like RecognitionResult:

    {"is_partial": false,
     "alternatives": [{"transcript": "OKCOBALT", "confidence": 0.98,
                       "words": [{"word": "OKCOBALT", "start_time": 2.4}]}]}

Word start times are seconds from the first byte fed to the recognizer.
"""

import logging
import subprocess
import threading
from typing import Callable

from pydantic import TypeAdapter, ValidationError

from voice_rewind.config import AudioAppConfig
from voice_rewind.timing import RecognitionResult

logger = logging.getLogger(__name__)

_RESULT = TypeAdapter(RecognitionResult)


def parse_result(line: str | bytes) -> RecognitionResult:
    """Parse one JSON line of recognizer output.

    Raises:
        pydantic.ValidationError: If the line is not a valid result.
    """
    return _RESULT.validate_json(line)


class CommandRecognizer:
    """Runs an ASR command over a byte stream, one process per stream.

    recognize() feeds the stream to the process from a background thread
    until the stream reports end-of-stream, then closes the process's
    stdin. Results are delivered on the calling thread as they arrive. A
    result handler that calls StoppableReader.stop() therefore ends the
    recognition, the same way it ends any other read loop.
    """

    def __init__(self, config: AudioAppConfig, chunk_size: int = 8192) -> None:
        self._config = config
        self._chunk_size = chunk_size

    def recognize(self, stream, on_result: Callable[[RecognitionResult], None]) -> None:
        """Stream audio to the recognizer and pass each result to on_result.

        Blocks until the recognizer closes its output.

        Raises:
            RuntimeError: If the recognizer exits with a non-zero status.
        """
        cmd = [self._config.application, *self._config.arg_list()]
        proc = subprocess.Popen(cmd, stdin=subprocess.PIPE, stdout=subprocess.PIPE)
        logger.debug("Recognizer started: %s (pid %d)", " ".join(cmd), proc.pid)

        feeder = threading.Thread(
            target=self._feed,
            args=(stream, proc.stdin),
            name="voice-rewind-recognizer-feed",
            daemon=True,
        )
        feeder.start()

        try:
            for line in proc.stdout:
                if not line.strip():
                    continue
                try:
                    result = parse_result(line)
                except ValidationError as exc:
                    logger.warning("Ignoring malformed recognizer output: %s", exc)
                    continue
                on_result(result)
        except BaseException:
            proc.kill()
            raise
        finally:
            returncode = proc.wait()
            proc.stdout.close()
            feeder.join(timeout=2.0)
            if feeder.is_alive():
                logger.warning("Recognizer feed thread did not stop within 2 seconds")

        if returncode != 0:
            raise RuntimeError(f"recognizer application exited with status {returncode}")
        logger.debug("Recognizer stopped")

    def _feed(self, stream, stdin) -> None:
        """Copy the stream into the recognizer until end-of-stream."""
        sent = 0
        try:
            while True:
                data = stream.read(self._chunk_size)
                if not data:
                    break
                stdin.write(data)
                stdin.flush()
                sent += len(data)
        except OSError as exc:
            logger.error("Recognizer feed stopped after %d bytes: %s", sent, exc)
        finally:
            try:
                stdin.close()
            except BrokenPipeError:
                # Recognizer already exited
                pass
        logger.debug("Recognizer feed finished (%d bytes)", sent)

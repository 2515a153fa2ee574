"""ALSA microphone capture exposed as a readable byte stream.

A background thread reads PCM periods from an ALSA capture device,
accumulates them into fixed-size frames and puts the frames on a bounded
queue. read() hands the queued audio out as a plain byte stream so the
capture can be wrapped by a StoppableReader just like a recording process.
"""

import logging
import queue
import threading

import alsaaudio

from voice_rewind import config

logger = logging.getLogger(__name__)

# Queue sentinel marking the end of capture
_EOF = b""


class AlsaRecorder:
    """Continuous ALSA audio capture in a background thread.

    Opens the capture device in blocking mode when started. ALSA reads may
    return smaller chunks than a frame, so reads are accumulated into
    config.FRAME_BYTES frames before they are queued. If the consumer falls
    behind and the queue fills up, new frames are dropped and counted.
    """

    def __init__(
        self,
        device: str = config.ALSA_DEVICE,
        frame_bytes: int = config.FRAME_BYTES,
        max_queued_frames: int = config.ALSA_QUEUE_FRAMES,
    ) -> None:
        self._device = device
        self._frame_bytes = frame_bytes
        self._pcm = None

        self._queue: queue.Queue[bytes] = queue.Queue(maxsize=max_queued_frames)
        # Leftover from a frame only partly handed out by read()
        self._pending = bytearray()
        self._eof = False

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        """Open the ALSA device and start the capture thread."""
        if self._thread is not None:
            logger.warning("AlsaRecorder already started")
            return
        self._pcm = alsaaudio.PCM(
            type=alsaaudio.PCM_CAPTURE,
            mode=alsaaudio.PCM_NORMAL,
            device=self._device,
            rate=config.SAMPLE_RATE,
            channels=config.CHANNELS,
            format=alsaaudio.PCM_FORMAT_S16_LE,
            periodsize=config.ALSA_PERIOD_SIZE,
            periods=config.ALSA_PERIODS,
        )
        self._stop_event.clear()
        self._eof = False
        self._thread = threading.Thread(
            target=self._capture_loop,
            name="voice-rewind-capture",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "ALSA capture started: device=%s rate=%d channels=%d periodsize=%d",
            self._device,
            config.SAMPLE_RATE,
            config.CHANNELS,
            config.ALSA_PERIOD_SIZE,
        )

    def stop(self) -> None:
        """Signal the capture thread to stop and wait for it to finish.

        Frames already queued can still be read (the oldest one is dropped
        if the queue is full); after them read() returns end-of-stream.
        """
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=2.0)
        if self._thread.is_alive():
            logger.warning("Capture thread did not stop within 2 seconds")
        self._thread = None
        if self._pcm is not None:
            self._pcm.close()
            self._pcm = None
        logger.info("ALSA capture stopped")

    def read(self, size: int = -1) -> bytes:
        """Return up to size bytes of captured audio, blocking for a frame.

        A negative size returns one whole frame (plus any leftover). Returns
        b"" once capture has stopped and the queue is drained.
        """
        if not self._pending and not self._eof:
            frame = self._queue.get()
            if not frame:
                self._eof = True
            else:
                self._pending.extend(frame)

        if not self._pending:
            return b""

        if size is None or size < 0 or size >= len(self._pending):
            data = bytes(self._pending)
            self._pending.clear()
        else:
            data = bytes(self._pending[:size])
            del self._pending[:size]
        return data

    read1 = read

    def _put(self, frame: bytes) -> bool:
        try:
            self._queue.put_nowait(frame)
            return True
        except queue.Full:
            return False

    def _capture_loop(self) -> None:
        """Read from ALSA until stopped, queueing complete frames.

        Negative read lengths are ALSA overruns and zero-length reads are
        underruns; both are counted and skipped.
        """
        logger.info("Capture loop started (frame: %d bytes)", self._frame_bytes)
        overrun_count = 0
        drop_count = 0
        accumulator = bytearray()

        while not self._stop_event.is_set():
            try:
                length, data = self._pcm.read()
            except alsaaudio.ALSAAudioError as exc:
                logger.error("ALSA read error: %s", exc)
                if self._stop_event.is_set():
                    break
                continue

            if length < 0:
                overrun_count += 1
                if overrun_count % 100 == 1:
                    logger.warning(
                        "ALSA overrun (error code %d), total overruns: %d",
                        length,
                        overrun_count,
                    )
                continue

            if length == 0:
                continue

            accumulator.extend(data)
            while len(accumulator) >= self._frame_bytes:
                frame = bytes(accumulator[: self._frame_bytes])
                del accumulator[: self._frame_bytes]
                if not self._put(frame):
                    drop_count += 1
                    if drop_count % 100 == 1:
                        logger.warning(
                            "Frame queue full, dropped frame (total drops: %d)",
                            drop_count,
                        )

        # Wake up a reader blocked in read(); it may need room to get in
        while not self._put(_EOF):
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass

        logger.info(
            "Capture loop exited: overruns=%d drops=%d",
            overrun_count,
            drop_count,
        )

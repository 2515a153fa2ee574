"""Stoppable, rewindable reader over a live audio stream.

Wraps a live byte source (e.g. the stdout of a recording process) and keeps
a bounded history of everything read from it. A controller can:

1. stop() the reader, so the next read reports end-of-stream while the
   source itself keeps running (ends a wake word recognizer's stream).
2. rewind() to an earlier absolute offset, so the next reads replay
   history from that point before continuing with live audio (lets the
   command recognizer hear the wake phrase again).
3. reset() the history once the rewound audio has been consumed.

Thread-safe for one reader thread plus one controller thread: all mutable
state sits behind a single lock.
"""

import enum
import io
import logging
import threading

logger = logging.getLogger(__name__)

DEFAULT_SIZE_FACTOR = 2.0


class RewindError(Exception):
    """Base class for errors reported by StoppableReader.rewind().

    The reader is always left in a usable state when one of these is
    raised, so callers may log it and keep reading.
    """


class DataLossError(RewindError):
    """The rewind target was already pruned from the history buffer."""

    def __init__(self, offset: int, buffer_start: int) -> None:
        super().__init__(
            f"requested offset {offset} is before the start of the buffer "
            f"({buffer_start}); reading continues from live audio"
        )
        self.offset = offset
        self.buffer_start = buffer_start


class InvalidOffsetError(RewindError):
    """The rewind target lies past the end of everything read so far."""

    def __init__(self, offset: int, buffer_end: int) -> None:
        super().__init__(
            f"requested offset {offset} is past the end of the buffer "
            f"({buffer_end}); reading continues from live audio"
        )
        self.offset = offset
        self.buffer_end = buffer_end


class UnsafeDoubleRewindError(RewindError):
    """rewind() was called twice without a reset() in between.

    The second rewind is still performed. Replayed data may not line up
    with what the caller expects, since reads after the first rewind moved
    the live position on.
    """


class Cursor(enum.Enum):
    LIVE = "live"
    REPLAY = "replay"


class StoppableReader(io.RawIOBase):
    """Binary stream over a live source with a stop latch and rewind.

    Every byte read live from the source is also appended to a history
    buffer. The history is pruned back to max_buffer_size bytes once it
    grows past max_buffer_size * size_factor, so a rewind to any point
    within max_buffer_size bytes of the newest byte always succeeds.

    Offsets passed to rewind() are absolute stream positions: position 0
    is the first byte read after construction or reset(), unless a rewind
    with reset_time_zero=True moved zero to the rewound point.

    Closing the reader never closes the wrapped source; its lifecycle
    belongs to the caller.
    """

    def __init__(
        self,
        source,
        max_buffer_size: int,
        size_factor: float = DEFAULT_SIZE_FACTOR,
    ) -> None:
        """Wrap a source.

        Args:
            source: Object with read(n) returning bytes (b"" at EOF). If it
                    also has read1(n), that is used so a read returns as
                    soon as some audio is available.
            max_buffer_size: Guaranteed history window in bytes.
            size_factor: History may grow to max_buffer_size * size_factor
                         bytes before it is pruned.

        Raises:
            ValueError: If max_buffer_size < 1 or size_factor < 1.0.
        """
        super().__init__()
        if max_buffer_size < 1:
            raise ValueError(f"max_buffer_size must be positive, got {max_buffer_size}")
        if size_factor < 1.0:
            raise ValueError(f"size_factor must be >= 1.0, got {size_factor}")

        self._source = source
        self._source_read = getattr(source, "read1", None) or source.read
        self._max_buffer_size = max_buffer_size
        self._size_factor = size_factor
        self._lock = threading.Lock()

        self._history = bytearray()
        self._buffer_start = 0
        self._cursor = Cursor.LIVE
        self._replay = memoryview(b"")
        self._stop_pending = False
        self._rewound = False

    # ------------------------------------------------------------------
    # Stream API
    # ------------------------------------------------------------------

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int | None:
        """Read into b and return the number of bytes read.

        Returns 0 (end-of-stream) once after stop(), or when the source is
        exhausted. While replaying, a single call returns replayed bytes
        only; live reads resume on the call after the replay runs out.
        Errors raised by the source propagate unchanged.
        """
        with self._lock:
            if self._stop_pending:
                self._stop_pending = False
                logger.debug("Stop latch consumed, reporting end-of-stream")
                return 0

            if len(self._history) > self._max_buffer_size * self._size_factor:
                self._prune()

            if self._cursor is Cursor.REPLAY:
                if len(self._replay):
                    n = min(len(b), len(self._replay))
                    b[:n] = self._replay[:n]
                    self._replay = self._replay[n:]
                    return n
                self._go_live()

            data = self._source_read(len(b))
            if data is None:
                return None
            n = len(data)
            if n:
                b[:n] = data
                self._history += data
            return n

    # ------------------------------------------------------------------
    # Control API
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Make the next read report end-of-stream.

        Later reads continue normally. Calling stop() several times before
        a read has the same effect as calling it once.
        """
        with self._lock:
            self._stop_pending = True

    def rewind(self, offset: int, reset_time_zero: bool = False) -> None:
        """Replay history from an absolute offset before reading live again.

        Args:
            offset: Absolute stream position to replay from.
            reset_time_zero: If True, the rewound point becomes position 0
                             for future offsets; older history gets
                             negative positions.

        Raises:
            DataLossError: offset was already pruned. Reads continue live.
            InvalidOffsetError: offset is in the future. Reads continue live.
            UnsafeDoubleRewindError: no reset() since the previous rewind.
                The rewind has been performed anyway.
        """
        with self._lock:
            buffer_end = self._buffer_start + len(self._history)
            if offset < self._buffer_start:
                self._go_live()
                raise DataLossError(offset, self._buffer_start)
            if offset > buffer_end:
                self._go_live()
                raise InvalidOffsetError(offset, buffer_end)

            local = offset - self._buffer_start
            self._replay = memoryview(bytes(self._history[local:]))
            self._cursor = Cursor.REPLAY
            if reset_time_zero:
                self._buffer_start = -local

            logger.debug(
                "Rewound to offset %d (%d bytes to replay, reset_time_zero=%s)",
                offset,
                len(self._replay),
                reset_time_zero,
            )

            if self._rewound:
                raise UnsafeDoubleRewindError(
                    "rewind() called twice without reset(); replayed data may "
                    "be inconsistent"
                )
            self._rewound = True

    def reset(self) -> None:
        """Discard history and return to plain live reads.

        Clears the stop latch and the double-rewind guard. Call between
        successive rewinds.
        """
        with self._lock:
            self._history = bytearray()
            self._buffer_start = 0
            self._go_live()
            self._stop_pending = False
            self._rewound = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def max_buffer_size(self) -> int:
        return self._max_buffer_size

    @property
    def size_factor(self) -> float:
        return self._size_factor

    @property
    def cursor(self) -> Cursor:
        with self._lock:
            return self._cursor

    @property
    def buffer_start_offset(self) -> int:
        """Absolute position of the oldest byte still in history."""
        with self._lock:
            return self._buffer_start

    @property
    def buffered(self) -> int:
        """Number of bytes currently held in history."""
        with self._lock:
            return len(self._history)

    @property
    def position(self) -> int:
        """Absolute position just past the newest byte read from the source."""
        with self._lock:
            return self._buffer_start + len(self._history)

    # ------------------------------------------------------------------
    # Internal (caller holds the lock)
    # ------------------------------------------------------------------

    def _go_live(self) -> None:
        self._cursor = Cursor.LIVE
        self._replay = memoryview(b"")

    def _prune(self) -> None:
        drop = len(self._history) - self._max_buffer_size
        del self._history[:drop]
        self._buffer_start += drop
        logger.debug(
            "Pruned %d bytes from history (start offset now %d)",
            drop,
            self._buffer_start,
        )

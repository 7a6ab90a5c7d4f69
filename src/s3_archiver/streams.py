# src/s3_archiver/streams.py

"""
A bounded in-memory conduit between the archive encoder and the upload.

The encoder writes on one thread while boto3 reads on another. The pipe holds
at most ``capacity`` bytes; a writer that outruns the upload blocks until the
reader drains it, so memory stays flat regardless of archive size.
"""

import threading


class ConduitClosedError(BrokenPipeError):
    """Raised to the writer when the reading side has gone away."""


class ConduitAbortedError(Exception):
    """Raised to the reader when the writing side gave up mid-archive."""


class ArchivePipe:
    """Single-producer / single-consumer byte pipe with backpressure."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be a positive number of bytes")
        self.capacity = capacity
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._eof = False
        self._reader_closed = False
        self._abort_error: BaseException | None = None
        self.bytes_written = 0
        self.bytes_read = 0
        self.reader = PipeReader(self)

    @property
    def reader_closed(self) -> bool:
        return self._reader_closed

    def write(self, data: bytes) -> int:
        view = memoryview(data).cast("B")
        written = 0
        with self._cond:
            if self._eof or self._abort_error is not None:
                raise ValueError("write to a closed pipe")
            while written < len(view):
                while not self._reader_closed and len(self._buffer) >= self.capacity:
                    self._cond.wait()
                if self._reader_closed:
                    raise ConduitClosedError("archive upload stopped reading")
                room = self.capacity - len(self._buffer)
                chunk = view[written : written + room]
                self._buffer += chunk
                written += len(chunk)
                self.bytes_written += len(chunk)
                self._cond.notify_all()
        return written

    def close(self) -> None:
        """Signal end-of-stream; the reader drains what is buffered, then sees EOF."""
        with self._cond:
            self._eof = True
            self._cond.notify_all()

    def abort(self, error: BaseException) -> None:
        """Fail the reader immediately, discarding anything still buffered."""
        with self._cond:
            if self._abort_error is None:
                self._abort_error = error
            self._buffer.clear()
            self._cond.notify_all()

    def _read(self, size: int) -> bytes:
        out = bytearray()
        with self._cond:
            while size < 0 or len(out) < size:
                while (
                    not self._buffer
                    and not self._eof
                    and self._abort_error is None
                    and not self._reader_closed
                ):
                    self._cond.wait()
                if self._abort_error is not None:
                    raise ConduitAbortedError(
                        "archive producer aborted"
                    ) from self._abort_error
                if self._reader_closed:
                    raise ValueError("read from a closed pipe")
                if not self._buffer:
                    break  # EOF
                take = len(self._buffer) if size < 0 else min(size - len(out), len(self._buffer))
                out += self._buffer[:take]
                del self._buffer[:take]
                self.bytes_read += take
                self._cond.notify_all()
        return bytes(out)

    def _close_reader(self) -> None:
        with self._cond:
            self._reader_closed = True
            self._buffer.clear()
            self._cond.notify_all()


class PipeReader:
    """
    Read end of an ArchivePipe.

    ``read(n)`` blocks until ``n`` bytes are available or the writer has
    closed, matching what s3transfer expects from a non-seekable file.
    """

    def __init__(self, pipe: ArchivePipe):
        self._pipe = pipe

    def read(self, size: int | None = -1) -> bytes:
        if size is None:
            size = -1
        return self._pipe._read(size)

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def close(self) -> None:
        self._pipe._close_reader()

    @property
    def closed(self) -> bool:
        return self._pipe.reader_closed

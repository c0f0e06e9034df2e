"""
Pull-based byte streams and the bounded pipe that connects pipeline stages.

A ByteStream is read until read() returns b'' and closed exactly once.
close() may raise an error that was only discovered after the data was
consumed, so callers must treat a fully read stream as provisional until
close() returns.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import BinaryIO, Callable, Optional

from autobackup.errors import BackupCancelled


logger = logging.getLogger(__name__)


# 64KB per handoff between stages
CHUNK_SIZE = 64 * 1024


class PipeClosed(Exception):
    """Raised to a pipe writer after the reader went away."""
    pass


class ByteStream(ABC):
    """Base class for readable, closable byte streams."""

    @abstractmethod
    def read(self, size: int = -1) -> bytes:
        """
        Read up to size bytes.

        A negative size returns the next available chunk. Returns b'' at
        end of stream.
        """
        pass

    @abstractmethod
    def close(self):
        pass

    def abort(self):
        """Stop producing data early. Default streams have nothing to stop."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.close()
        else:
            self.abort()
            try:
                self.close()
            except Exception as e:
                # The in-flight exception takes precedence
                logger.debug(f"Error closing stream after failure: {e}")
        return False

    def __iter__(self):
        while True:
            chunk = self.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk


class BytesStream(ByteStream):
    """ByteStream over an in-memory buffer."""

    def __init__(self, data: bytes):
        self._data = memoryview(bytes(data))
        self._offset = 0
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("I/O operation on closed stream")
        if size is None or size < 0:
            end = len(self._data)
        else:
            end = min(self._offset + size, len(self._data))
        chunk = self._data[self._offset:end].tobytes()
        self._offset = end
        return chunk

    def close(self):
        self.closed = True


class FileStream(ByteStream):
    """ByteStream over a binary file object. Closing closes the file."""

    def __init__(self, fileobj: BinaryIO):
        self._fileobj = fileobj

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = CHUNK_SIZE
        return self._fileobj.read(size)

    def close(self):
        self._fileobj.close()


class Pipe:
    """
    One-slot blocking handoff between a producer thread and a consumer.

    write() blocks while the previous chunk has not been read, read()
    blocks until a chunk arrives or the writer closes. The writer can close
    with an error, which the reader sees after any pending data.
    """

    def __init__(self, context=None):
        self._cond = threading.Condition()
        self._chunk: Optional[bytes] = None
        self._offset = 0
        self._writer_closed = False
        self._writer_error: Optional[BaseException] = None
        self._reader_closed = False
        self._reader_error: Optional[BaseException] = None
        self._unregister: Callable[[], None] = lambda: None

        if context is not None:
            self._unregister = context.register(lambda: self.abort(BackupCancelled()))

    def write(self, data) -> int:
        """
        Hand a chunk to the reader.

        Raises:
            PipeClosed: If the reader closed its side
            BackupCancelled: If the pipe was aborted by cancellation
        """
        if not data:
            return 0

        with self._cond:
            while True:
                if self._reader_closed:
                    raise self._reader_error or PipeClosed("read side of pipe closed")
                if self._writer_closed:
                    raise ValueError("write to closed pipe")
                if self._chunk is None:
                    break
                self._cond.wait()

            self._chunk = bytes(data)
            self._offset = 0
            self._cond.notify_all()

        return len(data)

    def read(self, size: int = -1) -> bytes:
        """
        Read from the pipe, blocking until data, EOF or an error.

        Raises:
            The writer's close error once all pending data has been read
        """
        with self._cond:
            while self._chunk is None and not self._writer_closed and not self._reader_closed:
                self._cond.wait()

            if self._reader_closed:
                raise self._reader_error or ValueError("read from closed pipe")

            if self._chunk is not None:
                remaining = len(self._chunk) - self._offset
                if size is None or size < 0 or size >= remaining:
                    data = self._chunk[self._offset:]
                    self._chunk = None
                    self._offset = 0
                else:
                    data = self._chunk[self._offset:self._offset + size]
                    self._offset += size
                self._cond.notify_all()
                return data

            if self._writer_error is not None:
                raise self._writer_error

            return b''

    def close(self, error: Optional[BaseException] = None):
        """Close the write side, optionally with an error for the reader."""
        with self._cond:
            if not self._writer_closed:
                self._writer_closed = True
                self._writer_error = error
            self._cond.notify_all()
        self._unregister()

    def close_reader(self, error: Optional[BaseException] = None):
        """Close the read side. Pending and future writes fail."""
        with self._cond:
            if not self._reader_closed:
                self._reader_closed = True
                self._reader_error = error
            self._chunk = None
            self._cond.notify_all()

    def abort(self, error: BaseException):
        """Fail both sides with error, waking any blocked caller."""
        with self._cond:
            if not self._writer_closed:
                self._writer_closed = True
                self._writer_error = error
            if not self._reader_closed:
                self._reader_closed = True
                self._reader_error = error
            self._chunk = None
            self._cond.notify_all()


class StageStream(ByteStream):
    """
    ByteStream fed by a producer thread.

    The producer receives the upstream stream and a pipe to write into.
    Whatever it raises is stored on the pipe and re-raised to the consumer
    on the next read(), or on close() if the consumer never saw it.
    Closing also closes the upstream stream, whose error takes precedence.
    """

    def __init__(
        self,
        name: str,
        upstream: ByteStream,
        produce: Callable[[ByteStream, Pipe], None],
        context=None
    ):
        self.name = name
        self._upstream = upstream
        self._produce = produce
        self._pipe = Pipe(context)
        self._error: Optional[BaseException] = None
        self._delivered = False
        self._eof = False
        self._closed = False

        self._thread = threading.Thread(target=self._run, name=f"stage-{name}", daemon=True)
        self._thread.start()

    def _run(self):
        try:
            self._produce(self._upstream, self._pipe)
        except BaseException as e:
            self._error = e
            self._pipe.close(e)
        else:
            self._pipe.close()

    def read(self, size: int = -1) -> bytes:
        if self._closed:
            raise ValueError("I/O operation on closed stream")

        try:
            data = self._pipe.read(size)
        except Exception:
            self._delivered = True
            raise

        if not data:
            self._eof = True
        return data

    def abort(self):
        self._pipe.close_reader(PipeClosed(f"{self.name} stage aborted"))
        self._upstream.abort()

    def close(self):
        """
        Stop the producer, close upstream and surface any deferred error.

        Raises:
            The upstream close error if any, else the producer error if it
            was never raised from read()
        """
        if self._closed:
            return
        self._closed = True

        # A finished producer has nothing left to stop
        if not self._eof and self._thread.is_alive():
            self.abort()
        self._thread.join()

        try:
            self._upstream.close()
        finally:
            self._pipe.close_reader()

        error = self._error
        if error is not None and not self._delivered and not isinstance(error, PipeClosed):
            raise error


def read_all(stream: ByteStream) -> bytes:
    """Read a stream to EOF without closing it."""
    chunks = []
    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break
        chunks.append(chunk)
    return b''.join(chunks)

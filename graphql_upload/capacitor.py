"""Disk-backed file capsule for graphql-upload.

A ``WriteCapacitor`` decouples the speed of multipart parsing from the speed
of the eventual file consumer:

  - The parser appends bytes with ``write()`` as they arrive and calls
    ``finish()`` at the end of the file part.
  - Any number of consumers call ``create_read_stream()``; each gets an
    independent ``ReadStream`` that starts at byte 0 and waits for more data
    while the writer is still active.
  - ``release()`` marks the capsule as no longer needed; the backing temp
    file is removed once every open reader has closed.
  - ``destroy(error)`` aborts the capsule; open readers raise ``error`` and
    the backing file is removed immediately.

All methods run on the event loop thread. Writes are plain blocking file
writes of parser-sized chunks.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from typing import AsyncIterator, Optional

from graphql_upload.constants import CAPACITOR_FILE_PREFIX, READ_STREAM_CHUNK_SIZE
from graphql_upload.errors import ReadAfterDestroyedError, ReadAfterReleasedError
from graphql_upload.utils.logger import get_logger

logger = get_logger(__name__)


class WriteCapacitor:
    """Append-only temp file with any number of concurrent readers."""

    def __init__(self, directory: Optional[str] = None) -> None:
        self._file = tempfile.NamedTemporaryFile(
            prefix=CAPACITOR_FILE_PREFIX, dir=directory, delete=False
        )
        self.path: str = self._file.name
        self.bytes_written = 0
        self.finished = False
        self.released = False
        self.destroyed = False
        self.error: Optional[BaseException] = None
        self._readers: set[ReadStream] = set()
        self._waiters: list[asyncio.Future] = []

    # ── Writer side ──────────────────────────────────────────────────────────

    def write(self, data: bytes) -> None:
        if self.destroyed or self.finished:
            return
        self._file.write(data)
        self._file.flush()
        self.bytes_written += len(data)
        self._wake()

    def finish(self) -> None:
        """Mark the end of the file; readers end once they catch up."""
        if self.destroyed or self.finished:
            return
        self.finished = True
        self._file.close()
        self._wake()

    def destroy(self, error: Optional[BaseException] = None) -> None:
        """Abort the capsule, failing open readers with ``error``."""
        if self.destroyed:
            return
        self.destroyed = True
        self.error = error
        self._file.close()
        self._wake()
        for reader in list(self._readers):
            reader._close_file()
        self._readers.clear()
        self._unlink()

    def release(self) -> None:
        """Mark the capsule as no longer needed by its owner."""
        if self.released:
            return
        self.released = True
        if not self._readers:
            self._cleanup()

    # ── Reader side ──────────────────────────────────────────────────────────

    def create_read_stream(self, chunk_size: int = READ_STREAM_CHUNK_SIZE) -> "ReadStream":
        """Create an independent reader over everything written so far and to come.

        Raises:
            ReadAfterDestroyedError: The capsule was destroyed.
            ReadAfterReleasedError:  The capsule was released.
        """
        if self.destroyed:
            raise ReadAfterDestroyedError()
        if self.released:
            raise ReadAfterReleasedError()
        reader = ReadStream(self, chunk_size)
        self._readers.add(reader)
        return reader

    # ── Internals ────────────────────────────────────────────────────────────

    async def _wait_for_change(self) -> None:
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        await future

    def _wake(self) -> None:
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(None)

    def _reader_closed(self, reader: "ReadStream") -> None:
        self._readers.discard(reader)
        if self.released and not self._readers:
            self._cleanup()

    def _cleanup(self) -> None:
        if not self.finished:
            self.finished = True
            self._file.close()
            self._wake()
        self._unlink()

    def _unlink(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        else:
            logger.debug("Capacitor file removed", path=self.path, bytes_written=self.bytes_written)

    def __repr__(self) -> str:
        return (
            f"WriteCapacitor(path={self.path!r}, bytes_written={self.bytes_written}, "
            f"finished={self.finished}, released={self.released}, destroyed={self.destroyed})"
        )


class ReadStream:
    """Async byte iterator over one ``WriteCapacitor``.

    Usage::

        async for chunk in upload.create_read_stream():
            ...

        data = await upload.create_read_stream().read()
    """

    def __init__(self, capacitor: WriteCapacitor, chunk_size: int = READ_STREAM_CHUNK_SIZE) -> None:
        self._capacitor = capacitor
        self._chunk_size = chunk_size
        self._position = 0
        self._fh = open(capacitor.path, "rb")
        self.closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        capacitor = self._capacitor
        while True:
            if capacitor.destroyed:
                self.close()
                if capacitor.error is not None:
                    raise capacitor.error
                raise ReadAfterDestroyedError("The WriteCapacitor was destroyed while reading.")
            if self.closed:
                raise StopAsyncIteration
            available = capacitor.bytes_written - self._position
            if available > 0:
                data = self._fh.read(min(self._chunk_size, available))
                self._position += len(data)
                return data
            if capacitor.finished:
                self.close()
                raise StopAsyncIteration
            await capacitor._wait_for_change()

    async def read(self) -> bytes:
        """Read the whole file, waiting for the writer to finish."""
        return b"".join([chunk async for chunk in self])

    def close(self) -> None:
        if self.closed:
            return
        self._close_file()
        self._capacitor._reader_closed(self)

    def _close_file(self) -> None:
        self.closed = True
        self._fh.close()

"""Upload value types for graphql-upload.

  - ``FileUpload`` — one uploaded file as produced by the processor.
  - ``Upload``     — awaitable placeholder the processor puts into the
                     operations document at every path named by the ``map``
                     field; it resolves to a ``FileUpload`` once the file part
                     starts streaming, or raises the error that prevented it.

Resolvers therefore look like::

    async def resolve_upload(_, info, file):
        upload = await file
        async for chunk in upload.create_read_stream():
            ...
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Generator, Optional

from graphql_upload.capacitor import ReadStream, WriteCapacitor
from graphql_upload.constants import READ_STREAM_CHUNK_SIZE


@dataclass
class FileUpload:
    """A single uploaded file.

    filename:  File name. Provided by the client and can't be trusted.
    mimetype:  File MIME type. Provided by the client and can't be trusted.
    encoding:  File stream transfer encoding.
    capacitor: Private capsule handle; owned and released by the processor.
    """

    filename: str
    mimetype: str
    encoding: str
    capacitor: WriteCapacitor = field(repr=False)

    def create_read_stream(self, chunk_size: int = READ_STREAM_CHUNK_SIZE) -> ReadStream:
        """Create an async byte stream of the file's contents.

        May be called any number of times until the capsule is released;
        every stream starts from the first byte.
        """
        return self.capacitor.create_read_stream(chunk_size=chunk_size)


def _retrieve_exception(future: asyncio.Future) -> None:
    # Rejected uploads nobody awaits must not log "exception was never retrieved".
    if not future.cancelled():
        future.exception()


class Upload:
    """Awaitable placeholder for a file that may still be streaming in."""

    def __init__(self) -> None:
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._future.add_done_callback(_retrieve_exception)
        self.file: Optional[FileUpload] = None

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, file: FileUpload) -> None:
        if self._future.done():
            return
        self.file = file
        self._future.set_result(file)

    def reject(self, error: BaseException) -> None:
        if self._future.done():
            return
        self._future.set_exception(error)

    def __await__(self) -> Generator[Any, None, FileUpload]:
        return self._future.__await__()

    def __repr__(self) -> str:
        state = "resolved" if self.file is not None else ("rejected" if self.done else "pending")
        return f"Upload({state})"

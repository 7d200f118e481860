"""Default GraphQL multipart request processor.

Implements the GraphQL multipart request convention
(https://github.com/jaydenseric/graphql-multipart-request-spec) on top of the
``python-multipart`` streaming tokenizer:

  1. ``operations`` field — JSON object (single operation) or array (batch).
  2. ``map`` field        — JSON object: file field name → list of object
                            paths into ``operations``.
  3. One part per file.

As soon as ``map`` has been parsed, every mapped path in ``operations`` is
replaced by an ``Upload`` placeholder and ``process_request()`` returns the
operations document. Parsing of the remaining file parts continues in a
background task: each file part resolves its ``Upload`` with a ``FileUpload``
backed by a disk capsule, so resolvers can consume files while they are
still streaming in. The middleware's response gate keeps the reply from
being sent before this background parse has read the whole body.

Failure handling:
  - Before ``operations`` is returned: ``process_request()`` raises and stops
    reading; the caller discards the rest of the body.
  - After it was returned: pending uploads are rejected with the error, the
    file being written is destroyed, and the remaining body is drained here.

Capsules are released when the response gate closes.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any, Optional, Union

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.requests import ClientDisconnect, Request

from graphql_upload.capacitor import WriteCapacitor
from graphql_upload.config import ProcessRequestOptions
from graphql_upload.constants import (
    DEFAULT_FILE_MIMETYPE,
    DEFAULT_TRANSFER_ENCODING,
    MAP_FIELD,
    MULTIPART_SPEC_URL,
    OPERATIONS_FIELD,
    STATUS_CLIENT_CLOSED_REQUEST,
)
from graphql_upload.errors import ClientVisibleError
from graphql_upload.upload import FileUpload, Upload
from graphql_upload.utils.logger import get_logger
from graphql_upload.utils.streams import drain

if TYPE_CHECKING:  # pragma: no cover
    from graphql_upload.middleware import ResponseGate

logger = get_logger(__name__)

ProcessRequestResult = Union[dict[str, Any], list[dict[str, Any]]]

# Background parse tasks outlive process_request(); keep them referenced.
_parse_tasks: set[asyncio.Task] = set()


# ─── Object paths ─────────────────────────────────────────────────────────────


def set_path(document: Any, path: str, value: Any) -> None:
    """Set ``value`` at a dot-separated ``path`` inside ``document``.

    Mapping keys that are missing (or null) along the way are created as
    empty mappings. List segments must be integer indices within the list,
    or equal to its length to append.

    Raises:
        KeyError, IndexError, TypeError, ValueError: The path cannot be set.
    """
    keys = path.split(".")
    target = document
    for position, key in enumerate(keys):
        last = position == len(keys) - 1
        if isinstance(target, list):
            index = int(key)
            if index < 0 or index > len(target) or (not last and index == len(target)):
                raise IndexError(f"Index {index} out of range")
            if last:
                if index == len(target):
                    target.append(value)
                else:
                    target[index] = value
                return
            target = target[index]
        elif isinstance(target, dict):
            if last:
                target[key] = value
                return
            if target.get(key) is None:
                target[key] = {}
            target = target[key]
        else:
            raise TypeError(f"Cannot set key {key!r} on {type(target).__name__}")


def _format_limit(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ─── Parts ────────────────────────────────────────────────────────────────────


class _FieldPart:
    def __init__(self, name: str) -> None:
        self.name = name
        self.value = bytearray()


class _FilePart:
    def __init__(self, name: str, capacitor: WriteCapacitor) -> None:
        self.name = name
        self.capacitor = capacitor
        self.size = 0


class _IgnoredPart:
    """A part whose bytes are skipped (unmapped or truncated file)."""


_Part = Union[_FieldPart, _FilePart, _IgnoredPart]


# ─── Processor ────────────────────────────────────────────────────────────────


class MultipartProcessor:
    """Parses one GraphQL multipart request. Single use."""

    def __init__(
        self,
        request: Request,
        response: "ResponseGate",
        options: ProcessRequestOptions,
    ) -> None:
        self.request = request
        self.response = response
        self.options = options

        self.operations: Optional[ProcessRequestResult] = None
        self.upload_map: Optional[dict[str, Upload]] = None
        self.capacitors: list[WriteCapacitor] = []
        self.file_count = 0
        self.exit_error: Optional[BaseException] = None

        self._released: asyncio.Future = asyncio.get_running_loop().create_future()
        self._parser_ended = False
        self._parts_seen = 0
        self._fields_seen: set[str] = set()
        self._stream = request.stream()

        self._headers: dict[str, bytes] = {}
        self._header_field = bytearray()
        self._header_value = bytearray()
        self._part: Optional[_Part] = None

    # ── Entry point ──────────────────────────────────────────────────────────

    async def run(self) -> ProcessRequestResult:
        """Start parsing; return the operations once ``map`` has been applied.

        Raises:
            ClientVisibleError: Malformed request, exceeded limit, or client
                                disconnect before ``map`` was parsed.
        """
        _, params = parse_options_header(self.request.headers.get("content-type"))
        boundary = params.get(b"boundary")
        if not boundary:
            raise ClientVisibleError(400, "Missing boundary in the multipart request ‘Content-Type’ header.")

        self.parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": self._on_part_begin,
                "on_header_field": self._on_header_field,
                "on_header_value": self._on_header_value,
                "on_header_end": self._on_header_end,
                "on_headers_finished": self._on_headers_finished,
                "on_part_data": self._on_part_data,
                "on_part_end": self._on_part_end,
                "on_end": self._on_end,
            },
        )
        self.response.on_close(self.release)

        task = asyncio.get_running_loop().create_task(self._consume())
        _parse_tasks.add(task)
        task.add_done_callback(_parse_tasks.discard)

        return await self._released

    async def _consume(self) -> None:
        try:
            async for chunk in self._stream:
                if chunk:
                    self.parser.write(chunk)
            self.parser.finalize()
            self._finish()
        except ClientDisconnect:
            self.exit(
                ClientVisibleError(
                    STATUS_CLIENT_CLOSED_REQUEST,
                    "Request disconnected during file upload stream parsing.",
                )
            )
        except MultipartParseError as exc:
            self.exit(ClientVisibleError(400, f"Invalid multipart request body: {exc}"))
        except Exception as exc:
            self.exit(exc)

    def _finish(self) -> None:
        # A body without a single part is reported as missing its fields.
        if not self._parser_ended and self._parts_seen:
            raise ClientVisibleError(400, "Unexpected end of multipart request body.")
        if self.operations is None:
            raise ClientVisibleError(
                400, f"Missing multipart field ‘{OPERATIONS_FIELD}’ ({MULTIPART_SPEC_URL})."
            )
        if self.upload_map is None:
            raise ClientVisibleError(400, f"Missing multipart field ‘{MAP_FIELD}’ ({MULTIPART_SPEC_URL}).")

        for upload in self.upload_map.values():
            if not upload.done:
                upload.reject(ClientVisibleError(400, "File missing in the request."))

        logger.debug("Multipart request parsed", files=self.file_count)

    def exit(self, error: BaseException) -> None:
        """Abort processing with ``error``. Only the first call has effect."""
        if self.exit_error is not None:
            return
        self.exit_error = error

        if self.upload_map is not None:
            for upload in self.upload_map.values():
                if not upload.done:
                    upload.reject(error)

        if isinstance(self._part, _FilePart):
            self._part.capacitor.destroy(error)
        self._part = _IgnoredPart()

        if self._released.done():
            logger.warning(
                "Multipart parsing failed after operations were released",
                error=str(error),
                status_code=getattr(error, "status_code", None),
            )
            drain(self._stream)
        else:
            self._released.set_exception(error)

    def release(self) -> None:
        """Release every capsule; called when the response closes."""
        for capacitor in self.capacitors:
            capacitor.release()
        if self.capacitors:
            logger.debug("Uploads released", count=len(self.capacitors))

    # ── Parser callbacks ─────────────────────────────────────────────────────

    def _on_part_begin(self) -> None:
        self._parts_seen += 1
        self._headers = {}
        self._part = None

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def _on_header_end(self) -> None:
        name = bytes(self._header_field).decode("latin-1").strip().lower()
        self._headers[name] = bytes(self._header_value).strip()
        self._header_field.clear()
        self._header_value.clear()

    def _on_headers_finished(self) -> None:
        _, params = parse_options_header(self._headers.get("content-disposition"))
        name = params.get(b"name", b"").decode("utf-8", "replace")
        filename = params.get(b"filename")
        if filename is None:
            self._part = _FieldPart(name)
        else:
            self._part = self._begin_file(name, filename.decode("utf-8", "replace"))

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        part = self._part
        if isinstance(part, _FieldPart):
            part.value += data[start:end]
            if len(part.value) > self.options.max_field_size:
                raise ClientVisibleError(
                    413,
                    f"The ‘{part.name}’ multipart field value exceeds the "
                    f"{_format_limit(self.options.max_field_size)} byte size limit.",
                )
        elif isinstance(part, _FilePart):
            part.size += end - start
            if part.size > self.options.max_file_size:
                error = ClientVisibleError(
                    413,
                    f"File truncated as it exceeds the "
                    f"{_format_limit(self.options.max_file_size)} byte size limit.",
                )
                logger.warning("Upload exceeded file size limit", field=part.name, limit=self.options.max_file_size)
                part.capacitor.destroy(error)
                self._part = _IgnoredPart()
            else:
                part.capacitor.write(data[start:end])

    def _on_part_end(self) -> None:
        part = self._part
        if isinstance(part, _FieldPart):
            self._on_field(part.name, bytes(part.value))
        elif isinstance(part, _FilePart):
            part.capacitor.finish()
        self._part = None

    def _on_end(self) -> None:
        self._parser_ended = True

    # ── Field & file handling ────────────────────────────────────────────────

    def _on_field(self, name: str, value: bytes) -> None:
        if name in (OPERATIONS_FIELD, MAP_FIELD) and name in self._fields_seen:
            raise ClientVisibleError(400, f"Duplicate multipart field ‘{name}’ ({MULTIPART_SPEC_URL}).")
        self._fields_seen.add(name)

        if name == OPERATIONS_FIELD:
            try:
                operations = json.loads(value)
            except ValueError:
                raise ClientVisibleError(
                    400, f"Invalid JSON in the ‘{OPERATIONS_FIELD}’ multipart field ({MULTIPART_SPEC_URL})."
                )
            if not isinstance(operations, (dict, list)):
                raise ClientVisibleError(
                    400, f"Invalid type for the ‘{OPERATIONS_FIELD}’ multipart field ({MULTIPART_SPEC_URL})."
                )
            self.operations = operations
        elif name == MAP_FIELD:
            self._apply_map(value)

    def _apply_map(self, value: bytes) -> None:
        if self.operations is None:
            raise ClientVisibleError(
                400,
                f"Misordered multipart fields; ‘{MAP_FIELD}’ should follow ‘{OPERATIONS_FIELD}’ "
                f"({MULTIPART_SPEC_URL}).",
            )
        try:
            parsed = json.loads(value)
        except ValueError:
            raise ClientVisibleError(400, f"Invalid JSON in the ‘{MAP_FIELD}’ multipart field ({MULTIPART_SPEC_URL}).")
        if not isinstance(parsed, dict):
            raise ClientVisibleError(400, f"Invalid type for the ‘{MAP_FIELD}’ multipart field ({MULTIPART_SPEC_URL}).")

        if len(parsed) > self.options.max_files:
            raise ClientVisibleError(413, f"{_format_limit(self.options.max_files)} max file uploads exceeded.")

        upload_map: dict[str, Upload] = {}
        for file_field, paths in parsed.items():
            if not isinstance(paths, list):
                raise ClientVisibleError(
                    400,
                    f"Invalid type for the ‘{MAP_FIELD}’ multipart field entry key ‘{file_field}’ array "
                    f"({MULTIPART_SPEC_URL}).",
                )
            upload = Upload()
            upload_map[file_field] = upload
            for index, path in enumerate(paths):
                if not isinstance(path, str):
                    raise ClientVisibleError(
                        400,
                        f"Invalid type for the ‘{MAP_FIELD}’ multipart field entry key ‘{file_field}’ array "
                        f"index ‘{index}’ value ({MULTIPART_SPEC_URL}).",
                    )
                try:
                    set_path(self.operations, path, upload)
                except (KeyError, IndexError, TypeError, ValueError):
                    raise ClientVisibleError(
                        400,
                        f"Invalid object path for the ‘{MAP_FIELD}’ multipart field entry key ‘{file_field}’ "
                        f"array index ‘{index}’ value ‘{path}’ ({MULTIPART_SPEC_URL}).",
                    )

        self.upload_map = upload_map
        logger.debug("Operations released", uploads=len(upload_map))
        self._released.set_result(self.operations)

    def _begin_file(self, name: str, filename: str) -> _Part:
        if self.upload_map is None:
            raise ClientVisibleError(
                400, f"Misordered multipart fields; files should follow ‘{MAP_FIELD}’ ({MULTIPART_SPEC_URL})."
            )

        self.file_count += 1
        if self.file_count > self.options.max_files:
            raise ClientVisibleError(413, f"{_format_limit(self.options.max_files)} max file uploads exceeded.")

        upload = self.upload_map.get(name)
        if upload is None or upload.done:
            return _IgnoredPart()

        capacitor = WriteCapacitor()
        self.capacitors.append(capacitor)
        mimetype = self._headers.get("content-type") or DEFAULT_FILE_MIMETYPE.encode()
        encoding = self._headers.get("content-transfer-encoding") or DEFAULT_TRANSFER_ENCODING.encode()
        upload.resolve(
            FileUpload(
                filename=filename,
                mimetype=mimetype.decode("latin-1"),
                encoding=encoding.decode("latin-1"),
                capacitor=capacitor,
            )
        )
        return _FilePart(name, capacitor)


async def process_request(
    request: Request,
    response: "ResponseGate",
    options: Optional[ProcessRequestOptions] = None,
) -> ProcessRequestResult:
    """Process a GraphQL multipart request.

    Args:
        request:  Starlette request whose body is a multipart/form-data stream.
        response: The middleware's response gate; capsules are released when
                  it closes.
        options:  Limits; defaults to ``ProcessRequestOptions()``.

    Returns:
        The ``operations`` document with ``Upload`` placeholders at every
        mapped path.

    Raises:
        ClientVisibleError: See module docstring for the conditions.
    """
    processor = MultipartProcessor(request, response, options or ProcessRequestOptions())
    return await processor.run()

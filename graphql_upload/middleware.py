"""GraphQL multipart upload middleware.

Pure ASGI middleware that processes incoming GraphQL multipart requests
using a pluggable processor, ignoring non-multipart requests. It places the
processor's result on ``request.state.body`` so the following GraphQL
handler sees a conventional single-document request.

Per-request flow (terminal on first exit):

  PASSTHROUGH:     not HTTP, or content type is not multipart/form-data
                   → downstream app called with the original channels.
  DEFER_RESPONSE:  receive wrapped in RequestStream (body completion is
                   observed from the first byte), send wrapped in a
                   ResponseGate that holds every outbound message until
                   the body has ended.
  INVOKE_PROCESSOR: await process_request(request, gate, options).
  CONTINUE:        request.state.body = result; downstream app called
                   through the gate. If it raises, the error is re-raised
                   only once the body has ended.
  FAIL:            client-visible errors set the gate's status; the
                   remaining body is drained; the error handler renders
                   the error through the gate, or re-raises it to the
                   host framework's generic error path.

Holding the response until the body is fully read prevents the common
failure where a client aborts the connection because the server replied
early, which cuts the multipart parse off mid-stream and corrupts in-flight
file writes.

Registration::

    app = Starlette(routes=[...])
    app.add_middleware(GraphQLUploadMiddleware, max_file_size=10_000_000, max_files=10)
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional

from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from graphql_upload.config import ProcessRequestOptions
from graphql_upload.constants import MULTIPART_CONTENT_TYPE
from graphql_upload.errors import ClientVisibleError, public_status
from graphql_upload.process_request import ProcessRequestResult
from graphql_upload.process_request import process_request as default_process_request
from graphql_upload.utils.logger import bind_request_context, clear_request_context, get_logger
from graphql_upload.utils.streams import RequestStream, drain

logger = get_logger(__name__)

ProcessRequestFunction = Callable[
    [Request, "ResponseGate", ProcessRequestOptions], Awaitable[ProcessRequestResult]
]
ErrorHandler = Callable[[Request, Exception], Awaitable[Response]]


def is_multipart(scope: Scope) -> bool:
    """True if the request's media type is multipart/form-data."""
    content_type = Headers(scope=scope).get("content-type", "")
    return content_type.split(";", 1)[0].strip().lower() == MULTIPART_CONTENT_TYPE


# ─── Response Gate ────────────────────────────────────────────────────────────


class ResponseGate:
    """Deferred ASGI ``send``: holds outbound messages until the body has ended.

    Two states: armed (initial) and fired. While armed, ``send_when_ready``
    waits for the request stream's ``ended`` event, fires once, then forwards.
    Once fired, every message passes straight through to the original send.
    If the body ended because the client disconnected, messages are dropped;
    the original send is never invoked.

    Attributes:
        status_code:      Optional status written into ``http.response.start``.
        response_started: True once ``http.response.start`` was forwarded.
    """

    def __init__(self, send: Send, request_stream: RequestStream) -> None:
        self._send = send
        self._request_stream = request_stream
        self._fired = False
        self._closed = False
        self._close_callbacks: list[Callable[[], Any]] = []
        self.status_code: Optional[int] = None
        self.response_started = False

    @property
    def armed(self) -> bool:
        return not self._fired

    async def send_when_ready(self, message: Message) -> None:
        if not self._fired:
            await self._request_stream.ended.wait()
            self._fired = True

        if self._request_stream.disconnected:
            logger.debug("Dropping response message after client disconnect", message_type=message["type"])
            return

        if message["type"] == "http.response.start":
            if self.status_code is not None:
                message = {**message, "status": self.status_code}
            self.response_started = True
        await self._send(message)

    __call__ = send_when_ready

    def on_close(self, callback: Callable[[], Any]) -> None:
        """Register a callback run once when the response lifecycle ends."""
        self._close_callbacks.append(callback)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for callback in self._close_callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Response close callback failed")


# ─── Error path ───────────────────────────────────────────────────────────────


async def default_error_handler(request: Request, exc: Exception) -> Response:
    """Render client-visible errors; re-raise everything else.

    Client-visible errors become a GraphQL-style JSON error body carrying the
    processor-chosen status. Any other exception propagates to the host
    framework, which renders its generic failure response.
    """
    if isinstance(exc, ClientVisibleError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"errors": [{"message": exc.message}]},
        )
    raise exc


# ─── Middleware ───────────────────────────────────────────────────────────────


class GraphQLUploadMiddleware:
    """ASGI middleware for GraphQL multipart requests.

    Args:
        app:             Downstream ASGI application.
        process_request: Processor satisfying ``ProcessRequestFunction``;
                         defaults to the bundled multipart processor.
        options:         Base limits forwarded verbatim to the processor.
        max_field_size, max_file_size, max_files:
                         Convenience overrides applied on top of ``options``.
        error_handler:   ``async (request, exc) -> Response``; may re-raise to
                         defer to the host framework.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        process_request: Optional[ProcessRequestFunction] = None,
        options: Optional[ProcessRequestOptions] = None,
        max_field_size: Optional[int] = None,
        max_file_size: Optional[float] = None,
        max_files: Optional[float] = None,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        self.app = app
        self.process_request = process_request or default_process_request
        self.error_handler = error_handler or default_error_handler

        overrides = {
            name: value
            for name, value in (
                ("max_field_size", max_field_size),
                ("max_file_size", max_file_size),
                ("max_files", max_files),
            )
            if value is not None
        }
        base = options or ProcessRequestOptions()
        self.options = replace(base, **overrides) if overrides else base

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not is_multipart(scope):
            await self.app(scope, receive, send)
            return

        request_stream = RequestStream(receive)
        gate = ResponseGate(send, request_stream)
        request = Request(scope, request_stream.receive)

        bind_request_context(path=scope.get("path", ""), method=scope.get("method", ""))
        logger.debug("Multipart request intercepted")
        try:
            try:
                body = await self.process_request(request, gate, self.options)
            except Exception as exc:
                await self._fail(request, request_stream, gate, exc)
                return

            request.state.body = body
            try:
                await self.app(scope, request_stream.receive_after_end, gate)
            except Exception:
                # The host's error response bypasses the gate; hold it until the body ends.
                await request_stream.ended.wait()
                raise
        finally:
            gate.close()
            clear_request_context()

    async def _fail(
        self,
        request: Request,
        request_stream: RequestStream,
        gate: ResponseGate,
        exc: Exception,
    ) -> None:
        status = public_status(exc)
        if status is not None:
            gate.status_code = status
            logger.warning("Upload request rejected", status_code=status, error=str(exc))
        else:
            logger.error("Upload processing failed", error=repr(exc))

        drain(request_stream)

        try:
            response = await self.error_handler(request, exc)
        except Exception:
            # The host renders this with the original send; hold it until the body ends.
            await request_stream.ended.wait()
            raise

        await response(request.scope, request_stream.receive_after_end, gate)

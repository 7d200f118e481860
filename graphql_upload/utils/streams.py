"""Request stream helpers for graphql-upload.

Provides:
  - ``RequestStream`` — wraps an ASGI ``receive`` channel and publishes a
    one-shot ``ended`` event the moment the request body has been fully
    received (last ``http.request`` message) or the client disconnected.
  - ``drain()`` — consumes an async byte stream to exhaustion in the
    background, discarding data and swallowing errors.

A stream the package decides not to hand to a consumer must still be read
to the end, otherwise the server never observes body completion and the
deferred response never fires.
"""

from __future__ import annotations

import asyncio
import weakref
from typing import AsyncIterable, AsyncIterator

from starlette.requests import ClientDisconnect
from starlette.types import Message, Receive

from graphql_upload.utils.logger import get_logger

logger = get_logger(__name__)

# Strong references to running drain tasks; the event loop only keeps weak ones.
_drain_tasks: set[asyncio.Task] = set()

# Streams already handed to drain(); a second call is a no-op.
_drained: weakref.WeakSet = weakref.WeakSet()


# ─── Request Stream ───────────────────────────────────────────────────────────


class RequestStream:
    """ASGI receive wrapper that observes request body completion.

    The ``ended`` event is subscribed before any byte is read, so there is no
    window in which completion can happen unobserved.

    Attributes:
        ended:        Set once, when the final body message arrives or the
                      client disconnects.
        disconnected: True if ``ended`` was caused by ``http.disconnect``.
        bytes_received: Running total of body bytes seen.
    """

    def __init__(self, receive: Receive) -> None:
        self._receive = receive
        self.ended = asyncio.Event()
        self.disconnected = False
        self.bytes_received = 0

    async def receive(self) -> Message:
        """Receive one ASGI message, updating completion state."""
        message = await self._receive()
        if message["type"] == "http.request":
            self.bytes_received += len(message.get("body", b""))
            if not message.get("more_body", False):
                self.ended.set()
        elif message["type"] == "http.disconnect":
            self.disconnected = True
            self.ended.set()
        return message

    async def receive_after_end(self) -> Message:
        """Receive for downstream consumers: waits until the body has ended.

        While the body is still being consumed by the processor, downstream
        disconnect listeners must not take body messages off the channel.
        """
        await self.ended.wait()
        return await self._receive()

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield remaining body chunks; stops immediately if already ended.

        Raises:
            ClientDisconnect: If the client disconnects before the body ends.
        """
        while not self.ended.is_set():
            message = await self.receive()
            if message["type"] == "http.request":
                body = message.get("body", b"")
                if body:
                    yield body
            elif message["type"] == "http.disconnect":
                raise ClientDisconnect()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.chunks()


# ─── Drain ────────────────────────────────────────────────────────────────────


async def _consume(stream: AsyncIterable[bytes]) -> None:
    discarded = 0
    try:
        async for chunk in stream:
            discarded += len(chunk)
    except Exception as exc:
        # Nobody is left to observe a failure on a discarded stream.
        logger.debug("Drained stream errored", error=repr(exc), discarded_bytes=discarded)
    else:
        logger.debug("Drained stream", discarded_bytes=discarded)


def drain(stream: AsyncIterable[bytes]) -> None:
    """Safely discard an async byte stream.

    Schedules a background task that reads ``stream`` to exhaustion,
    discarding every chunk and swallowing any error it raises. Returns
    immediately; it never raises and never waits for the stream to end.
    Calling it again for the same stream object does nothing.

    Args:
        stream: Any async iterable of bytes (an async generator, a
                ``RequestStream``, a capsule ``ReadStream``...).
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("drain() called outside an event loop; stream left unread")
        return

    try:
        if stream in _drained:
            return
        _drained.add(stream)
    except TypeError:
        # Not weak-referenceable; idempotency cannot be tracked for it.
        pass

    task = loop.create_task(_consume(stream))
    _drain_tasks.add(task)
    task.add_done_callback(_drain_tasks.discard)

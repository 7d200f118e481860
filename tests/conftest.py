"""Root test configuration for graphql-upload.

Isolates every test from the developer's environment: GRAPHQL_UPLOAD_*
variables are removed and the default config search paths are emptied, so
load_options() only sees what a test explicitly provides.

Also provides ASGI building blocks shared by unit and integration tests:
  - make_scope        — HTTP scope factory
  - ReceiveQueue      — scripted ASGI receive channel
  - build_multipart   — multipart/form-data body encoder
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import pytest

BOUNDARY = "graphql-upload-test-boundary"
MULTIPART_CONTENT_TYPE = f"multipart/form-data; boundary={BOUNDARY}"


@pytest.fixture(autouse=True)
def isolate_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """Strip config env vars and default config paths for every test."""
    for name in (
        "GRAPHQL_UPLOAD_CONFIG",
        "GRAPHQL_UPLOAD_MAX_FIELD_SIZE",
        "GRAPHQL_UPLOAD_MAX_FILE_SIZE",
        "GRAPHQL_UPLOAD_MAX_FILES",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("graphql_upload.config.DEFAULT_CONFIG_PATHS", [])


# ─── ASGI helpers ─────────────────────────────────────────────────────────────


def make_scope(content_type: Optional[str] = MULTIPART_CONTENT_TYPE, **overrides: Any) -> dict:
    headers = []
    if content_type is not None:
        headers.append((b"content-type", content_type.encode("latin-1")))
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/graphql",
        "raw_path": b"/graphql",
        "query_string": b"",
        "root_path": "",
        "headers": headers,
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    scope.update(overrides)
    return scope


class ReceiveQueue:
    """Scripted ASGI receive channel.

    ``push(b"...")`` queues a body chunk with more_body=True,
    ``finish(b"...")`` queues the final chunk, ``disconnect()`` queues
    http.disconnect. Once the script is exhausted after the final message,
    receive() blocks like a real server waiting for disconnect.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self.calls = 0

    def push(self, body: bytes) -> None:
        self._queue.put_nowait({"type": "http.request", "body": body, "more_body": True})

    def finish(self, body: bytes = b"") -> None:
        self._queue.put_nowait({"type": "http.request", "body": body, "more_body": False})

    def disconnect(self) -> None:
        self._queue.put_nowait({"type": "http.disconnect"})

    async def __call__(self) -> dict:
        self.calls += 1
        return await self._queue.get()


class SendRecorder:
    """ASGI send channel that records messages with a monotonic timestamp."""

    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.times: list[float] = []

    async def __call__(self, message: dict) -> None:
        self.messages.append(message)
        self.times.append(asyncio.get_running_loop().time())

    @property
    def status(self) -> Optional[int]:
        for message in self.messages:
            if message["type"] == "http.response.start":
                return message["status"]
        return None

    @property
    def body(self) -> bytes:
        return b"".join(m.get("body", b"") for m in self.messages if m["type"] == "http.response.body")


def build_multipart(parts: list[tuple], boundary: str = BOUNDARY, close: bool = True) -> bytes:
    """Encode ``parts`` as a multipart/form-data body.

    Each part is ``(name, value)`` for a field (str/bytes, or any other value
    which is JSON-encoded) or ``(name, filename, content, content_type)`` for
    a file.
    """
    chunks: list[bytes] = []
    for part in parts:
        chunks.append(f"--{boundary}\r\n".encode())
        if len(part) == 2:
            name, value = part
            if not isinstance(value, (str, bytes)):
                value = json.dumps(value)
            if isinstance(value, str):
                value = value.encode()
            chunks.append(f'Content-Disposition: form-data; name="{name}"\r\n\r\n'.encode())
            chunks.append(value)
        else:
            name, filename, content, content_type = part
            chunks.append(
                f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
                f"Content-Type: {content_type}\r\n\r\n".encode()
            )
            chunks.append(content)
        chunks.append(b"\r\n")
    if close:
        chunks.append(f"--{boundary}--\r\n".encode())
    return b"".join(chunks)


@pytest.fixture
def receive() -> ReceiveQueue:
    return ReceiveQueue()


@pytest.fixture
def send() -> SendRecorder:
    return SendRecorder()


@pytest.fixture
def scope_factory():
    return make_scope


@pytest.fixture
def multipart():
    return build_multipart

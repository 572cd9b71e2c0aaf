"""
Push Transport for the Order Stream

Defines the small callback interface the ConnectionManager drives
(open / on_message / on_error / close) and the production
implementation over httpx streaming responses.

Failure reporting:
    - HTTP 501 from the stream endpoint -> PushUnsupportedError
    - any other status, network error, or the server ending the
      stream -> StreamTransportError

Callbacks never fire after close() returns.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

OnOpen = Callable[[], None]
OnMessage = Callable[[str], None]
OnError = Callable[[Exception], None]


# =============================================================================
# ERRORS
# =============================================================================

class TransportError(Exception):
    """Base class for push transport failures."""


class StreamTransportError(TransportError):
    """Transient failure: worth retrying with backoff."""


class PushUnsupportedError(TransportError):
    """The server answered that push delivery is not offered."""

    def __init__(self, status_code: int, body: Optional[dict] = None):
        self.status_code = status_code
        self.body = body or {}
        super().__init__(f"Push delivery unsupported (HTTP {status_code})")

    @property
    def fallback(self) -> Optional[str]:
        return self.body.get("fallback")


# =============================================================================
# INTERFACE
# =============================================================================

class Transport(ABC):
    """One push channel attempt. Create a fresh instance per attempt."""

    @abstractmethod
    def open(self, url: str, on_open: OnOpen, on_message: OnMessage, on_error: OnError) -> None:
        """Start connecting; returns immediately. Outcomes arrive via callbacks."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Stop the channel. Idempotent."""
        pass

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        pass


# =============================================================================
# SSE DECODING
# =============================================================================

async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    Decode an SSE line stream into event data payloads.

    Only ``data:`` fields are kept (joined with newlines per event);
    ``event:``/``id:``/``retry:`` fields and ``:`` comments are ignored.
    """
    buffer: list[str] = []
    async for line in lines:
        line = line.rstrip("\r\n")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            buffer.append(value)
    if buffer:
        yield "\n".join(buffer)


# =============================================================================
# HTTPX IMPLEMENTATION
# =============================================================================

class HttpxSSETransport(Transport):
    """
    SSE over an httpx AsyncClient.

    The client is borrowed, not owned: closing the transport cancels
    the streaming request but leaves the client open for reuse.
    """

    def __init__(self, client: httpx.AsyncClient, connect_timeout: float = 10.0):
        self._client = client
        self._connect_timeout = connect_timeout
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._on_open: Optional[OnOpen] = None
        self._on_message: Optional[OnMessage] = None
        self._on_error: Optional[OnError] = None

    @property
    def is_closed(self) -> bool:
        return self._closed or (self._task is not None and self._task.done())

    def open(self, url: str, on_open: OnOpen, on_message: OnMessage, on_error: OnError) -> None:
        if self._task is not None:
            raise RuntimeError("Transport already opened; create a new one per attempt")
        self._on_open = on_open
        self._on_message = on_message
        self._on_error = on_error
        self._task = asyncio.get_running_loop().create_task(self._run(url))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self, url: str) -> None:
        timeout = httpx.Timeout(self._connect_timeout, read=None)
        try:
            async with self._client.stream(
                "GET",
                url,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                timeout=timeout,
            ) as response:
                if response.status_code == 501:
                    await response.aread()
                    self._emit_error(PushUnsupportedError(501, _json_body(response)))
                    return
                if response.status_code != 200:
                    await response.aread()
                    self._emit_error(StreamTransportError(f"Stream answered HTTP {response.status_code}"))
                    return

                if self._closed:
                    return
                self._on_open()

                async for data in iter_sse_data(response.aiter_lines()):
                    if self._closed:
                        return
                    self._on_message(data)

            self._emit_error(StreamTransportError("Stream closed by server"))
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as e:
            self._emit_error(StreamTransportError(f"{type(e).__name__}: {e}"))
        except Exception as e:
            logger.exception(f"Unexpected error on order stream: {e}")
            self._emit_error(StreamTransportError(str(e)))
        finally:
            self._closed = True

    def _emit_error(self, error: Exception) -> None:
        if not self._closed and self._on_error is not None:
            self._on_error(error)


def _json_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return {}
    return body if isinstance(body, dict) else {}

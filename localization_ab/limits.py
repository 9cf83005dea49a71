"""
Per-connection resource bounds for the experiment service.

uvicorn already reclaims idle keep-alive connections (``timeout_keep_alive``) and
caps concurrent connections (``limit_concurrency``). This ASGI middleware adds the
three bounds uvicorn lacks:

* **read timeout** – the complete request body must arrive within
  ``read_timeout`` seconds, otherwise ``408`` is returned with ``Connection: close``.
* **write timeout** – the complete response must be handed to the transport
  within ``write_timeout`` seconds. Bodies are forwarded in ``chunk_size`` pieces so
  the server's back-pressure from a slow reader is felt on every piece; on expiry
  :class:`WriteTimeoutExceeded` propagates and the server drops the connection.
* **body size** – a request body larger than ``max_body_size`` (declared or
  streamed) is refused with ``413`` and ``Connection: close``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from localization_ab.model import ErrorResponse

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class RequestTimeout(Exception):
    """The request body did not arrive in time."""


class BodyTooLarge(Exception):
    """The request body exceeded the configured maximum."""


class WriteTimeoutExceeded(Exception):
    """The response could not be transmitted in time."""


def _content_length(scope: Scope) -> Optional[int]:
    for key, value in scope.get("headers", ()):
        if key == b"content-length":
            try:
                return int(value)
            except ValueError:
                return None
    return None


async def _reject(scope: Scope, receive: Receive, send: Send, status: int, error: str) -> None:
    response = JSONResponse(
        ErrorResponse(error=error).model_dump(),
        status_code=status,
        headers={"Connection": "close"},
    )
    await response(scope, receive, send)


class ConnectionLimitsMiddleware:
    def __init__(
        self,
        app: ASGIApp,
        *,
        read_timeout: float,
        write_timeout: float,
        max_body_size: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.app = app
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.max_body_size = max_body_size
        self.chunk_size = chunk_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        declared = _content_length(scope)
        if declared is not None and declared > self.max_body_size:
            logger.warning("rejecting %s: declared body of %d bytes exceeds %d", path, declared, self.max_body_size)
            await _reject(scope, receive, send, 413, "Request body too large")
            return

        loop = asyncio.get_running_loop()
        read_deadline = loop.time() + self.read_timeout
        write_deadline = 0.0
        received = 0
        body_complete = False
        response_started = False

        async def limited_receive() -> Message:
            nonlocal received, body_complete
            if body_complete:
                # only disconnect notifications remain
                return await receive()
            remaining = read_deadline - loop.time()
            if remaining <= 0:
                raise RequestTimeout()
            try:
                message = await asyncio.wait_for(receive(), remaining)
            except asyncio.TimeoutError:
                raise RequestTimeout() from None
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_size:
                    raise BodyTooLarge()
                if not message.get("more_body", False):
                    body_complete = True
            return message

        async def send_before_deadline(message: Message) -> None:
            remaining = write_deadline - loop.time()
            if remaining <= 0:
                raise WriteTimeoutExceeded(path)
            try:
                await asyncio.wait_for(send(message), remaining)
            except asyncio.TimeoutError:
                raise WriteTimeoutExceeded(path) from None

        async def limited_send(message: Message) -> None:
            nonlocal response_started, write_deadline
            if message["type"] == "http.response.start":
                response_started = True
                write_deadline = loop.time() + self.write_timeout
                await send_before_deadline(message)
            elif message["type"] == "http.response.body":
                body = message.get("body", b"")
                more_body = message.get("more_body", False)
                if len(body) <= self.chunk_size:
                    await send_before_deadline(message)
                    return
                for offset in range(0, len(body), self.chunk_size):
                    last = offset + self.chunk_size >= len(body)
                    await send_before_deadline(
                        {
                            "type": "http.response.body",
                            "body": body[offset : offset + self.chunk_size],
                            "more_body": more_body or not last,
                        }
                    )
            else:
                await send(message)

        try:
            await self.app(scope, limited_receive, limited_send)
        except RequestTimeout:
            logger.warning("read timeout (%.1fs) exceeded on %s", self.read_timeout, path)
            if response_started:
                raise
            await _reject(scope, receive, send, 408, "Request timeout")
        except BodyTooLarge:
            logger.warning("request body on %s exceeded %d bytes", path, self.max_body_size)
            if response_started:
                raise
            await _reject(scope, receive, send, 413, "Request body too large")
        except WriteTimeoutExceeded:
            logger.warning("write timeout (%.1fs) exceeded on %s, closing connection", self.write_timeout, path)
            raise

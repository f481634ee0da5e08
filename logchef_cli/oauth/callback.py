"""Loopback callback server for the OIDC redirect.

This module provides an ephemeral HTTP server on 127.0.0.1 that receives
the authorization redirect from the browser. It:
- Binds one of a fixed list of ports, falling back to an OS-assigned port
- Answers every request with a small static page
- Ignores noise (favicon requests, other paths, requests without a code)
- Delivers the first request carrying both ``code`` and ``state`` through a
  one-shot future and closes the listener right away
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .errors import BindError, CallbackError

logger = logging.getLogger(__name__)

CALLBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/callback"

# Must match the redirect URIs registered for the CLI client at the provider
DEFAULT_CANDIDATE_PORTS: tuple[int, ...] = (19876, 19877, 19878)

# How long a connection may take to send its request line
READ_TIMEOUT = 5.0

# Upper bound on header lines consumed per request
MAX_HEADER_LINES = 100


@dataclass
class CallbackResult:
    """Parameters received on the callback path.

    Attributes:
        code: The authorization code from the callback
        state: The state parameter from the callback
        error: Error code if the provider reported one
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_complete(self) -> bool:
        """Check if this callback ends the flow (both code and state present)."""
        return bool(self.code) and bool(self.state)


PAGE_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>LogChef CLI</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: #f4f5f7;
        }}
        .card {{
            background: white;
            padding: 40px 60px;
            border-radius: 12px;
            text-align: center;
            box-shadow: 0 4px 24px rgba(0,0,0,0.1);
        }}
        h1 {{ color: {color}; margin: 0 0 8px 0; font-size: 24px; }}
        p {{ color: #666; margin: 0; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{title}</h1>
        <p>{message}</p>
    </div>
</body>
</html>"""

SUCCESS_HTML = PAGE_HTML.format(
    color="#1a7f37",
    title="Authentication Successful",
    message="You can close this window and return to the terminal.",
)

FAILURE_HTML = PAGE_HTML.format(
    color="#c0392b",
    title="Authentication Failed",
    message="Please return to the terminal and run the login again.",
)


def parse_callback_target(target: str) -> tuple[str, CallbackResult] | None:
    """Parse the request target of a callback request.

    Args:
        target: The request-target from the request line, e.g.
            ``/callback?code=xxx&state=yyy``

    Returns:
        The path and parsed parameters, or None if the target is not a
        relative URL
    """
    if not target.startswith("/") or target.startswith("//"):
        return None

    try:
        parts = urlsplit(target)
    except ValueError:
        return None

    params = parse_qs(parts.query)

    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return parts.path, CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


class LoopbackCallbackServer:
    """Ephemeral HTTP server for the authorization redirect.

    Usage:
        async with LoopbackCallbackServer() as server:
            redirect_uri = server.redirect_uri
            # Open the browser with an authorization URL using redirect_uri
            result = await asyncio.wait_for(server.serve_one(), timeout=300)

    Connections are handled by asyncio tasks of their own, so a caller
    waiting on ``serve_one()`` under ``asyncio.wait_for`` is never blocked by
    a slow or idle browser connection.
    """

    def __init__(
        self,
        candidate_ports: Sequence[int] = DEFAULT_CANDIDATE_PORTS,
        path: str = CALLBACK_PATH,
    ):
        """Initialize callback server.

        Args:
            candidate_ports: Ports to try in order before asking the OS for one
            path: URL path that receives the redirect
        """
        self.candidate_ports = tuple(candidate_ports)
        self.path = path
        self.port: int = 0
        self.redirect_uri: str = ""

        self._server: asyncio.Server | None = None
        self._outcome: asyncio.Future[CallbackResult] | None = None
        self._connections: set[asyncio.StreamWriter] = set()

    @property
    def is_listening(self) -> bool:
        """Whether the listening socket is still open."""
        return self._server is not None and self._server.is_serving()

    async def start(self) -> str:
        """Bind the listener.

        Tries each candidate port in order; if all of them are taken, binds
        an OS-assigned port instead.

        Returns:
            The redirect URI to use in the authorization request

        Raises:
            BindError: If every port, including the OS-assigned one, fails
        """
        if self._server is not None:
            raise CallbackError("Callback server already started")

        loop = asyncio.get_running_loop()
        self._outcome = loop.create_future()

        errors: list[str] = []
        for port in (*self.candidate_ports, 0):
            try:
                self._server = await asyncio.start_server(
                    self._handle_connection,
                    CALLBACK_HOST,
                    port,
                )
                break
            except OSError as e:
                label = port or "OS-assigned port"
                logger.debug(f"Could not bind callback server on {label}: {e}")
                errors.append(f"{label}: {e}")
        else:
            self._outcome = None
            raise BindError(
                "Failed to start callback server on any local port ("
                + "; ".join(errors)
                + ")"
            )

        self.port = self._server.sockets[0].getsockname()[1]
        self.redirect_uri = f"http://{CALLBACK_HOST}:{self.port}{self.path}"

        logger.debug(f"Callback server listening on {self.redirect_uri}")
        return self.redirect_uri

    async def serve_one(self) -> CallbackResult:
        """Wait for the first complete callback.

        Requests without both ``code`` and ``state`` are answered and
        ignored. The listener is closed as soon as a complete callback
        arrives, so later connection attempts are refused.

        Returns:
            CallbackResult carrying the code and state

        Raises:
            CallbackError: If the server was not started
        """
        if self._outcome is None:
            raise CallbackError("Server not started")

        result = await self._outcome
        await self.stop()
        return result

    async def stop(self) -> None:
        """Close the listener and any connection still open."""
        for writer in list(self._connections):
            writer.close()
        self._connections.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.debug("Callback server stopped")

        if self._outcome is not None and not self._outcome.done():
            self._outcome.cancel()

    def _deliver(self, result: CallbackResult) -> None:
        """Hand the terminal result to the waiter, at most once."""
        if self._outcome is None or self._outcome.done():
            logger.debug("Ignoring callback received after the flow completed")
            return

        # Stop accepting before waking the waiter
        if self._server is not None:
            self._server.close()

        self._outcome.set_result(result)

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one incoming HTTP connection."""
        self._connections.add(writer)
        try:
            try:
                request_line = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT)
            except TimeoutError:
                logger.debug("Callback connection sent no request, dropping it")
                return

            if not request_line:
                return

            # e.g. "GET /callback?code=xxx&state=yyy HTTP/1.1"
            parts = request_line.decode("utf-8", errors="replace").strip().split(" ")
            if len(parts) < 2:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]
            await self._discard_headers(reader)

            if method != "GET":
                await self._send_response(
                    writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed"
                )
                return

            parsed = parse_callback_target(target)
            if parsed is None:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            path, result = parsed

            # Browsers also request /favicon.ico and the like
            if path != self.path:
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            # Deliver first: a browser that drops the connection mid-page
            # must not lose a valid code
            if result.is_complete():
                self._deliver(result)
            elif result.error:
                logger.warning(
                    f"Identity provider returned an error: {result.error} "
                    f"{result.error_description or ''}".rstrip()
                )
            else:
                logger.debug("Callback request without code and state, still waiting")

            page = SUCCESS_HTML if result.code else FAILURE_HTML
            await self._send_html_response(writer, HTTPStatus.OK, page)

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Callback connection closed early: {e}")
        except Exception as e:
            logger.warning(f"Error handling callback request: {e}")

        finally:
            self._connections.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing callback connection: {e}")

    async def _discard_headers(self, reader: asyncio.StreamReader) -> None:
        """Consume the header block so the socket closes cleanly."""
        for _ in range(MAX_HEADER_LINES):
            try:
                header_line = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT)
            except TimeoutError:
                return
            if header_line in (b"\r\n", b"\n", b""):
                return

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
    ) -> None:
        """Send a plain text HTTP response."""
        response = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/plain\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
            f"{body}"
        )
        writer.write(response.encode("utf-8"))
        await writer.drain()

    async def _send_html_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        html_content: str,
    ) -> None:
        """Send an HTML HTTP response with security headers."""
        body = html_content.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + body)
        await writer.drain()

    async def __aenter__(self) -> "LoopbackCallbackServer":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.stop()

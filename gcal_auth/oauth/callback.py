"""Localhost callback listener for the Google OAuth redirect.

This module provides an ephemeral HTTP server that receives the
authorization redirect from the browser. It:
- Binds the fixed port registered as the client's redirect URI
- Hands each callback to a handler that validates it and exchanges the code
- Answers the browser with a success or error page
- Ignores favicon requests, foreign paths and non-GET methods
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, urlparse

from .exchange import CALLBACK_PATH, CALLBACK_PORT, OAuthError

logger = logging.getLogger(__name__)

CALLBACK_HOST = "localhost"

# Default timeout for waiting for callback
DEFAULT_TIMEOUT = 300  # seconds


class CallbackError(OAuthError):
    """Error during OAuth callback handling."""

    pass


class CallbackTimeoutError(CallbackError):
    """Timeout waiting for OAuth callback."""

    pass


@dataclass
class CallbackResult:
    """Query parameters of an OAuth callback.

    Attributes:
        code: The authorization code from the callback
        state: The state parameter from the callback
        error: Error code if authorization failed
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if callback was successful."""
        return self.code is not None and self.error is None


@dataclass
class CallbackReply:
    """What to send back to the browser for a callback.

    ``done`` ends the wait: the listener stops accepting callbacks and
    ``wait_for_callback`` returns. A reply with ``done=False`` answers the
    request but keeps waiting for the genuine redirect.
    """

    status: HTTPStatus
    html_content: str
    done: bool = True


CallbackHandler = Callable[[CallbackResult], Awaitable[CallbackReply]]

SECURITY_HEADERS = (
    "X-Content-Type-Options: nosniff",
    "X-Frame-Options: DENY",
    "Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'",
    "Referrer-Policy: no-referrer",
    "Cache-Control: no-store",
)


PAGE_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: {background};
        }}
        .card {{
            background: white;
            padding: 40px 60px;
            border-radius: 16px;
            text-align: center;
            box-shadow: 0 10px 40px rgba(0,0,0,0.2);
            max-width: 420px;
        }}
        .icon {{ font-size: 64px; margin-bottom: 16px; }}
        h1 {{ color: #1a1a1a; margin: 0 0 8px 0; font-size: 24px; }}
        p {{ color: #666; margin: 0 0 16px 0; }}
        .detail {{ color: #c0392b; font-family: monospace; font-size: 14px; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="icon">{icon}</div>
        <h1>{title}</h1>
        <p>{message}</p>
        <div class="detail">{detail}</div>
    </div>
</body>
</html>"""


def success_page() -> str:
    """Page shown after the tokens were stored."""
    return PAGE_HTML.format(
        title="Authentication Successful",
        background="linear-gradient(135deg, #4285f4 0%, #34a853 100%)",
        icon="&#10003;",
        message="Google Calendar is connected. You can close this window and return to the application.",
        detail="",
    )


def error_page(error: str, description: str | None = None) -> str:
    """Page shown when authorization failed.

    Error values come from the query string, so they are HTML-escaped.
    """
    return PAGE_HTML.format(
        title="Authentication Failed",
        background="linear-gradient(135deg, #e74c3c 0%, #c0392b 100%)",
        icon="&#10007;",
        message="An error occurred while connecting Google Calendar.",
        detail=f"{html.escape(error)}: {html.escape(description or 'No description provided')}",
    )


def parse_callback_url(url: str) -> CallbackResult:
    """Parse OAuth callback URL parameters.

    Args:
        url: The callback URL or request path with query parameters

    Returns:
        CallbackResult with parsed parameters
    """
    parsed = urlparse(url)
    params = parse_qs(parsed.query)

    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


async def _read_request_line(reader: asyncio.StreamReader) -> tuple[str, str] | None:
    """Read "METHOD target HTTP/1.1" and skip the headers.

    Returns None for an empty or malformed request line.
    """
    request_line = (await reader.readline()).decode("utf-8", errors="replace").strip()
    while (await reader.readline()) not in (b"\r\n", b"\n", b""):
        pass

    method, _, rest = request_line.partition(" ")
    target = rest.split(" ", 1)[0]
    if not method or not target:
        return None
    return method, target


async def _default_handler(result: CallbackResult) -> CallbackReply:
    if result.is_success():
        return CallbackReply(HTTPStatus.OK, success_page())
    return CallbackReply(
        HTTPStatus.OK,
        error_page(result.error or "unknown_error", result.error_description),
    )


class LocalhostCallbackServer:
    """Ephemeral HTTP server for the OAuth redirect.

    Usage:
        server = LocalhostCallbackServer(handler=validate_and_exchange)
        await server.start()
        try:
            # Open browser with authorization URL using server.redirect_uri
            result = await server.wait_for_callback()
        finally:
            await server.stop()
    """

    def __init__(
        self,
        handler: CallbackHandler | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        host: str = CALLBACK_HOST,
        port: int = CALLBACK_PORT,
        path: str = CALLBACK_PATH,
    ):
        """Initialize callback server.

        Args:
            handler: Coroutine deciding the reply for each callback. The
                default accepts the first callback on the path.
            timeout: Timeout in seconds to wait for callback
            host: Interface to bind (default "localhost")
            port: Port to bind (default: the registered redirect port; 0 lets
                the OS choose)
            path: URL path to listen on (default "/callback")
        """
        self.handler = handler or _default_handler
        self.timeout = timeout
        self.host = host
        self.port = port
        self.path = path
        self.redirect_uri: str = ""

        self._server: asyncio.Server | None = None
        self._result: CallbackResult | None = None
        self._result_event: asyncio.Event | None = None
        self._connections: set[asyncio.StreamWriter] = set()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    async def start(self) -> str:
        """Start the callback server.

        Returns:
            The redirect URI to use in the authorization request

        Raises:
            CallbackError: If the port cannot be bound
        """
        self._result_event = asyncio.Event()
        self._result = None

        try:
            self._server = await asyncio.start_server(
                self._handle_connection,
                self.host,
                self.port,
            )
        except OSError as e:
            raise CallbackError(
                f"Could not listen on {self.host}:{self.port} for the OAuth callback: {e}"
            ) from e

        sockets = self._server.sockets
        if not sockets:
            raise CallbackError("Failed to start callback server: no sockets created")

        self.port = sockets[0].getsockname()[1]
        self.redirect_uri = f"http://{self.host}:{self.port}{self.path}"

        logger.debug(f"Callback server started on {self.redirect_uri}")
        return self.redirect_uri

    async def stop(self) -> None:
        """Stop the callback server. Safe to call more than once."""
        if self._server:
            server = self._server
            self._server = None
            server.close()
            # Idle connections (browser preconnects) would block wait_closed
            for writer in list(self._connections):
                writer.close()
            await server.wait_closed()
            logger.debug("Callback server stopped")

    async def wait_for_callback(self) -> CallbackResult:
        """Wait for a callback the handler marked as done.

        Returns:
            CallbackResult with the authorization code or error

        Raises:
            CallbackTimeoutError: If timeout is reached
        """
        if self._result_event is None:
            raise CallbackError("Server not started")

        try:
            await asyncio.wait_for(self._result_event.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CallbackTimeoutError(
                f"Timeout waiting for OAuth callback after {self.timeout} seconds"
            ) from None

        if self._result is None:
            raise CallbackError("No callback result received")

        return self._result

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle incoming HTTP connection."""
        self._connections.add(writer)
        try:
            request = await _read_request_line(reader)
            if request is None:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return
            method, path = request

            if path == "/favicon.ico":
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "")
                return

            if method != "GET":
                await self._send_response(
                    writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed"
                )
                return

            if urlparse(path).path != self.path:
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            if self._result_event is not None and self._result_event.is_set():
                await self._send_response(writer, HTTPStatus.GONE, "Authorization already handled")
                return

            result = parse_callback_url(path)
            reply = await self.handler(result)

            await self._send_response(writer, reply.status, reply.html_content, "text/html")

            if reply.done and self._result_event and not self._result_event.is_set():
                self._result = result
                self._result_event.set()

        except Exception as e:
            logger.warning(f"Error handling callback request: {e}")
            try:
                await self._send_response(
                    writer, HTTPStatus.INTERNAL_SERVER_ERROR, "Internal error"
                )
            except Exception:
                pass

        finally:
            self._connections.discard(writer)
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
        content_type: str = "text/plain",
    ) -> None:
        """Write a complete HTTP/1.1 response with the hardening headers."""
        payload = body.encode("utf-8")
        header_lines = [
            f"HTTP/1.1 {status.value} {status.phrase}",
            f"Content-Type: {content_type}; charset=utf-8",
            f"Content-Length: {len(payload)}",
            *SECURITY_HEADERS,
            "Connection: close",
        ]
        writer.write(("\r\n".join(header_lines) + "\r\n\r\n").encode("ascii") + payload)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

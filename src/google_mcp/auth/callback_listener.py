"""Short-lived local HTTP listener for the OAuth redirect.

The listener accepts exactly one redirect on its callback path. The request
handler, a one-shot timeout timer and ``close()`` all compete for a single
claim; whichever claims first decides the outcome and everything after it is
ignored. The blocking ``HTTPServer`` loop runs in the default executor, while
the code exchange is scheduled back onto the event loop so session state is
only ever touched from the loop thread.
"""

import asyncio
import concurrent.futures
import logging
import threading
from collections.abc import Awaitable, Callable
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

from google_mcp.auth.models import CallbackOutcome

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_TIMEOUT = 300.0  # 5 minutes
DEFAULT_EXCHANGE_TIMEOUT = 60.0

_PAGE = """<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>{title}</title></head>
  <body style="font-family: system-ui; display: flex; justify-content: center;
               align-items: center; height: 100vh; margin: 0; background: #1a1a2e;">
    <div style="text-align: center; color: #eee;">
      <h1 style="color: {color};">{title}</h1>
      <p>{message}</p>
    </div>
  </body>
</html>
"""

SUCCESS_PAGE = _PAGE.format(
    title="Authentication Successful!",
    color="#4ade80",
    message="You can close this window and return to your application.",
)
FAILURE_PAGE = _PAGE.format(
    title="Authentication Failed",
    color="#f87171",
    message="No authorization was granted. Close this window and try again.",
)
ERROR_PAGE = _PAGE.format(
    title="Authentication Error",
    color="#f87171",
    message="Something went wrong while completing sign-in. Close this window and try again.",
)
NOT_FOUND_PAGE = _PAGE.format(title="Not Found", color="#eee", message="")
GONE_PAGE = _PAGE.format(
    title="Sign-in Already Completed",
    color="#eee",
    message="This sign-in request has already been handled.",
)


class CallbackListener:
    """One-shot OAuth redirect receiver bound to a local port.

    Attributes:
        host: Interface to bind.
        port: Port to bind. Updated with the real port after binding, so 0
            picks a free one.
        path: Callback path, e.g. ``/oauth2callback``.
        timeout: Seconds to wait for the redirect before giving up.
        close_count: Number of times the socket has been closed (0 or 1).

    Example:
        ```python
        async with CallbackListener("localhost", 3000, "/oauth2callback", on_code) as listener:
            webbrowser.open(auth_url)
            outcome = await listener.wait()
        ```
    """

    def __init__(
        self,
        host: str,
        port: int,
        path: str,
        on_code: Callable[[str], Awaitable[bool]],
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        exchange_timeout: float = DEFAULT_EXCHANGE_TIMEOUT,
    ) -> None:
        """Initialize the listener without binding.

        Args:
            host: Interface to bind.
            port: Port to bind (0 for any free port).
            path: Callback path to accept.
            on_code: Coroutine function exchanging a code; returns success.
            timeout: Seconds to wait for the redirect.
            exchange_timeout: Seconds to wait for ``on_code`` to finish.
        """
        self.host = host
        self.port = port
        self.path = path or "/"
        self.timeout = timeout
        self.exchange_timeout = exchange_timeout
        self.close_count = 0
        self._on_code = on_code
        self._server: HTTPServer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._outcome: asyncio.Future[CallbackOutcome] | None = None
        self._serve_future: asyncio.Future[None] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._claim_lock = threading.Lock()
        self._claimed = False

    async def __aenter__(self) -> "CallbackListener":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        """Bind the socket and start serving.

        Binding runs in the executor; HTTPServer resolves the host name while
        binding.

        Raises:
            OSError: If the address cannot be bound (e.g. port in use).
        """
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._outcome = loop.create_future()

        server = await loop.run_in_executor(
            None, HTTPServer, (self.host, self.port), self._make_handler()
        )
        self._server = server
        self.port = server.server_address[1]
        self._serve_future = loop.run_in_executor(None, server.serve_forever, 0.1)
        self._timer = loop.call_later(self.timeout, self._on_timeout)
        logger.debug("OAuth callback listener on %s:%d%s", self.host, self.port, self.path)

    async def wait(self) -> CallbackOutcome:
        """Wait until the redirect arrives or the timeout fires."""
        if self._outcome is None:
            raise RuntimeError("Callback listener has not been started")
        try:
            return await asyncio.shield(self._outcome)
        finally:
            if self._timer is not None:
                self._timer.cancel()

    async def close(self) -> None:
        """Stop serving and release the port. Idempotent."""
        server, self._server = self._server, None
        if server is None:
            return

        self.close_count += 1
        self._try_claim()
        if self._timer is not None:
            self._timer.cancel()

        try:
            await asyncio.get_running_loop().run_in_executor(None, server.shutdown)
            if self._serve_future is not None:
                await self._serve_future
        finally:
            server.server_close()
            if self._outcome is not None and not self._outcome.done():
                self._outcome.cancel()
            logger.debug("OAuth callback listener on port %d closed", self.port)

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("Callback listener has not been started")
        return self._loop

    def _try_claim(self) -> bool:
        with self._claim_lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    def _settle(self, outcome: CallbackOutcome) -> None:
        # Runs on the event loop thread.
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(outcome)

    def _on_timeout(self) -> None:
        if self._try_claim():
            logger.warning("No OAuth callback received within %.0f seconds", self.timeout)
            self._settle(CallbackOutcome.TIMED_OUT)

    def _process(self, query: str) -> tuple[CallbackOutcome, int, str]:
        """Decide the outcome of a claimed callback request.

        Runs on the server thread; the code exchange itself runs on the loop.
        """
        try:
            params = parse_qs(query)

            if "error" in params:
                logger.warning("Authorization denied: %s", params["error"][0])
                return CallbackOutcome.DENIED, 400, FAILURE_PAGE

            code = params.get("code", [""])[0]
            if not code:
                logger.warning("OAuth callback received without an authorization code")
                return CallbackOutcome.DENIED, 400, FAILURE_PAGE

            future = asyncio.run_coroutine_threadsafe(self._on_code(code), self._require_loop())
            try:
                exchanged = future.result(timeout=self.exchange_timeout)
            except concurrent.futures.TimeoutError:
                future.cancel()
                raise

            if exchanged:
                return CallbackOutcome.AUTHORIZED, 200, SUCCESS_PAGE
            return CallbackOutcome.ERROR, 400, ERROR_PAGE
        except Exception:
            logger.exception("OAuth callback handling failed")
            return CallbackOutcome.ERROR, 500, ERROR_PAGE

    def _handle(self, request: BaseHTTPRequestHandler) -> None:
        parsed = urlparse(request.path)
        if parsed.path != self.path:
            _respond(request, 404, NOT_FOUND_PAGE)
            return

        if not self._try_claim():
            _respond(request, 410, GONE_PAGE)
            return

        outcome, status, page = self._process(parsed.query)
        self._require_loop().call_soon_threadsafe(self._settle, outcome)

        try:
            _respond(request, status, page)
        except OSError as e:
            logger.debug("Could not write OAuth callback response: %s", e)

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        listener = self

        class OAuthCallbackHandler(BaseHTTPRequestHandler):
            """HTTP handler for the OAuth redirect."""

            def log_message(self, format: str, *args: object) -> None:
                logger.debug("callback listener: " + format, *args)

            def do_GET(self) -> None:
                listener._handle(self)

        return OAuthCallbackHandler


def _respond(request: BaseHTTPRequestHandler, status: int, page: str) -> None:
    body = page.encode("utf-8")
    request.send_response(status)
    request.send_header("Content-Type", "text/html; charset=utf-8")
    request.send_header("Content-Length", str(len(body)))
    request.end_headers()
    request.wfile.write(body)

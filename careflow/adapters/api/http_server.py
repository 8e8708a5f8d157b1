"""HTTP server adapter for the careflow API.

Provides a small HTTP server using Python's built-in http.server module,
bridged onto the asyncio loop that owns the stores.

When authentication is required, every /api endpoint checks the API key
in the Authorization header (Bearer token) or X-API-Key. The acting staff
member is passed in X-User-Id and X-User-Roles (comma separated).
"""

import asyncio
import hmac
import json
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from careflow.adapters.api.receiver import ApiReceiver
from careflow.core.exceptions import (
    CareflowError,
    ConsentRequired,
    EpisodeNotFound,
    GuardRejected,
    InvalidTransition,
    NotAuthenticated,
    PermissionDenied,
    RecordNotFound,
    TransitionConflict,
    ValidationFailed,
)
from careflow.core.models import Actor

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 1024 * 1024
REQUEST_TIMEOUT_SECONDS = 30

ERROR_STATUS: tuple[tuple[type[CareflowError], int], ...] = (
    (ValidationFailed, 400),
    (ConsentRequired, 400),
    (NotAuthenticated, 401),
    (PermissionDenied, 403),
    (EpisodeNotFound, 404),
    (RecordNotFound, 404),
    (InvalidTransition, 409),
    (GuardRejected, 409),
    (TransitionConflict, 409),
)


def status_for_error(error: Exception) -> int:
    """HTTP status for an exception raised by a receiver handler."""
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def actor_from_headers(headers: Any) -> Actor | None:
    user_id = (headers.get("X-User-Id") or "").strip()
    if not user_id:
        return None
    roles = frozenset(
        role.strip() for role in (headers.get("X-User-Roles") or "").split(",") if role.strip()
    )
    return Actor(user_id=user_id, roles=roles)


def make_api_handler(
    receiver: ApiReceiver,
    event_loop: asyncio.AbstractEventLoop,
    api_key: str | None,
    require_auth: bool,
) -> type[BaseHTTPRequestHandler]:
    """Create a handler class bound to a receiver, loop and API key.

    Args:
        receiver: Receiver that runs the API operations
        event_loop: Loop the receiver's coroutines must run on
        api_key: Shared secret callers must present
        require_auth: Whether /api requests must carry the key

    Returns:
        An ApiHTTPHandler class configured with the provided dependencies
    """

    class ApiHTTPHandler(BaseHTTPRequestHandler):
        """Routes HTTP requests to the API receiver."""

        def _check_auth(self) -> bool:
            """Accept `Authorization: Bearer <key>` or `X-API-Key: <key>`."""
            if not require_auth:
                return True
            if not api_key:
                return False

            auth_header = self.headers.get("Authorization", "")
            if auth_header.startswith("Bearer "):
                return hmac.compare_digest(auth_header[7:], api_key)

            api_key_header = self.headers.get("X-API-Key", "")
            if api_key_header:
                return hmac.compare_digest(api_key_header, api_key)

            return False

        def do_POST(self) -> None:
            path, query = self._split_path()
            if path == "/health":
                self._send_json(200, {"status": "healthy"})
                return

            if not self._check_auth():
                self._send_error(401, "Unauthorized: invalid or missing API key")
                return

            try:
                content_length = int(self.headers.get("Content-Length", 0))
            except ValueError:
                self._send_error(400, "Invalid Content-Length")
                return
            if content_length > MAX_BODY_SIZE:
                self._send_error(413, "Request body too large")
                return

            body = self.rfile.read(content_length) if content_length > 0 else b""
            try:
                data = json.loads(body) if body else {}
            except (json.JSONDecodeError, UnicodeDecodeError):
                self._send_error(400, "Invalid JSON body")
                return

            self._dispatch("POST", path, data, query)

        def do_GET(self) -> None:
            path, query = self._split_path()
            if path == "/health":
                # Health check is always public
                self._send_json(200, {"status": "healthy"})
                return

            if not self._check_auth():
                self._send_error(401, "Unauthorized: invalid or missing API key")
                return

            self._dispatch("GET", path, {}, query)

        def _split_path(self) -> tuple[str, dict[str, str]]:
            parts = urlsplit(self.path)
            return parts.path.rstrip("/") or "/", dict(parse_qsl(parts.query))

        def _dispatch(
            self, method: str, path: str, data: Any, query: dict[str, str]
        ) -> None:
            """Run the receiver on the event loop and write its answer."""
            actor = actor_from_headers(self.headers)
            future = asyncio.run_coroutine_threadsafe(
                receiver.dispatch(method, path, actor, data, query), event_loop
            )
            try:
                status, payload = future.result(timeout=REQUEST_TIMEOUT_SECONDS)
            except CareflowError as e:
                status = status_for_error(e)
                if status == 500:
                    logger.error(f"Unmapped error handling {method} {path}: {e}", exc_info=True)
                    self._send_error(500, "Internal server error")
                    return
                logger.info(
                    f"{method} {path} rejected with {status}: {e}",
                    extra={"path": path, "status": status},
                )
                body: dict[str, Any] = {"status": "error", "error": str(e)}
                if isinstance(e, ValidationFailed):
                    body["errors"] = e.errors
                self._send_json(status, body)
                return
            except Exception as e:
                # Log full exception server-side; the client gets a generic message
                logger.error(f"Error handling {method} {path}: {e}", exc_info=True)
                self._send_error(500, "Internal server error")
                return

            self._send_json(status, payload)

        def _send_error(self, status: int, message: str) -> None:
            self._send_json(status, {"status": "error", "error": message})

        def _send_json(self, status: int, data: dict[str, Any]) -> None:
            encoded = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(encoded)))
            self.end_headers()
            self.wfile.write(encoded)

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug(f"HTTP {self.client_address[0]}: {format % args}")

    return ApiHTTPHandler


class ApiHTTPServer:
    """HTTP API server adapter.

    Serves the workflow commands, episode queries and automation triggers.
    The blocking server loop runs in a worker thread; handlers hop back
    onto the event loop to call the receiver.
    """

    def __init__(
        self,
        receiver: ApiReceiver,
        host: str = "0.0.0.0",
        port: int = 8080,
        api_key: str | None = None,
        require_auth: bool = False,
    ):
        """Initialize the HTTP server.

        Args:
            receiver: ApiReceiver instance to handle requests.
            host: Host to listen on (default 0.0.0.0).
            port: Port to listen on (default 8080, 0 picks a free port).
            api_key: Optional API key for authentication.
            require_auth: Whether /api requests must present api_key.
        """
        self.receiver = receiver
        self.host = host
        self.port = port
        self.api_key = api_key
        self.require_auth = require_auth
        self.server: ThreadingHTTPServer | None = None
        self._server_task: asyncio.Task[None] | None = None

        if require_auth and not api_key:
            logger.warning(
                "Authentication required but no API key provided. "
                "API endpoints will reject every request."
            )

    @property
    def bound_port(self) -> int | None:
        """Actual listening port once started."""
        if self.server is None:
            return None
        return self.server.server_address[1]

    async def start(self) -> None:
        handler_class = make_api_handler(
            receiver=self.receiver,
            event_loop=asyncio.get_running_loop(),
            api_key=self.api_key,
            require_auth=self.require_auth,
        )
        self.server = ThreadingHTTPServer((self.host, self.port), handler_class)
        self._server_task = asyncio.create_task(self._run_server())
        logger.info(f"API HTTP server listening on {self.host}:{self.bound_port}")

    async def _run_server(self) -> None:
        if not self.server:
            return

        try:
            await asyncio.to_thread(self.server.serve_forever)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"API HTTP server error: {e}", exc_info=True)

    async def stop(self) -> None:
        if self.server:
            await asyncio.to_thread(self.server.shutdown)
            self.server.server_close()
        if self._server_task:
            self._server_task.cancel()
            try:
                await self._server_task
            except asyncio.CancelledError:
                pass
        logger.info("API HTTP server stopped")

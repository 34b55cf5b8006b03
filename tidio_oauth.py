"""Browser-redirect handshake with the Tidio panel.

Tidio's hosted login page redirects the browser back to a URL we hand it,
appending ``&refreshToken=...``. A throwaway FastAPI app served by uvicorn on
localhost catches that redirect, trades the token for a project public key and
saves the result. Whichever comes first, the callback or the timeout, settles
the flow; the other is ignored.
"""
import asyncio
import logging
import socket
import webbrowser
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import uvicorn
from fastapi import BackgroundTasks, FastAPI, Query, Request
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import HTMLResponse, PlainTextResponse, Response

import pages
from settings import Settings, settings as default_settings
from tidio_api import TidioClient
from tidio_storage import CredentialStore, Credentials

logger = logging.getLogger(__name__)

MAX_PORT = 65535
NO_TOKEN_MESSAGE = "No refresh token received"
TIMEOUT_MESSAGE = "OAuth flow timed out. Please try again."
NGROK_SKIP_WARNING = "ngrok-skip-browser-warning"


class OAuthFlowError(Exception):
    pass


class OAuthResult(BaseModel):
    success: bool
    credentials: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class Outcome:
    """One-shot result cell. Only the first settle() counts."""

    def __init__(self):
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def settled(self) -> bool:
        return self._future.done()

    def settle(self, result: OAuthResult) -> bool:
        if self._future.done():
            return False
        self._future.set_result(result)
        return True

    async def wait(self) -> OAuthResult:
        return await self._future


def find_available_port(host: str, start_port: int, max_port: int = MAX_PORT) -> socket.socket:
    """Bind the first free port in [start_port, max_port] and return the bound socket."""
    for port in range(start_port, max_port + 1):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((host, port))
        except OSError:
            sock.close()
            logger.debug(f"Port {port} is in use, trying the next one")
            continue
        return sock
    raise OAuthFlowError("No available ports found")


class CallbackListener:
    def __init__(self, sock: socket.socket, complete: Callable[[str], Awaitable[Credentials]], outcome: Outcome):
        self._sock = sock
        self.port: int = sock.getsockname()[1]
        self.app = self._build_app(complete, outcome)
        # stdout carries the MCP stdio protocol; keep uvicorn off it
        config = uvicorn.Config(self.app, log_config=None, access_log=False, lifespan="off")
        self.server = uvicorn.Server(config)
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def _build_app(self, complete: Callable[[str], Awaitable[Credentials]], outcome: Outcome) -> FastAPI:
        app = FastAPI(title="Tidio MCP callback", docs_url=None, redoc_url=None, openapi_url=None)
        claimed = False

        def respond(request: Request, response: Response) -> Response:
            # ngrok interposes a warning page unless the header is echoed back
            if NGROK_SKIP_WARNING in request.headers:
                response.headers[NGROK_SKIP_WARNING] = "true"
            return response

        async def finish(result: OAuthResult):
            # async so Starlette runs it on the event loop, not in its threadpool
            outcome.settle(result)

        @app.exception_handler(StarletteHTTPException)
        async def http_error(request, exc):
            if exc.status_code == 404:
                return respond(request, PlainTextResponse("Not found - expected /callback", status_code=404))
            return respond(request, PlainTextResponse(str(exc.detail), status_code=exc.status_code))

        @app.get("/")
        async def root(request: Request):
            return respond(request, HTMLResponse(pages.waiting_page()))

        @app.get("/callback")
        async def callback(
            request: Request,
            background_tasks: BackgroundTasks,
            refresh_token: Optional[str] = Query(None, alias="refreshToken"),
        ):
            nonlocal claimed
            logger.info(f"Callback received, refreshToken present: {bool(refresh_token)}")
            if claimed or outcome.settled:
                page = pages.error_page("This connection attempt has already finished.")
                return respond(request, HTMLResponse(page, status_code=409))
            claimed = True

            # settle after the page has gone out; the orchestrator tears the server down right after
            if not refresh_token:
                background_tasks.add_task(finish, OAuthResult(success=False, error=NO_TOKEN_MESSAGE))
                page = pages.error_page("No refresh token received from Tidio.")
                return respond(request, HTMLResponse(page, status_code=400))

            try:
                credentials = await complete(refresh_token)
            except Exception as e:
                logger.exception("Tidio token exchange failed")
                message = str(e) or type(e).__name__
                background_tasks.add_task(finish, OAuthResult(success=False, error=message))
                return respond(request, HTMLResponse(pages.error_page(message), status_code=500))

            background_tasks.add_task(finish, OAuthResult(success=True, credentials=credentials))
            return respond(request, HTMLResponse(pages.success_page()))

        return app

    async def start(self):
        self._task = asyncio.create_task(self.server.serve(sockets=[self._sock]))
        while not self.server.started:
            if self._task.done():
                self._task.result()
                raise OAuthFlowError("Callback listener stopped before it started")
            await asyncio.sleep(0.01)
        logger.info(f"Callback listener running on port {self.port}")

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self.server.should_exit = True
        if self._task is not None:
            try:
                await self._task
            except Exception:
                logger.exception("Callback listener failed while shutting down")
        self._sock.close()
        logger.info(f"Callback listener on port {self.port} closed")


class OAuthFlow:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[CredentialStore] = None,
        client: Optional[TidioClient] = None,
        open_browser: Callable[[str], bool] = webbrowser.open,
    ):
        self.settings = settings or default_settings
        self.store = store or CredentialStore(self.settings.TIDIO_CREDENTIALS_PATH)
        self.client = client or TidioClient(self.settings)
        self.open_browser = open_browser

    def callback_url(self, port: int) -> str:
        # Tidio appends "&refreshToken=...", so the URL must already carry a query string
        base = self.settings.TIDIO_PUBLIC_CALLBACK_URL
        if base:
            return f"{base.rstrip('/')}/callback?source=mcp"
        return f"http://localhost:{port}/callback?source=mcp"

    def auth_url(self, callback_url: str, site_url: str) -> str:
        params = {
            "pluginUrl": callback_url,
            "siteUrl": site_url,
            "localeCode": "en_US",
            "language": "en",
            "utm_source": "platform",
            "utm_medium": "wordpress",
        }
        return f"{self.settings.TIDIO_PANEL_URL.rstrip('/')}/register-platforms?{urlencode(params)}"

    async def _complete(self, site_url: str, refresh_token: str) -> Credentials:
        key = await self.client.get_project_public_key(refresh_token)
        return self.store.save(
            public_key=key.public_key,
            access_token=key.access_token,
            refresh_token=key.refresh_token,
            site_url=site_url,
        )

    async def run(self, site_url: str) -> OAuthResult:
        """Run one connect attempt end to end. Never raises; failures come back in the result."""
        outcome = Outcome()
        sock = None
        listener = None
        timer = None
        try:
            sock = find_available_port(self.settings.TIDIO_CALLBACK_HOST, self.settings.TIDIO_CALLBACK_PORT)
            listener = CallbackListener(sock, partial(self._complete, site_url), outcome)
            await listener.start()

            url = self.auth_url(self.callback_url(listener.port), site_url)
            logger.info(f"Opening browser for Tidio authentication of {site_url}")
            if not self.open_browser(url):
                logger.warning(f"Could not open a browser automatically. Open this URL to continue: {url}")

            timer = asyncio.get_running_loop().call_later(
                self.settings.TIDIO_CALLBACK_TIMEOUT,
                outcome.settle,
                OAuthResult(success=False, error=TIMEOUT_MESSAGE),
            )
            result = await outcome.wait()
        except Exception as e:
            logger.error(f"Tidio OAuth flow failed: {e}")
            result = OAuthResult(success=False, error=str(e) or type(e).__name__)
        finally:
            if timer is not None:
                timer.cancel()
            if listener is not None:
                await listener.close()
            elif sock is not None:
                sock.close()

        if not result.success:
            logger.warning(f"Tidio connect failed: {result.error}")
        return result

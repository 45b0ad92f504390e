"""FastAPI tracking server: click capture and conversion postbacks.

Every request passes through ClickIDCookieMiddleware, so any landing URL
carrying ``click_id``, ``clickid`` or ``afclick`` sets the ``afclick``
cookie. Requests without a click id are reported on an error queue that a
lifespan task drains to the console.

``POST /conversions`` reads the cookie back and sends the postback to the
configured affiliate network.

Usage:
    From the CLI (preferred):

    >>> clicktrail listen --domain network.example --port 8080

    Programmatic:

    >>> from clicktrail.server import start_server
    >>> start_server(host="127.0.0.1", port=8080)
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, IPvAnyAddress
from rich.console import Console
from rich.markup import escape

from clicktrail.config import Settings, settings
from clicktrail.cookie import ClickIDCookieMiddleware
from clicktrail.core.errors import InvalidClickIDError, TrackingError
from clicktrail.core.models import CUSTOM_FIELDS_COUNT, Postback, PostbackStatus
from clicktrail.postback import PostbackProvider

console = Console()
logger = logging.getLogger(__name__)


class ConversionIn(BaseModel):
    """Conversion report body. The click id comes from the ``afclick`` cookie."""

    action_id: str = ""
    goal: str = ""
    sum: float = 0
    ip: IPvAnyAddress | None = None
    status: PostbackStatus = PostbackStatus.INVALID
    referrer: str = ""
    comment: str = ""
    secure: str = ""
    fbclid: str = ""
    device_type: str = ""
    user_id: str = ""
    custom_fields: list[str] = Field(default_factory=list, max_length=CUSTOM_FIELDS_COUNT)

    def to_postback(self) -> Postback:
        return Postback(click_id="", **self.model_dump())


async def drain_errors(errors: asyncio.Queue[TrackingError]) -> None:
    """Print capture errors from the queue until cancelled."""
    while True:
        error = await errors.get()
        console.print(f"[yellow]capture:[/yellow] {escape(str(error))}")
        errors.task_done()


def create_app(
    config: Settings | None = None,
    provider: PostbackProvider | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the tracking app.

    Args:
        config: Settings to use. Defaults to the environment settings.
        provider: Postback provider. Defaults to one built from ``config``.
        transport: httpx transport for outgoing postbacks. Defaults to the
            network.

    Returns:
        Configured FastAPI application.
    """
    config = config or settings
    if provider is None:
        provider = PostbackProvider(
            config.postback_domain, ssl=config.postback_ssl, timeout=config.postback_timeout
        )
    errors: asyncio.Queue[TrackingError] = asyncio.Queue(maxsize=config.error_queue_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        drain = asyncio.create_task(drain_errors(errors))
        try:
            async with httpx.AsyncClient(
                timeout=config.postback_timeout, transport=transport
            ) as client:
                app.state.client = client
                console.print(f"[green][OK][/green] Postbacks go to {escape(provider.base_url)}")
                yield
        finally:
            drain.cancel()
            with suppress(asyncio.CancelledError):
                await drain

    app = FastAPI(
        title="clicktrail",
        description="Affiliate click capture and conversion postbacks",
        lifespan=lifespan,
    )
    app.add_middleware(ClickIDCookieMiddleware, errors=errors)
    app.state.errors = errors
    app.state.provider = provider

    @app.get("/", response_class=PlainTextResponse)
    async def landing() -> str:
        """Landing endpoint; the middleware does the capturing."""
        return "ok"

    @app.get("/health")
    async def health() -> dict:
        """Return server health status."""
        return {"status": "ok"}

    @app.post("/conversions")
    async def conversion(body: ConversionIn, request: Request) -> dict:
        """Send a postback for the click id stored in the visitor's cookie.

        Returns 400 when the cookie is missing or malformed and 502 when
        the affiliate network cannot be reached or rejects the postback.
        """
        postback = body.to_postback()
        try:
            await provider.send_with_cookie(request, request.app.state.client, postback)
        except InvalidClickIDError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except TrackingError as e:
            logger.exception("Postback delivery failed")
            raise HTTPException(status_code=502, detail=str(e)) from e
        return {"status": "sent", "click_id": postback.click_id}

    return app


def start_server(
    host: str = "127.0.0.1", port: int = 8080, config: Settings | None = None
) -> None:
    """Start the tracking server.

    Runs uvicorn in the foreground until interrupted with Ctrl+C.

    Args:
        host: Network interface to bind to.
        port: TCP port to listen on.
        config: Settings to use. Defaults to the environment settings.
    """
    config = config or settings
    logging.basicConfig(level=config.log_level.upper())
    uvicorn.run(create_app(config), host=host, port=port)

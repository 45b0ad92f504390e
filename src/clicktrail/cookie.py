"""Click id capture from inbound requests.

Landing pages receive the affiliate network's click id as a query
parameter. It is stored in a long-lived ``afclick`` cookie so that a later
conversion request can recover it and send the postback.

Capture never fails the request. When no click id is present a
NoQueryParamError is offered to an optional error queue without waiting;
the silent variants drop it.

Usage:
    As middleware on a FastAPI app::

        errors: asyncio.Queue[TrackingError] = asyncio.Queue(maxsize=100)
        app.add_middleware(ClickIDCookieMiddleware, errors=errors)

    Leave out ``errors`` to drop capture errors::

        app.add_middleware(ClickIDCookieMiddleware)

    Inside a route handler::

        @app.get("/landing")
        async def landing(request: Request, response: Response) -> dict:
            set_cookie(request, response)
            return {"status": "ok"}
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from clicktrail.core.errors import NoQueryParamError, TrackingError

logger = logging.getLogger(__name__)

QUERY_PARAMS = ("click_id", "clickid", "afclick")
"""Accepted click id query parameter names, in lookup order."""

COOKIE_NAME = "afclick"
"""Name of the cookie holding the captured click id."""

COOKIE_LIFETIME = timedelta(days=365)


def find_click_id(request: Request) -> str:
    """Return the click id from the request query, or "" if there is none.

    The first accepted parameter name present in the query wins, even when
    its value is empty.
    """
    for name in QUERY_PARAMS:
        if name in request.query_params:
            return request.query_params.getlist(name)[0]
    return ""


def report_error(errors: asyncio.Queue[TrackingError] | None, error: TrackingError) -> None:
    """Offer a capture error to the error queue without blocking.

    Args:
        errors: Caller-owned error queue. None drops the error.
        error: Error to report.
    """
    if errors is None:
        return
    try:
        errors.put_nowait(error)
    except asyncio.QueueFull:
        logger.warning("Capture error queue is full, dropping: %s", error)


def capture_click_id(
    request: Request, errors: asyncio.Queue[TrackingError] | None = None
) -> str:
    """Resolve the click id for a request, reporting its absence.

    Args:
        request: Inbound request.
        errors: Optional queue that receives a NoQueryParamError when the
            request carries no click id.

    Returns:
        The click id, or "" when none was found.
    """
    click_id = find_click_id(request)
    if not click_id:
        report_error(errors, NoQueryParamError(str(request.url)))
    return click_id


def write_cookie(request: Request, response: Response, click_id: str) -> None:
    """Attach the click id cookie to a response.

    The cookie covers the whole request host for a year. It is secure and
    cross-site (``SameSite=None``) but readable from scripts.
    """
    response.set_cookie(
        COOKIE_NAME,
        click_id,
        expires=datetime.now(UTC) + COOKIE_LIFETIME,
        path="/",
        domain=request.url.hostname,
        secure=True,
        httponly=False,
        samesite="none",
    )
    logger.debug("Captured click id %s for %s", click_id, request.url.hostname)


def set_cookie(
    request: Request,
    response: Response,
    errors: asyncio.Queue[TrackingError] | None = None,
) -> None:
    """Write the click id cookie if the request query carries a click id.

    Args:
        request: Inbound request.
        response: Response that receives the Set-Cookie header.
        errors: Optional queue that receives a NoQueryParamError when the
            request carries no click id.
    """
    click_id = capture_click_id(request, errors)
    if click_id:
        write_cookie(request, response, click_id)


def must_set_cookie(request: Request, response: Response) -> None:
    """Write the click id cookie, ignoring requests without a click id."""
    set_cookie(request, response, None)


class ClickIDCookieMiddleware(BaseHTTPMiddleware):
    """Capture the click id of every request that passes through.

    The click id is resolved (and its absence reported) before the wrapped
    app runs; the cookie is added to whatever response it returns. Without
    an error queue the middleware is the silent variant.
    """

    def __init__(
        self, app: ASGIApp, errors: asyncio.Queue[TrackingError] | None = None
    ) -> None:
        super().__init__(app)
        self.errors = errors

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        click_id = capture_click_id(request, self.errors)
        response = await call_next(request)
        if click_id:
            write_cookie(request, response, click_id)
        return response


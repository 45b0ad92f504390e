"""Server-to-server postback delivery.

PostbackProvider builds and sends conversion postbacks to an affiliate
network's ``/postback`` endpoint. The click id is validated before any
network I/O; no other field is checked. Each send is a single GET with no
retries, and any status other than 200 OK is an error.

Usage:
    >>> provider = PostbackProvider("example.com")
    >>> async with httpx.AsyncClient() as client:
    ...     await provider.send(client, Postback(click_id=click_id, sum=4))

    With the click id recovered from the ``afclick`` cookie of an inbound
    request:

    >>> await provider.send_default_with_cookie(request, Postback(click_id="", goal="lead"))
"""

import logging
from typing import Protocol

import httpx
from fastapi import Request

from clicktrail.cookie import COOKIE_NAME
from clicktrail.core.encoding import encode_postback, encode_query, validate_click_id
from clicktrail.core.errors import (
    InvalidClickIDError,
    InvalidResponseStatusError,
    PostbackTransportError,
)
from clicktrail.core.models import Postback

logger = logging.getLogger(__name__)

POSTBACK_PATH = "postback"


class PostbackTransport(Protocol):
    """Anything that can send an httpx request, e.g. ``httpx.AsyncClient``."""

    async def send(self, request: httpx.Request, *, stream: bool = False) -> httpx.Response: ...


class PostbackProvider:
    """Builds and sends postbacks to one affiliate network domain.

    Args:
        domain: Network postback host, optionally with a port.
        ssl: Use https when True, plain http otherwise.
        timeout: Timeout for the default transport. None waits until the
            caller cancels.
    """

    def __init__(self, domain: str, ssl: bool = True, timeout: float | None = None):
        scheme = "https" if ssl else "http"
        self.base_url = f"{scheme}://{domain}/{POSTBACK_PATH}"
        self.timeout = timeout

    def url_for(self, postback: Postback) -> str:
        """Return the full postback URL, validating the click id first.

        Raises:
            InvalidClickIDError: If the click id has the wrong format.
        """
        validate_click_id(postback.click_id)
        return f"{self.base_url}?{encode_query(encode_postback(postback))}"

    def build_request(self, postback: Postback) -> httpx.Request:
        """Build the GET request for a postback.

        Args:
            postback: Postback to send.

        Returns:
            Unsent GET request to the postback endpoint.

        Raises:
            InvalidClickIDError: If the click id has the wrong format.
        """
        return httpx.Request("GET", self.url_for(postback))

    def build_request_from_cookie(self, request: Request, postback: Postback) -> httpx.Request:
        """Build the GET request using the click id cookie of an inbound request.

        Overwrites ``postback.click_id`` with the cookie value.

        Args:
            request: Inbound request carrying the ``afclick`` cookie.
            postback: Postback to send.

        Returns:
            Unsent GET request to the postback endpoint.

        Raises:
            InvalidClickIDError: If there is no click id cookie or its value
                has the wrong format.
        """
        click_id = request.cookies.get(COOKIE_NAME)
        if click_id is None:
            raise InvalidClickIDError()
        postback.click_id = click_id
        return self.build_request(postback)

    async def send(self, client: PostbackTransport, postback: Postback) -> None:
        """Send a postback with the given transport.

        Raises:
            InvalidClickIDError: If the click id has the wrong format.
            PostbackTransportError: If the request or closing the response fails.
            InvalidResponseStatusError: If the network does not answer 200 OK.
        """
        await self._do(client, self.build_request(postback))

    async def send_with_cookie(
        self, request: Request, client: PostbackTransport, postback: Postback
    ) -> None:
        """Send a postback using the click id cookie of an inbound request."""
        await self._do(client, self.build_request_from_cookie(request, postback))

    async def send_default(self, postback: Postback) -> None:
        """Send a postback with a default ``httpx.AsyncClient``."""
        req = self.build_request(postback)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            await self._do(client, req)

    async def send_default_with_cookie(self, request: Request, postback: Postback) -> None:
        """Send a postback with a default client and the click id cookie."""
        req = self.build_request_from_cookie(request, postback)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            await self._do(client, req)

    async def _do(self, client: PostbackTransport, req: httpx.Request) -> None:
        url = str(req.url)
        try:
            response = await client.send(req, stream=True)
        except httpx.HTTPError as e:
            raise PostbackTransportError(f"failed to do request {url}: {e}", url) from e

        if response.status_code != httpx.codes.OK:
            logger.warning("Postback %s answered %d", url, response.status_code)
            try:
                await response.aclose()
            except httpx.HTTPError:
                logger.warning("Failed to close response body of %s", url, exc_info=True)
            raise InvalidResponseStatusError(response.status_code, url)

        try:
            await response.aclose()
        except httpx.HTTPError as e:
            raise PostbackTransportError(f"failed to close response body: {e}", url) from e

        logger.info("Postback sent: %s", url)

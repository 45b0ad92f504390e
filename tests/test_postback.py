"""Tests for postback request building and sending."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from ipaddress import ip_address
from urllib.parse import parse_qsl, urlsplit

import httpx
import pytest
from fastapi import Request

from clicktrail.core.errors import (
    InvalidClickIDError,
    InvalidResponseStatusError,
    PostbackTransportError,
)
from clicktrail.core.models import Postback, PostbackStatus
from clicktrail.postback import PostbackProvider

CLICK_ID = "111111111111111111111111"

FULL_URL = (
    "https://example.com/postback?action_id=2&click_id=111111111111111111111111&comment=10"
    "&custom_field1=16&custom_field10=25&custom_field11=26&custom_field12=27"
    "&custom_field13=28&custom_field14=29&custom_field15=30&custom_field2=17"
    "&custom_field3=18&custom_field4=19&custom_field5=20&custom_field6=21"
    "&custom_field7=22&custom_field8=23&custom_field9=24&device_type=13&fbclid=12"
    "&goal=3&ip=5.6.7.8&referrer=9&secure=11&status=1&sum=4&user_id=14"
)

Handler = Callable[[httpx.Request], httpx.Response]


def _inbound(cookie: str | None = None) -> Request:
    headers = [(b"cookie", cookie.encode())] if cookie is not None else []
    return Request(
        {"type": "http", "method": "POST", "path": "/", "query_string": b"", "headers": headers}
    )


def _recording(status_code: int = 200) -> tuple[list[httpx.Request], Handler]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code, text="ok")

    return seen, handler


def _send(provider: PostbackProvider, postback: Postback, handler: Handler) -> None:
    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await provider.send(client, postback)

    asyncio.run(run())


class _UnclosableStream(httpx.AsyncByteStream):
    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield b"ok"

    async def aclose(self) -> None:
        raise httpx.ReadError("connection reset while closing")


class TestProvider:
    def test_https_base_url(self) -> None:
        assert PostbackProvider("example.com").base_url == "https://example.com/postback"

    def test_http_base_url(self) -> None:
        provider = PostbackProvider("example.com:8080", ssl=False)
        assert provider.base_url == "http://example.com:8080/postback"


class TestBuildRequest:
    def test_invalid_click_id(self) -> None:
        with pytest.raises(InvalidClickIDError):
            PostbackProvider("example.com").build_request(Postback(click_id="1"))

    def test_simple(self) -> None:
        req = PostbackProvider("example.com").build_request(Postback(click_id=CLICK_ID))
        assert req.method == "GET"
        assert str(req.url) == f"https://example.com/postback?click_id={CLICK_ID}"

    def test_full(self) -> None:
        postback = Postback(
            click_id=CLICK_ID,
            action_id="2",
            goal="3",
            sum=4,
            ip=ip_address("5.6.7.8"),
            status=PostbackStatus.CONFIRMED,
            referrer="9",
            comment="10",
            secure="11",
            fbclid="12",
            device_type="13",
            user_id="14",
            custom_fields=[str(n) for n in range(16, 31)],
        )
        req = PostbackProvider("example.com").build_request(postback)
        assert str(req.url) == FULL_URL

    def test_url_for_matches_request(self) -> None:
        provider = PostbackProvider("example.com", ssl=False)
        postback = Postback(click_id=CLICK_ID, goal="lead")
        assert provider.url_for(postback) == str(provider.build_request(postback).url)


class TestBuildRequestFromCookie:
    def test_click_id_from_cookie(self) -> None:
        postback = Postback(click_id="", goal="lead")
        req = PostbackProvider("example.com").build_request_from_cookie(
            _inbound(f"afclick={CLICK_ID}"), postback
        )
        assert postback.click_id == CLICK_ID
        assert dict(parse_qsl(req.url.query.decode())) == {"click_id": CLICK_ID, "goal": "lead"}

    def test_cookie_overrides_explicit_click_id(self) -> None:
        postback = Postback(click_id="aaaaaaaaaaaaaaaaaaaaaaaa")
        PostbackProvider("example.com").build_request_from_cookie(
            _inbound(f"other=1; afclick={CLICK_ID}"), postback
        )
        assert postback.click_id == CLICK_ID

    def test_missing_cookie(self) -> None:
        postback = Postback(click_id=CLICK_ID)
        with pytest.raises(InvalidClickIDError) as exc_info:
            PostbackProvider("example.com").build_request_from_cookie(_inbound(), postback)
        assert exc_info.value.click_id is None
        assert postback.click_id == CLICK_ID

    def test_malformed_cookie_value(self) -> None:
        with pytest.raises(InvalidClickIDError):
            PostbackProvider("example.com").build_request_from_cookie(
                _inbound("afclick=nope"), Postback(click_id="")
            )


class TestSend:
    def test_end_to_end(self) -> None:
        seen, handler = _recording()
        postback = Postback(
            click_id=CLICK_ID, action_id="2", sum=4, status=PostbackStatus.CONFIRMED
        )
        _send(PostbackProvider("example.com", ssl=True), postback, handler)

        assert len(seen) == 1
        req = seen[0]
        assert req.method == "GET"
        parts = urlsplit(str(req.url))
        assert (parts.scheme, parts.netloc, parts.path) == ("https", "example.com", "/postback")
        assert dict(parse_qsl(parts.query)) == {
            "click_id": CLICK_ID,
            "action_id": "2",
            "status": "1",
            "sum": "4",
        }

    def test_invalid_click_id_no_io(self) -> None:
        seen, handler = _recording()
        with pytest.raises(InvalidClickIDError):
            _send(PostbackProvider("example.com"), Postback(click_id="zz"), handler)
        assert seen == []

    @pytest.mark.parametrize("status_code", [201, 204, 302, 400, 404, 500, 503])
    def test_non_ok_status(self, status_code: int) -> None:
        _, handler = _recording(status_code)
        with pytest.raises(InvalidResponseStatusError) as exc_info:
            _send(PostbackProvider("example.com"), Postback(click_id=CLICK_ID), handler)
        assert exc_info.value.status_code == status_code
        assert exc_info.value.url.startswith("https://example.com/postback?")

    def test_transport_error_wrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PostbackTransportError) as exc_info:
            _send(PostbackProvider("example.com"), Postback(click_id=CLICK_ID), handler)
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert CLICK_ID in str(exc_info.value)
        assert exc_info.value.url == f"https://example.com/postback?click_id={CLICK_ID}"

    def test_timeout_wrapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(PostbackTransportError):
            _send(PostbackProvider("example.com"), Postback(click_id=CLICK_ID), handler)

    def test_close_failure_reported(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=_UnclosableStream())

        with pytest.raises(PostbackTransportError) as exc_info:
            _send(PostbackProvider("example.com"), Postback(click_id=CLICK_ID), handler)
        assert "close" in str(exc_info.value)

    def test_send_with_cookie(self) -> None:
        seen, handler = _recording()
        provider = PostbackProvider("example.com")
        postback = Postback(click_id="", goal="sale")

        async def run() -> None:
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                await provider.send_with_cookie(_inbound(f"afclick={CLICK_ID}"), client, postback)

        asyncio.run(run())
        assert postback.click_id == CLICK_ID
        assert dict(parse_qsl(seen[0].url.query.decode())) == {
            "click_id": CLICK_ID,
            "goal": "sale",
        }

    def test_send_default_validates_first(self) -> None:
        with pytest.raises(InvalidClickIDError):
            asyncio.run(PostbackProvider("example.invalid").send_default(Postback(click_id="")))

    def test_send_default_with_cookie_missing_cookie(self) -> None:
        with pytest.raises(InvalidClickIDError):
            asyncio.run(
                PostbackProvider("example.invalid").send_default_with_cookie(
                    _inbound(), Postback(click_id="")
                )
            )

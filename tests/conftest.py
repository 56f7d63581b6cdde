"""Shared fixtures for the xfetch test suite.

* No internet access: yt-dlp is replaced by a fake coroutine and the media
  origin by ``httpx.MockTransport``.
* Rate limiting is switched off so tests can hit endpoints freely.
"""

from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from xfetch.main import app, get_extractor, get_http_client, limiter


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolated_app():
    enabled = limiter.enabled
    limiter.enabled = False
    yield
    limiter.enabled = enabled
    app.dependency_overrides.clear()


class FakeExtractor:
    """Stands in for ``extractor.extract_info``."""

    def __init__(self) -> None:
        self.info: dict[str, Any] = {}
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def __call__(self, url: str) -> dict[str, Any]:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.info


async def _stream_body(content: bytes):
    if content:
        yield content


class FakeOrigin:
    """Media origin behind ``httpx.MockTransport``; records what it received."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = (
            lambda request: httpx.Response(200, content=b"media-bytes")
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.handler(request)
        if not response.is_stream_consumed:
            return response
        # A bytes body is read eagerly; real transports hand back an open stream
        return httpx.Response(
            response.status_code,
            headers=response.headers.raw,
            content=_stream_body(response.content),
        )


@pytest.fixture
def fake_extractor() -> FakeExtractor:
    fake = FakeExtractor()
    app.dependency_overrides[get_extractor] = lambda: fake
    return fake


@pytest.fixture
def origin() -> FakeOrigin:
    fake = FakeOrigin()
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    app.dependency_overrides[get_http_client] = lambda: http_client
    return fake


@pytest.fixture
def client() -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


def make_format(
    *,
    format_id: str = "f",
    height: int | None = 720,
    vcodec: str | None = "avc1",
    acodec: str | None = "mp4a",
    url: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "format_id": format_id,
        "url": url or f"https://video.twimg.com/{format_id}.mp4",
        "protocol": "https",
        "ext": "mp4",
        "http_headers": {"User-Agent": "Mozilla/5.0"},
    }
    if height is not None:
        raw["height"] = height
    if vcodec is not None:
        raw["vcodec"] = vcodec
    if acodec is not None:
        raw["acodec"] = acodec
    raw.update(extra)
    return raw


def make_info(formats: list[dict[str, Any]] | None = None, **extra: Any) -> dict[str, Any]:
    info: dict[str, Any] = {
        "id": "12345",
        "title": "A post with a video",
        "thumbnail": "https://pbs.twimg.com/thumb.jpg",
        "duration": 12.5,
        "uploader": "someone",
        "extractor": "twitter",
        "webpage_url": "https://x.com/someone/status/12345",
        "formats": formats if formats is not None else [],
    }
    info.update(extra)
    return info

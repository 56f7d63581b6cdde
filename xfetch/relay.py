"""Streaming reverse proxy for media URLs handed out by ``/extract``.

The client cannot fetch most media URLs itself (CORS, short-lived signed
URLs, headers yt-dlp says the origin needs), so ``/stream`` fetches them and
pipes the body back. Status and headers are mirrored, hop-by-hop headers are
dropped and the body is passed through chunk by chunk, never buffered whole.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from collections.abc import AsyncIterator, Mapping

import anyio
import httpx
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from . import config
from .errors import RelayTransportError, ValidationError

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Client request headers that carry range / conditional semantics
FORWARDED_REQUEST_HEADERS = (
    "range",
    "if-range",
    "if-match",
    "if-none-match",
    "if-modified-since",
    "if-unmodified-since",
)


# -------------------------
# Helpers
# -------------------------

def safe_filename(name: str) -> str:
    name = re.sub(r"[^\w\s.-]", "", name)
    return name.encode("ascii", "ignore").decode().strip() or "media"


def decode_header_bundle(encoded: str | None) -> dict[str, str]:
    """Decode the ``h`` query parameter: base64 of a JSON object of headers.

    Both base64 alphabets are accepted and padding may be missing. A bundle
    that cannot be decoded is logged and treated as empty.
    """
    if not encoded:
        return {}

    # '+' turns into ' ' when the client forgets to URL-encode the parameter
    data = encoded.strip().replace(" ", "+")
    data += "=" * (-len(data) % 4)
    try:
        decoded = json.loads(base64.b64decode(data, altchars=b"-_").decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        logger.warning("Invalid headers param: %s", exc)
        return {}

    if not isinstance(decoded, dict):
        logger.warning("Invalid headers param: expected a JSON object, got %s", type(decoded).__name__)
        return {}

    headers = {}
    for name, value in decoded.items():
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            headers[str(name)] = str(value)
    return headers


def validate_remote_url(remote_url: str | None) -> httpx.URL:
    if not remote_url:
        raise ValidationError("remoteUrl required")
    try:
        url = httpx.URL(remote_url.strip())
    except (httpx.InvalidURL, TypeError) as exc:
        raise ValidationError("Invalid remoteUrl", details=str(exc)) from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise ValidationError("Invalid remoteUrl", details="expected an absolute http(s) URL")
    return url


def build_outbound_headers(
    inbound: Mapping[str, str], extra: Mapping[str, str] | None = None
) -> httpx.Headers:
    """Client range/conditional headers first, then the extra bundle on top."""
    headers = httpx.Headers({"accept-encoding": "identity"})
    for name in FORWARDED_REQUEST_HEADERS:
        value = inbound.get(name)
        if value is not None:
            headers[name] = value
    if extra:
        headers.update(extra)
    return headers


def filter_response_headers(raw_headers: list[tuple[bytes, bytes]]) -> list[tuple[bytes, bytes]]:
    """Drop hop-by-hop headers, including any listed in ``Connection``."""
    dropped = set(HOP_BY_HOP_HEADERS)
    for name, value in raw_headers:
        if name.lower() == b"connection":
            dropped.update(
                token.strip().lower()
                for token in value.decode("latin-1").split(",")
                if token.strip()
            )
    return [
        (name, value)
        for name, value in raw_headers
        if name.decode("latin-1").lower() not in dropped
    ]


# -------------------------
# Upstream
# -------------------------

async def open_upstream(
    client: httpx.AsyncClient,
    url: httpx.URL,
    headers: httpx.Headers,
    max_redirects: int | None = None,
) -> httpx.Response:
    """Send the GET and return the first non-redirect response, body unread.

    Redirects are followed here instead of by httpx so every hop carries the
    same headers; httpx would strip Authorization and Cookie on the way.
    """
    max_redirects = config.RELAY_MAX_REDIRECTS if max_redirects is None else max_redirects

    try:
        for _ in range(max_redirects + 1):
            request = client.build_request("GET", url, headers=headers)
            response = await client.send(request, stream=True, follow_redirects=False)
            if not response.has_redirect_location or response.next_request is None:
                return response
            url = response.next_request.url
            await response.aclose()
            logger.debug("Following redirect to %s", url)
    except httpx.HTTPError as exc:
        raise RelayTransportError("stream failed", details=str(exc)) from exc

    raise RelayTransportError("stream failed", details=f"Exceeded {max_redirects} redirects")


async def _close_upstream(upstream: httpx.Response) -> None:
    # Runs on client disconnect too, so it must survive cancellation
    with anyio.CancelScope(shield=True):
        await upstream.aclose()


async def iter_upstream(upstream: httpx.Response) -> AsyncIterator[bytes]:
    """Yield raw body bytes in arrival order.

    The ASGI server only asks for the next chunk after the previous one was
    sent, so a slow client slows the upstream read instead of filling memory.
    """
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.HTTPError as exc:
        # Status and headers are already on the wire
        logger.error("Stream proxy error after response started: %s", exc)
        raise
    finally:
        await _close_upstream(upstream)


async def relay(
    client: httpx.AsyncClient,
    remote_url: str | None,
    inbound_headers: Mapping[str, str],
    encoded_headers: str | None = None,
    filename: str | None = None,
) -> StreamingResponse:
    url = validate_remote_url(remote_url)
    extra = decode_header_bundle(encoded_headers)
    outbound = build_outbound_headers(inbound_headers, extra)

    upstream = await open_upstream(client, url, outbound)
    logger.info("Relaying %s -> %s", url.host, upstream.status_code)

    response = StreamingResponse(
        iter_upstream(upstream),
        status_code=upstream.status_code,
        background=BackgroundTask(_close_upstream, upstream),
    )
    response.raw_headers.extend(filter_response_headers(upstream.headers.raw))
    if filename:
        response.headers["content-disposition"] = f'attachment; filename="{safe_filename(filename)}"'
    return response

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urljoin, urlparse

import httpx

from privacy_advisor.core.errors import BlockedTargetError
from privacy_advisor.ssrf.guard import is_host_disallowed

DEFAULT_TIMEOUT = 5.0
DEFAULT_USER_AGENT = "PrivacyAdvisorBot/0.1"
REDIRECT_CODES = (301, 302, 303, 307, 308)


@dataclass
class FetchedPage:
    url: str
    final_url: str
    status_code: int
    headers: httpx.Headers
    set_cookies: list[str] = field(default_factory=list)
    text: str = ""
    truncated: bool = False

    @property
    def content_type(self) -> str:
        return (self.headers.get("content-type") or "").lower()

    @property
    def is_html(self) -> bool:
        ctype = self.content_type
        # fixtures and sloppy servers omit it
        return not ctype or "html" in ctype


def _check_hop(url: str) -> None:
    p = urlparse(url)
    if p.scheme not in ("http", "https"):
        raise BlockedTargetError(f"Redirect to unsupported scheme: {p.scheme}")
    if is_host_disallowed(p.hostname or ""):
        raise BlockedTargetError(f"Blocked host: {p.hostname}", host=p.hostname)


async def _read_capped(resp: httpx.Response, max_bytes: int) -> tuple[bytes, bool]:
    buf = bytearray()
    async for chunk in resp.aiter_bytes():
        buf.extend(chunk)
        if len(buf) >= max_bytes:
            return bytes(buf[:max_bytes]), True
    return bytes(buf), False


async def _fetch(
    client: httpx.AsyncClient,
    url: str,
    *,
    max_bytes: int,
    max_redirects: int,
    headers: dict,
) -> FetchedPage:
    current = url
    for _ in range(max_redirects + 1):
        # every hop is re-validated, including the first
        _check_hop(current)
        async with client.stream("GET", current, headers=headers) as resp:
            location = resp.headers.get("location")
            if resp.status_code in REDIRECT_CODES and location:
                current = urljoin(current, location)
                continue

            body, truncated = await _read_capped(resp, max_bytes)
            final_url = str(resp.url)
            _check_hop(final_url)
            return FetchedPage(
                url=url,
                final_url=final_url,
                status_code=resp.status_code,
                headers=httpx.Headers(resp.headers),
                set_cookies=resp.headers.get_list("set-cookie"),
                text=body.decode(resp.encoding or "utf-8", errors="replace"),
                truncated=truncated,
            )

    raise httpx.TooManyRedirects(f"Exceeded {max_redirects} redirects", request=None)


async def safe_fetch(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_bytes: int = 800_000,
    max_redirects: int = 5,
    user_agent: str = DEFAULT_USER_AGENT,
) -> FetchedPage:
    """
    GET with manual redirect following. Raises BlockedTargetError when any hop
    lands on a disallowed host, httpx.HTTPError on transport failures and
    asyncio.TimeoutError when the whole exchange exceeds `timeout`.
    """
    h = {"User-Agent": user_agent, "Accept": "text/html,application/xhtml+xml,*/*;q=0.8"}
    return await asyncio.wait_for(
        _fetch(client, url, max_bytes=max_bytes, max_redirects=max_redirects, headers=h),
        timeout=timeout,
    )


def make_client(*, timeout: float = DEFAULT_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    # redirects are followed by safe_fetch so each hop gets checked
    return httpx.AsyncClient(timeout=timeout, follow_redirects=False, transport=transport)


class FixtureTransport(httpx.AsyncBaseTransport):
    """
    Serves `<slug>.test` hosts from `<root>/<slug>/index.html` (and other
    `<path>.html` files); everything else goes to the real network.
    Optional `<root>/<slug>/headers.json` sets response headers.
    """

    def __init__(self, root: str | Path, fallback: httpx.AsyncBaseTransport | None = None):
        self.root = Path(root)
        self.fallback = fallback or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host or ""
        if not host.endswith(".test"):
            return await self.fallback.handle_async_request(request)

        slug = host.split(".")[0] or "example"
        site_dir = self.root / slug
        path = request.url.path.strip("/")
        page = site_dir / (f"{path}.html" if path else "index.html")
        if not page.is_file():
            return httpx.Response(404, headers={"content-type": "text/html"}, text="not found")

        headers = {"content-type": "text/html; charset=utf-8"}
        headers_file = site_dir / "headers.json"
        if headers_file.is_file():
            headers.update(json.loads(headers_file.read_text(encoding="utf-8")))
        return httpx.Response(200, headers=headers, content=page.read_bytes())

    async def aclose(self) -> None:
        await self.fallback.aclose()

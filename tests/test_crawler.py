import asyncio

import httpx

from conftest import html_site
from privacy_advisor.core.config import ScanLimits
from privacy_advisor.scans.crawler import crawl
from privacy_advisor.ssrf.http import make_client

MANY_LINKS = "".join(f'<a href="/p{i}">p{i}</a>' for i in range(50))


def _crawl(transport, url, limits, clock=None):
    pages = []

    async def on_page(page, soup, first):
        pages.append((page.final_url, first))

    async def go():
        async with make_client(transport=transport) as client:
            kw = {"clock": clock} if clock else {}
            return await crawl(url, client, on_page, limits=limits, **kw)

    return asyncio.run(go()), pages


def _every_path(html):
    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/html"}, text=html)

    return httpx.MockTransport(handler)


def test_page_limit_is_respected():
    result, pages = _crawl(_every_path(MANY_LINKS), "https://example.com/", ScanLimits(page_limit=4))
    assert len(result.visited) == 4
    assert len(pages) == 4
    assert pages[0] == ("https://example.com/", True)
    assert all(first is False for _, first in pages[1:])


def test_time_budget_is_respected():
    ticks = iter(range(1000))

    # every clock() call advances one second
    result, _ = _crawl(
        _every_path(MANY_LINKS),
        "https://example.com/",
        ScanLimits(page_limit=100, time_budget_sec=3.5),
        clock=lambda: float(next(ticks)),
    )
    assert len(result.visited) == 3


def test_only_same_origin_links_are_followed():
    calls = []
    transport = html_site(
        {
            "/": '<a href="/a">a</a><a href="https://other.com/x">x</a><a href="http://example.com/insecure">i</a>',
            "/a": '<a href="/">home</a>',
        },
        calls=calls,
    )
    result, _ = _crawl(transport, "https://example.com/", ScanLimits(page_limit=10))
    assert result.visited == ["https://example.com/", "https://example.com/a"]
    assert all(c.startswith("https://example.com/") for c in calls)


def test_failed_pages_are_skipped():
    def handler(request):
        if request.url.path == "/broken":
            raise httpx.ConnectError("boom", request=request)
        if request.url.path == "/hop":
            return httpx.Response(302, headers={"location": "http://10.0.0.1/"})
        return httpx.Response(200, headers={"content-type": "text/html"}, text='<a href="/broken">b</a><a href="/hop">h</a><a href="/ok">o</a>')

    result, pages = _crawl(httpx.MockTransport(handler), "https://example.com/", ScanLimits(page_limit=10))
    assert sorted(result.failed) == ["https://example.com/broken", "https://example.com/hop"]
    assert [u for u, _ in pages] == ["https://example.com/", "https://example.com/ok"]

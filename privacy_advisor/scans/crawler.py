from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from privacy_advisor.core.config import ScanLimits
from privacy_advisor.core.errors import BlockedTargetError
from privacy_advisor.scans.classifier import extract_links, parse_html
from privacy_advisor.scans.urls import same_origin
from privacy_advisor.ssrf.http import FetchedPage, safe_fetch

logger = logging.getLogger(__name__)

# on_page(page, soup, first)
PageHandler = Callable[..., Awaitable[None]]

# page-local failures: skipped, crawl continues
FETCH_ERRORS = (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError, BlockedTargetError, UnicodeError)


@dataclass
class CrawlResult:
    visited: list[str] = field(default_factory=list)
    fetched: list[dict] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def metrics(self) -> dict:
        return {
            "visited": len(self.visited),
            "fetched": len(self.fetched),
            "failed": len(self.failed),
            "time_spent_sec": round(self.elapsed, 2),
        }


async def crawl(
    start_url: str,
    client: httpx.AsyncClient,
    on_page: PageHandler,
    *,
    limits: ScanLimits | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> CrawlResult:
    """
    Breadth-first, same-origin, sequential. Stops when the queue empties, when
    `page_limit` URLs were visited or when `time_budget_sec` elapsed.
    """
    limits = limits or ScanLimits()
    start = clock()
    q = deque([start_url])
    queued = {start_url}
    visited: set[str] = set()
    result = CrawlResult()
    first = True

    while q:
        if len(visited) >= limits.page_limit:
            break
        remaining = limits.time_budget_sec - (clock() - start)
        if remaining <= 0:
            break

        url = q.popleft()
        if url in visited:
            continue
        visited.add(url)
        result.visited.append(url)

        try:
            page: FetchedPage = await safe_fetch(
                client,
                url,
                timeout=min(limits.request_timeout_sec, remaining),
                max_bytes=limits.max_content_bytes,
                max_redirects=limits.max_redirects,
                user_agent=limits.user_agent,
            )
        except FETCH_ERRORS as e:
            logger.debug("skip %s: %s", url, e)
            result.failed.append(url)
            continue

        result.fetched.append({"url": url, "final_url": page.final_url, "status_code": page.status_code})
        soup = parse_html(page.text if page.is_html else "")
        await on_page(page, soup, first)
        first = False

        if not page.is_html:
            continue
        for link in extract_links(soup, page.final_url):
            # cross-origin links are only looked at by the classifier
            if link not in queued and same_origin(link, start_url):
                queued.add(link)
                q.append(link)

    result.elapsed = clock() - start
    return result

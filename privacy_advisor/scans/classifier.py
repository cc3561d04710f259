# privacy_advisor/scans/classifier.py

from __future__ import annotations

import asyncio
import logging
import re
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from privacy_advisor.lists.loader import TrackerIndex
from privacy_advisor.scans.repository import EvidenceWriter
from privacy_advisor.scans.urls import registrable_domain, resolve_link
from privacy_advisor.ssrf.guard import is_url_disallowed
from privacy_advisor.ssrf.http import FetchedPage

logger = logging.getLogger(__name__)

SECURITY_HEADERS = [
    "content-security-policy",
    "referrer-policy",
    "strict-transport-security",
    "x-content-type-options",
    "permissions-policy",
]

# (tag, attribute) pairs treated as loaded resources
RESOURCE_SELECTORS = [("script", "src"), ("img", "src"), ("link", "href")]

# known-approximate; false positives expected (feature detection looks the same)
FINGERPRINT_RE = re.compile(
    r"(?P<canvas>toDataURL|getImageData)"
    r"|(?P<audio>OfflineAudioContext|AudioContext)"
    r"|(?P<plugins>navigator\.plugins)"
    r"|(?P<hardware>navigator\.hardwareConcurrency)",
    re.IGNORECASE,
)
MIXED_CONTENT_RE = re.compile(r"http://[^\s\"'<>()]*", re.IGNORECASE)
POLICY_RE = re.compile(r"privacy|policy", re.IGNORECASE)


def tls_grade(scheme: str) -> str:
    # placeholder: real certificate inspection is out of scope
    return "A" if scheme == "https" else "C"


def missing_headers(page: FetchedPage) -> list[str]:
    return [name for name in SECURITY_HEADERS if name not in page.headers]


def insecure_cookies(page: FetchedPage) -> list[tuple[str, str]]:
    out = []
    for raw in page.set_cookies:
        lc = raw.lower()
        if "secure" not in lc or "samesite" not in lc:
            name = raw.split("=", 1)[0].strip()
            out.append((name, raw))
    return out


def fingerprint_signals(html: str) -> list[str]:
    return sorted({m.lastgroup for m in FINGERPRINT_RE.finditer(html or "") if m.lastgroup})


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def iter_resources(soup: BeautifulSoup, base_url: str):
    for tag, attr in RESOURCE_SELECTORS:
        for el in soup.find_all(tag, attrs={attr: True}):
            url = resolve_link(base_url, el.get(attr))
            if url:
                yield url


def find_policy_link(soup: BeautifulSoup) -> str | None:
    for a in soup.find_all("a", href=True):
        href = a.get("href") or ""
        if POLICY_RE.search(a.get_text(" ", strip=True)) or POLICY_RE.search(href):
            return href
    return None


def extract_links(soup: BeautifulSoup, base_url: str) -> list[str]:
    links: list[str] = []
    seen = set()
    for a in soup.find_all("a", href=True):
        url = resolve_link(base_url, a.get("href"))
        if url and url not in seen:
            seen.add(url)
            links.append(url)
    return links


class EvidenceClassifier:
    """Turns a fetched page into evidence rows for one scan."""

    def __init__(self, writer: EvidenceWriter, lists: TrackerIndex, target_url: str):
        self.writer = writer
        self.lists = lists
        self.target_url = target_url
        parts = urlsplit(target_url)
        self.target_scheme = parts.scheme
        self.site_root = registrable_domain(parts.hostname or "")

    async def classify(self, page: FetchedPage, soup: BeautifulSoup | None = None, *, first: bool = False) -> None:
        if soup is None:
            soup = parse_html(page.text if page.is_html else "")

        await self.check_headers(page)
        await self.check_cookies(page)

        if first:
            await self.check_tls()

        if page.is_html:
            if first:
                await self.check_policy_link(soup)
            await self.classify_resources(soup, page.final_url)
            await self.check_fingerprinting(page)
            await self.check_mixed_content(page)

    async def check_headers(self, page: FetchedPage) -> None:
        for name in missing_headers(page):
            await self.writer.write("header", 2, f"Missing header: {name}", {"name": name, "url": page.final_url})

    async def check_cookies(self, page: FetchedPage) -> None:
        for name, raw in insecure_cookies(page):
            await self.writer.write("cookie", 2, "Cookie missing Secure/SameSite", {"name": name, "cookie": raw})

    async def check_tls(self) -> None:
        grade = tls_grade(self.target_scheme)
        await self.writer.write("tls", 1, f"TLS grade {grade}", {"grade": grade})

    async def check_policy_link(self, soup: BeautifulSoup) -> None:
        href = find_policy_link(soup)
        if href is not None:
            await self.writer.write("policy", 1, "Privacy policy link detected", {"href": href})

    async def classify_resources(self, soup: BeautifulSoup, base_url: str) -> None:
        writes = []
        for url in iter_resources(soup, base_url):
            if is_url_disallowed(url):
                continue
            host = (urlsplit(url).hostname or "").lower()
            domain = registrable_domain(host)
            fingerprinting = self.lists.is_fingerprinting(domain)
            if domain != self.site_root:
                writes.append(self.writer.write(
                    "thirdparty", 2, f"Third-party request: {host}",
                    {"hostname": host, "domain": domain, "fingerprinting": fingerprinting},
                ))
            if self.lists.is_tracker(domain):
                writes.append(self.writer.write(
                    "tracker", 3, f"Tracker matched: {domain}",
                    {
                        "domain": domain,
                        "hostname": host,
                        "category": self.lists.category_for(domain),
                        "fingerprinting": fingerprinting,
                    },
                ))
        if not writes:
            return
        results = await asyncio.gather(*writes, return_exceptions=True)
        for r in results:
            if isinstance(r, Exception):
                logger.warning("resource evidence write failed scan=%s: %s", self.writer.scan_id, r)

    async def check_fingerprinting(self, page: FetchedPage) -> None:
        signals = fingerprint_signals(page.text)
        if signals:
            await self.writer.write(
                "fingerprint", 3, "Fingerprinting heuristics detected",
                {"signals": signals, "url": page.final_url},
            )

    async def check_mixed_content(self, page: FetchedPage) -> None:
        if self.target_scheme != "https":
            return
        matches = MIXED_CONTENT_RE.findall(page.text or "")
        if matches:
            await self.writer.write(
                "insecure", 3, "Mixed content detected",
                {"url": matches[0], "count": len(matches), "page": page.final_url},
            )

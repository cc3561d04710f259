from __future__ import annotations

from functools import lru_cache
from urllib.parse import urlsplit, urlunsplit, urljoin

import tldextract

from privacy_advisor.core.errors import InvalidTargetError
from privacy_advisor.ssrf.guard import canonical_ipv4

MAX_URL_LENGTH = 2048
DANGEROUS_MARKERS = ("javascript:", "data:", "file:", "ftp:", "mailto:", "tel:")
DEFAULT_PORTS = {"http": 80, "https": 443}

# bundled public-suffix snapshot only, never hits the network
_extract = tldextract.TLDExtract(suffix_list_urls=())

# CDNs / infra owned by the same organisation as the root domain
KNOWN_FIRST_PARTY = {
    "github.com": ("githubusercontent.com", "githubassets.com", "github.io"),
    "google.com": ("gstatic.com", "googleusercontent.com", "ggpht.com"),
    "facebook.com": ("fbcdn.net", "fbsbx.com"),
    "twitter.com": ("twimg.com", "t.co"),
    "x.com": ("twimg.com", "t.co"),
    "amazon.com": ("media-amazon.com", "ssl-images-amazon.com"),
    "wikipedia.org": ("wikimedia.org", "wikidata.org", "wikis.world"),
    "microsoft.com": ("microsoftonline.com", "live.com", "msn.com"),
    "apple.com": ("icloud.com", "mzstatic.com", "cdn-apple.com"),
    "linkedin.com": ("licdn.com",),
    "reddit.com": ("redd.it", "redditstatic.com"),
    "stackoverflow.com": ("sstatic.net", "stackexchange.com"),
    "youtube.com": ("ytimg.com", "googlevideo.com"),
    "netflix.com": ("nflxext.com", "nflximg.net", "nflxvideo.net"),
}


def normalize_url(raw: str) -> str:
    url = (raw or "").strip()
    if not url or len(url) > MAX_URL_LENGTH:
        raise InvalidTargetError("Invalid URL input: empty or too long")

    lower = url.lower()
    if any(marker in lower for marker in DANGEROUS_MARKERS):
        raise InvalidTargetError("Invalid URL: dangerous protocol detected")

    if "://" not in url:
        if url.startswith("//"):
            raise InvalidTargetError("Invalid URL format")
        url = "http://" + url

    try:
        p = urlsplit(url)
        port = p.port
    except ValueError as e:
        raise InvalidTargetError("Invalid URL format") from e

    scheme = p.scheme.lower()
    if scheme not in ("http", "https"):
        raise InvalidTargetError("Invalid protocol: only http and https are allowed")

    host = (p.hostname or "").lower().rstrip(".")
    if not host or ".." in host:
        raise InvalidTargetError("Invalid hostname")
    try:
        host = canonical_ipv4(host) or host
    except ValueError as e:
        raise InvalidTargetError("Invalid hostname") from e

    netloc = f"[{host}]" if ":" in host else host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"

    return urlunsplit((scheme, netloc, p.path or "/", p.query, ""))


def hostname_of(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower().rstrip(".")
    except ValueError:
        return ""


@lru_cache(maxsize=4096)
def registrable_domain(host: str) -> str:
    """cdn.example.co.uk -> example.co.uk; IPs and bare hosts come back unchanged."""
    h = (host or "").strip().lower().rstrip(".")
    if not h:
        return ""
    ext = _extract(h)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return h


def origin_of(url: str) -> tuple[str, str, int | None]:
    p = urlsplit(url)
    scheme = p.scheme.lower()
    return scheme, (p.hostname or "").lower(), p.port or DEFAULT_PORTS.get(scheme)


def same_origin(a: str, b: str) -> bool:
    try:
        return origin_of(a) == origin_of(b)
    except ValueError:
        return False


def resolve_link(base: str, href: str | None) -> str | None:
    """Absolute http(s) URL without fragment, or None for junk."""
    href = (href or "").strip()
    if not href or href.startswith(("#", "mailto:", "javascript:", "tel:", "data:")):
        return None
    try:
        p = urlsplit(urljoin(base, href))
        if p.scheme not in ("http", "https") or not p.hostname:
            return None
        # port is validated lazily by urllib
        p.port
    except ValueError:
        return None
    return urlunsplit((p.scheme, p.netloc, p.path or "/", p.query, ""))


def is_first_party(domain: str, root_domain: str) -> bool:
    if not domain or not root_domain:
        return False
    d = domain.strip().lower()
    root = root_domain.strip().lower()
    if d == root:
        return True
    root_reg = registrable_domain(root)
    if registrable_domain(d) == root_reg:
        return True
    return any(fp in d for fp in KNOWN_FIRST_PARTY.get(root_reg, ()))

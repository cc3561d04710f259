import ipaddress
import re
import socket
from urllib.parse import urlparse

from privacy_advisor.core.errors import BlockedTargetError

BLOCKED_HOSTNAMES = {"localhost"}
BLOCKED_SUFFIXES = (".localhost", ".local")

# dotted, shortened, decimal, hex and octal IPv4 spellings (127.1, 2130706433, 0x7f000001)
NUMERIC_HOST_RE = re.compile(r"^(0x[0-9a-f]*|[0-9]+)(\.(0x[0-9a-f]*|[0-9]+))*$")

BLOCKED_NETS_V4 = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),  # link-local (includes metadata range)
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("100.64.0.0/10"),   # CGNAT
    ipaddress.ip_network("198.18.0.0/15"),   # benchmarking
]

BLOCKED_NETS_V6 = [
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("::/128"),
    ipaddress.ip_network("fc00::/7"),    # unique-local
    ipaddress.ip_network("fe80::/10"),   # link-local, covers fe90/fea0/feb0
    ipaddress.ip_network("fec0::/10"),   # site-local (deprecated)
]


def _unwrap(host: str) -> str:
    h = (host or "").strip().lower().rstrip(".")
    if h.startswith("[") and h.endswith("]"):
        h = h[1:-1]
    return h


def canonical_ipv4(host: str) -> str | None:
    """
    Dotted-quad form of a numeric IPv4 host, the way resolvers read it.
    None when the host is not numeric; ValueError when it is numeric but out of range.
    """
    h = _unwrap(host)
    if not NUMERIC_HOST_RE.match(h):
        return None
    try:
        return str(ipaddress.IPv4Address(socket.inet_aton(h)))
    except OSError as e:
        raise ValueError(f"Invalid IPv4 host: {h}") from e


def is_ip_blocked(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False

    if addr.version == 4:
        return any(addr in net for net in BLOCKED_NETS_V4)

    mapped = addr.ipv4_mapped
    if mapped is not None:
        return any(mapped in net for net in BLOCKED_NETS_V4)
    return any(addr in net for net in BLOCKED_NETS_V6)


def is_host_disallowed(host: str) -> bool:
    h = _unwrap(host)
    if not h:
        return True
    if h in BLOCKED_HOSTNAMES or h.endswith(BLOCKED_SUFFIXES):
        return True
    try:
        ipv4 = canonical_ipv4(h)
    except ValueError:
        return True
    if ipv4 is not None:
        return is_ip_blocked(ipv4)
    # zone ids (fe80::1%eth0) are not valid for ip_address
    return is_ip_blocked(h.split("%", 1)[0])


def is_url_disallowed(url: str) -> bool:
    try:
        host = urlparse(url).hostname
    except ValueError:
        return True
    return is_host_disallowed(host or "")


def resolve_all_ips(host: str) -> list[str]:
    infos = socket.getaddrinfo(host, None)
    ips: list[str] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        ip = sockaddr[0]
        if ip not in ips:
            ips.append(ip)
    return ips


def validate_url_target(url: str, *, resolve_dns: bool = False) -> str:
    """
    Initial-target check. Raises BlockedTargetError, returns the lowercased host.
    With resolve_dns every A/AAAA record must be public too (basic anti-rebinding).
    """
    try:
        p = urlparse(url)
        host = p.hostname
    except ValueError:
        raise BlockedTargetError("Invalid URL")
    if p.scheme not in ("http", "https"):
        raise BlockedTargetError("Only http/https allowed")
    if not host:
        raise BlockedTargetError("Invalid host")
    host_l = _unwrap(host)
    if is_host_disallowed(host_l):
        raise BlockedTargetError(f"Blocked host: {host_l}", host=host_l)

    if resolve_dns:
        try:
            ips = resolve_all_ips(host_l)
        except OSError as e:
            raise BlockedTargetError(f"Cannot resolve host: {host_l}", host=host_l) from e
        if not ips:
            raise BlockedTargetError(f"Cannot resolve host: {host_l}", host=host_l)
        for ip in ips:
            if is_ip_blocked(ip):
                raise BlockedTargetError(f"Blocked resolved IP: {ip}", host=host_l)

    return host_l
